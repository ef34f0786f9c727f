"""
Tests for the JSON coinbase cache.
"""

import json
import os

import pytest

from stakecanary.cache import CoinbaseCache, snapshot_from_dict, snapshot_to_dict
from stakecanary.errors import CacheCorrupt
from stakecanary.models import CoinbaseCacheSnapshot

from conftest import A1, A2, C1, C2, mapping


def make_snapshot(network="testnet", last_block=5_000):
    return CoinbaseCacheSnapshot(
        network=network,
        provider_id=2**40,
        last_scanned_block=last_block,
        mappings={m.key: m for m in (mapping(A2, C2, 300), mapping(A1, C1, 100))},
        scraped_at=1_700_000_000.0,
    )


class TestCoinbaseCache:

    def test_missing_file_returns_none(self, tmp_path):
        assert CoinbaseCache(str(tmp_path)).load("testnet") is None

    def test_save_then_load(self, tmp_path):
        cache = CoinbaseCache(str(tmp_path))
        snapshot = make_snapshot()

        path = cache.save(snapshot)
        loaded = cache.load("testnet")

        assert path == str(tmp_path / "testnet-mapped-coinbases.json")
        assert loaded.provider_id == 2**40
        assert loaded.last_scanned_block == 5_000
        assert loaded.mappings == snapshot.mappings
        assert loaded.scraped_at == 1_700_000_000.0

    def test_creates_missing_data_dir(self, tmp_path):
        cache = CoinbaseCache(str(tmp_path / "nested" / "dir"))

        cache.save(make_snapshot())

        assert cache.load("testnet") is not None

    def test_big_integers_stored_as_strings(self, tmp_path):
        cache = CoinbaseCache(str(tmp_path))
        path = cache.save(make_snapshot())

        with open(path) as f:
            data = json.load(f)

        assert data["stakingProviderId"] == str(2**40)
        assert data["lastScrapedBlock"] == "5000"
        assert data["version"] == "1.0"
        assert [m["blockNumber"] for m in data["mappings"]] == ["100", "300"]

    def test_no_temp_files_left_behind(self, tmp_path):
        cache = CoinbaseCache(str(tmp_path))
        cache.save(make_snapshot())
        cache.save(make_snapshot(last_block=6_000))

        assert os.listdir(tmp_path) == ["testnet-mapped-coinbases.json"]
        assert cache.load("testnet").last_scanned_block == 6_000

    def test_networks_use_separate_files(self, tmp_path):
        cache = CoinbaseCache(str(tmp_path))
        cache.save(make_snapshot("mainnet", last_block=1))
        cache.save(make_snapshot("testnet", last_block=2))

        assert cache.load("mainnet").last_scanned_block == 1
        assert cache.load("testnet").last_scanned_block == 2

    def test_path_override(self, tmp_path):
        override = str(tmp_path / "custom.json")
        cache = CoinbaseCache(str(tmp_path), path_override=override)

        assert cache.save(make_snapshot()) == override

    def test_invalid_json_is_corrupt(self, tmp_path):
        cache = CoinbaseCache(str(tmp_path))
        with open(cache.path_for("testnet"), "w") as f:
            f.write('{"network": "testnet", ')

        with pytest.raises(CacheCorrupt) as exc_info:
            cache.load("testnet")

        assert exc_info.value.path == cache.path_for("testnet")

    def test_network_mismatch_is_corrupt(self, tmp_path):
        cache = CoinbaseCache(str(tmp_path))
        path = cache.save(make_snapshot("mainnet"))
        os.replace(path, cache.path_for("testnet"))

        with pytest.raises(CacheCorrupt):
            cache.load("testnet")


class TestSnapshotSchema:

    def test_rejects_unknown_version(self):
        data = snapshot_to_dict(make_snapshot())
        data["version"] = "2.0"

        with pytest.raises(CacheCorrupt):
            snapshot_from_dict(data)

    def test_rejects_missing_field(self):
        data = snapshot_to_dict(make_snapshot())
        del data["lastScrapedBlock"]

        with pytest.raises(CacheCorrupt):
            snapshot_from_dict(data)

    def test_rejects_malformed_address(self):
        data = snapshot_to_dict(make_snapshot())
        data["mappings"][0]["coinbaseAddress"] = "0x1234"

        with pytest.raises(CacheCorrupt):
            snapshot_from_dict(data)

    def test_rejects_duplicate_attesters(self):
        data = snapshot_to_dict(make_snapshot())
        duplicate = dict(data["mappings"][0])
        duplicate["attesterAddress"] = duplicate["attesterAddress"].upper().replace("0X", "0x")
        data["mappings"].append(duplicate)

        with pytest.raises(CacheCorrupt) as exc_info:
            snapshot_from_dict(data)

        assert "duplicate" in exc_info.value.reason

    def test_mappings_sorted_by_block(self):
        data = snapshot_to_dict(make_snapshot())

        assert [m["attesterAddress"] for m in data["mappings"]] == [A1, A2]
