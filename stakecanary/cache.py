"""
File-based persistence for coinbase mapping snapshots, one JSON file per network.

Snapshots are replaced atomically (temp file in the same directory, then
os.replace), so a reader never observes a half-written file.
"""

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ValidationError, field_validator

from .errors import CacheCorrupt
from .models import CoinbaseCacheSnapshot, CoinbaseMapping

CACHE_VERSION = "1.0"


class MappedCoinbaseSchema(BaseModel):
    attesterAddress: str
    coinbaseAddress: str
    blockNumber: int
    blockHash: str
    timestamp: int

    @field_validator("attesterAddress", "coinbaseAddress")
    @classmethod
    def check_address(cls, v):
        if not v.startswith("0x") or len(v) != 42:
            raise ValueError(f"not a 20-byte hex address: {v}")
        return v

    @field_validator("blockHash")
    @classmethod
    def check_hash(cls, v):
        if not v.startswith("0x"):
            raise ValueError("block hash must be 0x-prefixed")
        return v


class CoinbaseCacheSchema(BaseModel):
    network: str
    # Big integers are stored as decimal strings and coerced back on load
    stakingProviderId: int
    lastScrapedBlock: int
    mappings: List[MappedCoinbaseSchema]
    scrapedAt: datetime
    version: Literal["1.0"]


def snapshot_to_dict(snapshot: CoinbaseCacheSnapshot) -> dict:
    mappings = sorted(snapshot.mappings.values(), key=lambda m: (m.block_number, m.key))
    return {
        "network": snapshot.network,
        "stakingProviderId": str(snapshot.provider_id),
        "lastScrapedBlock": str(snapshot.last_scanned_block),
        "mappings": [
            {
                "attesterAddress": m.attester_address,
                "coinbaseAddress": m.coinbase_address,
                "blockNumber": str(m.block_number),
                "blockHash": m.block_hash,
                "timestamp": m.timestamp,
            }
            for m in mappings
        ],
        "scrapedAt": datetime.fromtimestamp(snapshot.scraped_at, tz=timezone.utc).isoformat(),
        "version": CACHE_VERSION,
    }


def snapshot_from_dict(data: dict, path: str = "<memory>") -> CoinbaseCacheSnapshot:
    try:
        parsed = CoinbaseCacheSchema.model_validate(data)
    except ValidationError as e:
        raise CacheCorrupt(path, str(e)) from e

    snapshot = CoinbaseCacheSnapshot(
        network=parsed.network,
        provider_id=parsed.stakingProviderId,
        last_scanned_block=parsed.lastScrapedBlock,
        scraped_at=parsed.scrapedAt.timestamp(),
    )
    for m in parsed.mappings:
        mapping = CoinbaseMapping(
            attester_address=m.attesterAddress,
            coinbase_address=m.coinbaseAddress,
            block_number=m.blockNumber,
            block_hash=m.blockHash,
            timestamp=m.timestamp,
        )
        if mapping.key in snapshot.mappings:
            raise CacheCorrupt(path, f"duplicate mapping for attester {m.attesterAddress}")
        snapshot.mappings[mapping.key] = mapping
    return snapshot


class CoinbaseCache:
    """
    Stores the last reconciled snapshot per network.

    Layout: <data_dir>/<network>-mapped-coinbases.json
    """

    def __init__(self, data_dir: str, path_override: Optional[str] = None):
        self.data_dir = data_dir
        self.path_override = path_override

    def path_for(self, network: str) -> str:
        if self.path_override:
            return self.path_override
        return os.path.join(self.data_dir, f"{network}-mapped-coinbases.json")

    def load(self, network: str) -> Optional[CoinbaseCacheSnapshot]:
        """
        Returns None if no snapshot exists yet.
        Raises CacheCorrupt if the file cannot be parsed or fails validation.
        """
        path = self.path_for(network)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CacheCorrupt(path, str(e)) from e

        snapshot = snapshot_from_dict(data, path)
        if snapshot.network != network:
            raise CacheCorrupt(path, f"snapshot is for network {snapshot.network!r}, expected {network!r}")
        return snapshot

    def save(self, snapshot: CoinbaseCacheSnapshot) -> str:
        path = self.path_for(snapshot.network)
        payload = json.dumps(snapshot_to_dict(snapshot), indent=2)

        dir_path = os.path.dirname(path) or "."
        os.makedirs(dir_path, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(prefix=".coinbases-", suffix=".tmp", dir=dir_path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        return path
