"""Shared fixtures: an in-memory chain and helpers for building logs and mappings."""

from typing import Dict, List, Optional

import pytest

from stakecanary.cache import CoinbaseCache
from stakecanary.errors import UpstreamUnavailable
from stakecanary.models import AttesterView, CoinbaseMapping, OnChainStatus
from stakecanary.reconciler import CoinbaseReconciler

PROVIDER_ID = 7
REGISTRY = "0xc3860c45e5F0b1eF3000dbF93149756f16928ADB"


def addr(suffix: str) -> str:
    return "0x" + suffix.lower().rjust(40, "0")


A1 = addr("a1")
A2 = addr("a2")
A3 = addr("a3")
C1 = addr("c1")
C2 = addr("c2")
C9 = addr("c9")


def make_log(attester: str, coinbase: str, block: int, provider_id: int = PROVIDER_ID, log_index: int = 0) -> dict:
    return {
        "args": {
            "providerIdentifier": provider_id,
            "rollupAddress": addr("f00"),
            "attester": attester,
            "coinbaseSplitContractAddress": coinbase,
            "stakerImplementation": addr("5a"),
        },
        "blockNumber": block,
        "blockHash": "0x" + format(block, "064x"),
        "logIndex": log_index,
    }


def mapping(attester: str, coinbase: str, block: int) -> CoinbaseMapping:
    return CoinbaseMapping(
        attester_address=attester,
        coinbase_address=coinbase,
        block_number=block,
        block_hash="0x" + format(block, "064x"),
        timestamp=1_700_000_000 + block,
    )


class FakeChain:
    """Stands in for ChainClient: serves logs from a list and records every request."""

    def __init__(self, head: int = 0, logs: Optional[List[dict]] = None):
        self.head = head
        self.logs: List[dict] = list(logs or [])
        self.log_calls: List[tuple] = []
        self.timestamp_calls: List[int] = []
        self.max_span: Optional[int] = None
        self.fail_logs = False
        self.rollup = object()
        self.provider_queue: List[str] = []
        self.entry_queue: List[str] = []
        self.views: Dict[str, AttesterView] = {}
        self.epoch_duration = 32
        self.flush_size = 4
        self.balances: Dict[str, int] = {}

    def verify_connection(self):
        pass

    def get_block_number(self) -> int:
        return self.head

    def get_block_timestamp(self, block_number: int) -> int:
        self.timestamp_calls.append(block_number)
        return 1_700_000_000 + block_number

    def get_logs(self, address, event, indexed_filter, from_block, to_block):
        self.log_calls.append((from_block, to_block))
        if self.fail_logs:
            raise UpstreamUnavailable("connection refused", from_block=from_block, to_block=to_block)
        if self.max_span is not None and to_block - from_block + 1 > self.max_span:
            raise UpstreamUnavailable("query returned more than 10000 results")
        provider_id = indexed_filter[0]
        return [
            dict(log) for log in self.logs
            if from_block <= log["blockNumber"] <= to_block and log["args"]["providerIdentifier"] == provider_id
        ]

    def get_provider_queue(self, provider_id: int) -> List[str]:
        return list(self.provider_queue)

    def get_all_queued_attesters(self) -> List[str]:
        return list(self.entry_queue)

    def get_attester_view(self, address: str) -> Optional[AttesterView]:
        return self.views.get(address.lower())

    def get_epoch_duration(self) -> int:
        return self.epoch_duration

    def get_entry_queue_flush_size(self) -> int:
        return self.flush_size

    def get_balance(self, address: str) -> int:
        return self.balances.get(address.lower(), 0)

    def use_rollup(self, address: str):
        self.rollup = address

    def set_status(self, address: str, status: OnChainStatus, balance: int = 200_000 * 10**18):
        self.views[address.lower()] = AttesterView(status=status, effective_balance=balance)


@pytest.fixture
def chain():
    return FakeChain(head=1_000)


@pytest.fixture
def cache(tmp_path):
    return CoinbaseCache(str(tmp_path))


@pytest.fixture
def make_reconciler(chain, cache):
    def _make(watch=(A1, A2, A3), **kwargs):
        kwargs.setdefault("chunk_size", 100)
        kwargs.setdefault("retries", 0)
        kwargs.setdefault("sleep", lambda _: None)
        kwargs.setdefault("clock", lambda: 1_700_000_000.0)
        return CoinbaseReconciler(
            network="testnet",
            chain=chain,
            cache=cache,
            provider_id=PROVIDER_ID,
            registry_address=REGISTRY,
            watch_set=watch,
            start_block=0,
            **kwargs,
        )
    return _make


