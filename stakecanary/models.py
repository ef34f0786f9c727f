"""
Domain types shared by the reconciler and the attester lifecycle.
"""

import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Dict, List, Optional

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def normalize_address(address: str) -> str:
    """Lower-cased form used for every address comparison and map key."""
    return address.strip().lower()


def is_zero_address(address: Optional[str]) -> bool:
    return address is None or normalize_address(address) == ZERO_ADDRESS


class OnChainStatus(IntEnum):
    # Mirrors the Status enum of the rollup contract
    NONE = 0
    VALIDATING = 1
    ZOMBIE = 2
    EXITING = 3


class AttesterState(Enum):
    NEW = "NEW"
    IN_STAKING_PROVIDER_QUEUE = "IN_STAKING_PROVIDER_QUEUE"
    ROLLUP_ENTRY_QUEUE = "ROLLUP_ENTRY_QUEUE"
    ACTIVE = "ACTIVE"
    NO_LONGER_ACTIVE = "NO_LONGER_ACTIVE"


@dataclass(frozen=True)
class CoinbaseMapping:
    attester_address: str
    coinbase_address: str
    block_number: int
    block_hash: str
    timestamp: int

    @property
    def key(self) -> str:
        return normalize_address(self.attester_address)

    @property
    def is_unset(self) -> bool:
        return is_zero_address(self.coinbase_address)


@dataclass
class CoinbaseCacheSnapshot:
    network: str
    provider_id: int
    last_scanned_block: int
    # lower-cased attester address -> mapping
    mappings: Dict[str, CoinbaseMapping] = field(default_factory=dict)
    scraped_at: float = field(default_factory=time.time)

    def get(self, attester: str) -> Optional[CoinbaseMapping]:
        return self.mappings.get(normalize_address(attester))


@dataclass
class ReconciliationResult:
    mappings: List[CoinbaseMapping]
    start_block: int
    end_block: int
    new_mappings: int = 0
    updated_mappings: int = 0


@dataclass(frozen=True)
class ExitInfo:
    withdrawal_id: int = 0
    amount: int = 0
    exitable_at: int = 0
    recipient_or_withdrawer: str = ZERO_ADDRESS
    is_recipient: bool = False
    exists: bool = False


@dataclass(frozen=True)
class AttesterView:
    status: OnChainStatus
    effective_balance: int
    exit: ExitInfo = field(default_factory=ExitInfo)
    withdrawer: str = ZERO_ADDRESS


@dataclass
class ProviderQueueSnapshot:
    provider_id: int
    attesters: List[str]
    fetched_at: float = field(default_factory=time.time)

    def contains(self, address: str) -> bool:
        needle = normalize_address(address)
        return any(normalize_address(a) == needle for a in self.attesters)


@dataclass(frozen=True)
class QueuedAttester:
    address: str
    # 0-based index in the rollup entry queue
    position: int
    has_coinbase: bool
    eta_sec: Optional[float] = None


@dataclass
class EntryQueueStats:
    total_queue_length: int
    time_per_attester_sec: float
    # Tracked attesters found in the entry queue, ordered by position
    queued: List[QueuedAttester] = field(default_factory=list)

    @property
    def next_attester(self) -> Optional[QueuedAttester]:
        return self.queued[0] if self.queued else None

    @property
    def last_attester(self) -> Optional[QueuedAttester]:
        return self.queued[-1] if self.queued else None

    @property
    def next_missing_coinbase(self) -> Optional[QueuedAttester]:
        return next((q for q in self.queued if not q.has_coinbase), None)


@dataclass(frozen=True)
class PublisherBalance:
    address: str
    balance_wei: int
    required_topup_wei: int


@dataclass
class AttesterRecord:
    address: str
    state: AttesterState
    on_chain_view: Optional[AttesterView] = None
