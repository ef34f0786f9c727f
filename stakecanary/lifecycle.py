"""
Attester lifecycle state machine.

    NEW -> IN_STAKING_PROVIDER_QUEUE -> ROLLUP_ENTRY_QUEUE -> ACTIVE -> NO_LONGER_ACTIVE

Transitions are evaluated once per poll from the coinbase signal and the
latest on-chain snapshots. Nothing here raises: an unexpected combination is
logged and the attester keeps its state until the next poll.
"""

from typing import Callable, Dict, List, Optional

from .log import get_logger
from .models import (
    AttesterRecord,
    AttesterState,
    AttesterView,
    OnChainStatus,
    ProviderQueueSnapshot,
    normalize_address,
)

logger = get_logger("lifecycle")

StateHook = Callable[[str, AttesterState, Optional[AttesterState]], None]

EXITED_STATUSES = (OnChainStatus.NONE, OnChainStatus.ZOMBIE, OnChainStatus.EXITING)


def is_attester_in_provider_queue(queue: Optional[ProviderQueueSnapshot], address: str) -> bool:
    """False, not an error, while no provider queue has been fetched yet."""
    if queue is None:
        return False
    return queue.contains(address)


def initial_state(has_coinbase: bool) -> AttesterState:
    return AttesterState.ROLLUP_ENTRY_QUEUE if has_coinbase else AttesterState.NEW


def _advance(state, has_coinbase, in_provider_queue, in_rollup_queue, on_chain_status, label) -> AttesterState:
    if state is AttesterState.NEW:
        if has_coinbase:
            return AttesterState.ROLLUP_ENTRY_QUEUE
        if in_provider_queue:
            return AttesterState.IN_STAKING_PROVIDER_QUEUE
        return state

    if state is AttesterState.IN_STAKING_PROVIDER_QUEUE:
        return AttesterState.ROLLUP_ENTRY_QUEUE if has_coinbase else state

    if state is AttesterState.ROLLUP_ENTRY_QUEUE:
        if not has_coinbase:
            logger.warning(f"{label} in ROLLUP_ENTRY_QUEUE lost its coinbase")
        if on_chain_status is not None and on_chain_status != OnChainStatus.NONE:
            return AttesterState.ACTIVE
        return state

    if state is AttesterState.ACTIVE:
        if not has_coinbase:
            logger.critical(f"STATE_INCONSISTENT: active attester {label} has no coinbase")
        return state

    if state is AttesterState.NO_LONGER_ACTIVE:
        return state

    logger.warning(f"Unknown state {state!r} for attester {label}; leaving unchanged")
    return state


def advance(state: AttesterState, has_coinbase: bool, in_provider_queue: bool, in_rollup_queue: bool,
            on_chain_status: Optional[OnChainStatus], label: str = "attester") -> AttesterState:
    """
    One transition step. `on_chain_status` is None when the rollup view is
    unknown this poll. Returns `state` itself when no transition applies.
    """
    try:
        return _advance(state, has_coinbase, in_provider_queue, in_rollup_queue, on_chain_status, label)
    except Exception:
        logger.exception(f"Transition failed for {label} in state {state!r}; leaving unchanged")
        return state


def classify_from_chain(has_coinbase: bool, in_provider_queue: bool, in_rollup_queue: bool,
                        on_chain_status: Optional[OnChainStatus],
                        existing: Optional[AttesterState] = None) -> Optional[AttesterState]:
    """
    Derives a state purely from on-chain data, for one-shot status reports.
    Queues are checked first: provider queue -> rollup entry queue -> on-chain status.
    `on_chain_status` is None when the status could not be read; that keeps `existing`.
    """
    if in_provider_queue:
        return AttesterState.IN_STAKING_PROVIDER_QUEUE
    if in_rollup_queue:
        return AttesterState.ROLLUP_ENTRY_QUEUE
    if on_chain_status is None:
        return existing
    if on_chain_status == OnChainStatus.VALIDATING:
        return AttesterState.ACTIVE
    if on_chain_status in EXITED_STATUSES:
        # Without a coinbase the attester was never staked, so there is nothing to retire
        if has_coinbase:
            return AttesterState.NO_LONGER_ACTIVE
    return existing


class AttesterLifecycle:
    """Holds one AttesterRecord per attester for a single network."""

    def __init__(self, network: str):
        self.network = network
        self.records: Dict[str, AttesterRecord] = {}
        self._hooks: List[StateHook] = []

    def subscribe(self, hook: StateHook):
        """hook(address, new_state, old_state); old_state is None on first observation."""
        self._hooks.append(hook)

    def get(self, address: str) -> Optional[AttesterRecord]:
        return self.records.get(normalize_address(address))

    def observe(self, address: str, has_coinbase: bool) -> AttesterRecord:
        key = normalize_address(address)
        record = self.records.get(key)
        if record is None:
            record = AttesterRecord(address=address, state=initial_state(has_coinbase))
            self.records[key] = record
            logger.info(f"[{self.network}] Tracking attester {address} as {record.state.value}")
            self._notify(record.address, record.state, None)
        return record

    def step(self, address: str, has_coinbase: bool, in_provider_queue: bool, in_rollup_queue: bool,
             view: Optional[AttesterView] = None, status_known: bool = True) -> AttesterState:
        """
        Advances one attester. `view` is the latest rollup view (None when the
        attester is unknown on-chain); pass status_known=False when the view
        could not be fetched this poll.
        """
        record = self.observe(address, has_coinbase)
        if status_known:
            record.on_chain_view = view
        status = None
        if status_known:
            status = view.status if view is not None else OnChainStatus.NONE

        was_active = record.state is AttesterState.ACTIVE
        label = f"[{self.network}] {record.address}"
        new_state = advance(record.state, has_coinbase, in_provider_queue, in_rollup_queue, status, label)
        self._commit(record, new_state)

        if was_active and record.state is AttesterState.ACTIVE:
            self.reconcile_exit(record, has_coinbase, status)
        return record.state

    def reconcile_exit(self, record: AttesterRecord, has_coinbase: bool, status: Optional[OnChainStatus]):
        """An ACTIVE attester that left the validator set is retired; it is never reanimated here."""
        if record.state is not AttesterState.ACTIVE or status is None:
            return
        if status in EXITED_STATUSES and has_coinbase:
            logger.warning(f"[{self.network}] Attester {record.address} is no longer active (on-chain {status.name})")
            self._commit(record, AttesterState.NO_LONGER_ACTIVE)

    def count_by_state(self) -> Dict[AttesterState, int]:
        counts = {state: 0 for state in AttesterState}
        for record in self.records.values():
            counts[record.state] += 1
        return counts

    def _commit(self, record: AttesterRecord, new_state: AttesterState):
        old_state = record.state
        if new_state is old_state:
            return
        record.state = new_state
        logger.info(f"[{self.network}] Attester {record.address}: {old_state.value} -> {new_state.value}")
        self._notify(record.address, new_state, old_state)

    def _notify(self, address: str, new_state: AttesterState, old_state: Optional[AttesterState]):
        for hook in self._hooks:
            try:
                hook(address, new_state, old_state)
            except Exception:
                logger.exception(f"[{self.network}] State hook failed for {address}")
