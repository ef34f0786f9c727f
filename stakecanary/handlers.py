"""
Subscribers for reconciler and lifecycle notifications.
"""

import threading
from typing import Callable, List, Optional, Set

from .log import get_logger
from .models import AttesterState, CoinbaseMapping, normalize_address

logger = get_logger("handlers")


class Debouncer:
    """
    Runs `action` once after `delay_sec` of quiet. Every trigger() restarts
    the window; cancel() drops a pending run.
    """

    def __init__(self, delay_sec: float, action: Callable[[], None], timer_factory=threading.Timer):
        self.delay_sec = delay_sec
        self.action = action
        self._timer_factory = timer_factory
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    def trigger(self):
        def run():
            self._fire(timer)

        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            timer = self._timer_factory(self.delay_sec, run)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def cancel(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def _fire(self, timer):
        with self._lock:
            # A timer that lost the race with a newer trigger() must not run or clear its successor
            if self._timer is not timer:
                return
            self._timer = None
        try:
            self.action()
        except Exception:
            logger.exception("Debounced action failed")


def log_registration_batch(network: str, attesters: List[str]):
    logger.info(f"[{network}] {len(attesters)} NEW attester(s) need addKeysToProvider registration: "
                f"{', '.join(attesters)}")


class NewAttesterBatcher:
    """
    Collects attesters entering NEW and hands them to `batch_action` in one
    call once no further NEW attester has shown up for the debounce window.
    """

    def __init__(self, network: str, delay_sec: float,
                 batch_action: Optional[Callable[[str, List[str]], None]] = None,
                 timer_factory=threading.Timer):
        self.network = network
        self.batch_action = batch_action or log_registration_batch
        self._pending: Set[str] = set()
        self._lock = threading.Lock()
        self.debouncer = Debouncer(delay_sec, self.flush, timer_factory=timer_factory)

    def on_state_change(self, address: str, new_state: AttesterState, old_state: Optional[AttesterState]):
        with self._lock:
            if new_state is AttesterState.NEW:
                self._pending.add(address)
            else:
                # Left NEW before the batch fired; nothing to register any more
                self._pending = {a for a in self._pending if normalize_address(a) != normalize_address(address)}
                if not self._pending:
                    self.debouncer.cancel()
                    return
        if new_state is AttesterState.NEW:
            logger.info(f"[{self.network}] NEW attester detected: {address}, scheduling batch processing")
            self.debouncer.trigger()

    def flush(self):
        with self._lock:
            batch = sorted(self._pending)
            self._pending.clear()
        if batch:
            self.batch_action(self.network, batch)


class CoinbaseChangeLogger:
    def __init__(self, network: str):
        self.network = network

    def on_mapping(self, mapping: CoinbaseMapping, kind: str):
        if mapping.is_unset:
            logger.info(f"[{self.network}] Coinbase placeholder recorded for {mapping.attester_address} "
                        f"(block {mapping.block_number})")
            return
        logger.info(f"[{self.network}] Coinbase {kind}: {mapping.attester_address} -> {mapping.coinbase_address} "
                    f"(block {mapping.block_number})")
