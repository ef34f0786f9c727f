"""
Coinbase reconciliation: scrape StakedWithProvider events for a staking
provider and merge the attester -> coinbase mappings into the per-network cache.

Merge rules, applied per attester in event order:
  1. unknown attester                     -> insert (new)
  2. same coinbase                        -> keep the higher block (updated if incoming is newer)
  3. cached zero address, incoming set    -> incoming wins (updated)
  4. cached set, incoming zero address    -> cached wins, nothing changes
  5. two different non-zero coinbases     -> ReconciliationConflict, nothing is persisted

The zero address is emitted while the split contract is still a placeholder,
so it never counts as a real value. A real coinbase must never change.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set

from .abi import STAKED_WITH_PROVIDER
from .cache import CoinbaseCache
from .config import LOG_CHUNK_SIZE, LOG_FETCH_BACKOFF_SEC, LOG_FETCH_RETRIES, MIN_SPLIT_SPAN
from .errors import CacheCorrupt, ReconciliationConflict, UpstreamUnavailable
from .log import get_logger
from .models import (
    CoinbaseCacheSnapshot,
    CoinbaseMapping,
    ReconciliationResult,
    is_zero_address,
    normalize_address,
)

logger = get_logger("reconciler")

MappingHook = Callable[[CoinbaseMapping, str], None]


@dataclass
class MergeOutcome:
    merged: Dict[str, CoinbaseMapping]
    new_keys: Set[str] = field(default_factory=set)
    updated_keys: Set[str] = field(default_factory=set)

    @property
    def new_count(self) -> int:
        return len(self.new_keys)

    @property
    def updated_count(self) -> int:
        # An attester first inserted and then refreshed in the same merge is still just "new"
        return len(self.updated_keys - self.new_keys)


def merge_mappings(existing: Dict[str, CoinbaseMapping], incoming: Iterable[CoinbaseMapping]) -> MergeOutcome:
    """Pure merge; `existing` is never mutated. Raises ReconciliationConflict on rule 5."""
    outcome = MergeOutcome(merged=dict(existing))
    merged = outcome.merged

    for mapping in incoming:
        key = mapping.key
        current = merged.get(key)

        if current is None:
            merged[key] = mapping
            outcome.new_keys.add(key)
            continue

        if normalize_address(current.coinbase_address) == normalize_address(mapping.coinbase_address):
            if mapping.block_number > current.block_number:
                merged[key] = mapping
                outcome.updated_keys.add(key)
            continue

        if current.is_unset:
            logger.info(f"  Overriding zero address for {mapping.attester_address} -> {mapping.coinbase_address}")
            merged[key] = mapping
            outcome.updated_keys.add(key)
            continue

        if mapping.is_unset:
            logger.debug(f"  Keeping existing coinbase {current.coinbase_address} for {mapping.attester_address}")
            continue

        raise ReconciliationConflict(
            attester=mapping.attester_address,
            existing_coinbase=current.coinbase_address,
            existing_block=current.block_number,
            incoming_coinbase=mapping.coinbase_address,
            incoming_block=mapping.block_number,
        )

    return outcome


class CoinbaseReconciler:
    """
    Owns the coinbase snapshot of one network. scrape_full/scrape_incremental
    are serialised by an internal lock so two merges never interleave.
    """

    def __init__(
        self,
        network: str,
        chain,
        cache: CoinbaseCache,
        provider_id: int,
        registry_address: str,
        watch_set: Iterable[str],
        start_block: int,
        chunk_size: int = LOG_CHUNK_SIZE,
        min_split_span: int = MIN_SPLIT_SPAN,
        retries: int = LOG_FETCH_RETRIES,
        backoff_sec: float = LOG_FETCH_BACKOFF_SEC,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.network = network
        self.chain = chain
        self.cache = cache
        self.provider_id = provider_id
        self.registry_address = registry_address
        self.watch_set: Set[str] = {normalize_address(a) for a in watch_set}
        self.start_block = start_block
        self.chunk_size = chunk_size
        self.min_split_span = max(1, min_split_span)
        self.retries = retries
        self.backoff_sec = backoff_sec
        self._sleep = sleep
        self._clock = clock

        self.snapshot: Optional[CoinbaseCacheSnapshot] = None
        self._hooks: List[MappingHook] = []
        self._lock = threading.Lock()

    def subscribe(self, hook: MappingHook):
        """hook(mapping, kind) with kind "new" or "updated", called after the snapshot is persisted."""
        self._hooks.append(hook)

    # --- Read helpers ---

    def load_snapshot(self) -> Optional[CoinbaseCacheSnapshot]:
        with self._lock:
            self.snapshot = self._load_existing()
            return self.snapshot

    def coinbase_for(self, attester: str) -> Optional[str]:
        if self.snapshot is None:
            return None
        mapping = self.snapshot.get(attester)
        if mapping is None or mapping.is_unset:
            return None
        return mapping.coinbase_address

    def has_coinbase(self, attester: str) -> bool:
        return self.coinbase_for(attester) is not None

    # --- Scraping ---

    def scrape_range(self, from_block: int, to_block: int) -> List[CoinbaseMapping]:
        """
        Fetches StakedWithProvider logs for the provider in [from_block, to_block],
        chunk by chunk in increasing block order, keeping only watched attesters.
        Raises UpstreamUnavailable if any chunk cannot be fetched.
        """
        if from_block > to_block:
            return []

        mappings: List[CoinbaseMapping] = []
        timestamps: Dict[int, int] = {}
        start = from_block
        while start <= to_block:
            end = min(start + self.chunk_size - 1, to_block)
            logger.debug(f"[{self.network}]   Fetching logs: {start} to {end}...")

            logs = self._fetch_chunk(start, end)
            logs.sort(key=lambda log: (log["blockNumber"], log.get("logIndex", 0)))
            for log in logs:
                args = log["args"]
                attester = args["attester"]
                if normalize_address(attester) not in self.watch_set:
                    continue

                block_number = log["blockNumber"]
                if block_number not in timestamps:
                    timestamps[block_number] = self.chain.get_block_timestamp(block_number)

                mapping = CoinbaseMapping(
                    attester_address=attester,
                    coinbase_address=args["coinbaseSplitContractAddress"],
                    block_number=block_number,
                    block_hash=log["blockHash"],
                    timestamp=timestamps[block_number],
                )
                mappings.append(mapping)
                logger.info(f"[{self.network}]   {attester} -> {mapping.coinbase_address} (block {block_number})")

            start = end + 1

        logger.info(f"[{self.network}] Found {len(mappings)} coinbase mapping(s) in blocks {from_block}-{to_block}")
        return mappings

    def _fetch_chunk(self, start: int, end: int) -> List[dict]:
        last_error: Optional[UpstreamUnavailable] = None
        for attempt in range(self.retries + 1):
            try:
                return self.chain.get_logs(
                    self.registry_address, STAKED_WITH_PROVIDER, [self.provider_id], start, end
                )
            except UpstreamUnavailable as e:
                last_error = e
                if attempt < self.retries:
                    self._sleep(self.backoff_sec * (attempt + 1))

        # Providers reject oversized responses; retry the range as two halves
        if end - start + 1 > self.min_split_span:
            mid = (start + end) // 2
            logger.warning(f"[{self.network}] eth_getLogs {start}-{end} keeps failing, splitting at {mid}")
            return self._fetch_chunk(start, mid) + self._fetch_chunk(mid + 1, end)

        raise UpstreamUnavailable(
            f"[{self.network}] Could not fetch logs for blocks {start}-{end}: {last_error}",
            from_block=start, to_block=end,
        ) from last_error

    def scrape_full(self) -> ReconciliationResult:
        """Scans from the deployment block to head and validates the result against any cached snapshot."""
        with self._lock:
            return self._scrape_full(self._load_existing())

    def scrape_incremental(self) -> ReconciliationResult:
        """Scans from the last scanned block to head; falls back to a full scrape without a cache."""
        with self._lock:
            existing = self._load_existing()
            if existing is None:
                logger.info(f"[{self.network}] No existing coinbase cache, performing full scrape...")
                return self._scrape_full(None)

            start = existing.last_scanned_block + 1
            head = self.chain.get_block_number()
            if start > head:
                self.snapshot = existing
                logger.debug(f"[{self.network}] Coinbase cache is up to date "
                             f"(last scanned: {existing.last_scanned_block}, head: {head})")
                return ReconciliationResult(
                    mappings=list(existing.mappings.values()),
                    start_block=existing.last_scanned_block,
                    end_block=head,
                )

            logger.info(f"[{self.network}] Incremental coinbase scrape: {start} to {head} ({head - start + 1} blocks)")
            scraped = self.scrape_range(start, head)
            outcome = self._merge(existing.mappings, scraped)
            return self._commit(existing, outcome, start, head)

    def _scrape_full(self, existing: Optional[CoinbaseCacheSnapshot]) -> ReconciliationResult:
        head = self.chain.get_block_number()
        start = self.start_block
        logger.info(f"[{self.network}] Full coinbase scrape: {start} to {head} ({max(0, head - start + 1)} blocks)")

        scraped = self.scrape_range(start, head)
        if existing is not None:
            logger.info(f"[{self.network}] Validating {len(scraped)} scraped mapping(s) against existing cache...")
        outcome = self._merge(existing.mappings if existing else {}, scraped)
        return self._commit(existing, outcome, start, head)

    def _merge(self, existing: Dict[str, CoinbaseMapping], scraped: List[CoinbaseMapping]) -> MergeOutcome:
        try:
            return merge_mappings(existing, scraped)
        except ReconciliationConflict as e:
            logger.critical(f"[{self.network}] {e}")
            raise

    def _commit(self, existing: Optional[CoinbaseCacheSnapshot], outcome: MergeOutcome,
                start: int, end: int) -> ReconciliationResult:
        last_scanned = end
        if existing is not None and existing.last_scanned_block > end:
            logger.warning(f"[{self.network}] Chain head {end} is behind cached height "
                           f"{existing.last_scanned_block}; keeping cached height")
            last_scanned = existing.last_scanned_block

        snapshot = CoinbaseCacheSnapshot(
            network=self.network,
            provider_id=self.provider_id,
            last_scanned_block=last_scanned,
            mappings=outcome.merged,
            scraped_at=self._clock(),
        )
        path = self.cache.save(snapshot)
        self.snapshot = snapshot
        logger.info(f"[{self.network}] Coinbase cache saved to {path}: {outcome.new_count} new, "
                    f"{outcome.updated_count} updated, {len(snapshot.mappings)} total")

        self._notify(outcome)
        self._report_missing(snapshot)

        return ReconciliationResult(
            mappings=list(snapshot.mappings.values()),
            start_block=start,
            end_block=end,
            new_mappings=outcome.new_count,
            updated_mappings=outcome.updated_count,
        )

    def _load_existing(self) -> Optional[CoinbaseCacheSnapshot]:
        path = self.cache.path_for(self.network)
        try:
            existing = self.cache.load(self.network)
        except CacheCorrupt as e:
            logger.error(f"[{self.network}] {e}. Discarding it and forcing a full rescrape; "
                         f"the file will be overwritten by the next successful scrape")
            return None
        if existing is not None and existing.provider_id != self.provider_id:
            logger.error(f"[{self.network}] Cache at {path} belongs to provider {existing.provider_id}, "
                         f"configured provider is {self.provider_id}. Forcing a full rescrape")
            return None
        return existing

    def _notify(self, outcome: MergeOutcome):
        if not self._hooks:
            return
        changed = [(k, "new") for k in sorted(outcome.new_keys)]
        changed += [(k, "updated") for k in sorted(outcome.updated_keys - outcome.new_keys)]
        for key, kind in changed:
            mapping = outcome.merged[key]
            for hook in self._hooks:
                try:
                    hook(mapping, kind)
                except Exception:
                    logger.exception(f"[{self.network}] Mapping hook failed for {mapping.attester_address}")

    def _report_missing(self, snapshot: CoinbaseCacheSnapshot):
        missing = []
        for attester in sorted(self.watch_set):
            mapping = snapshot.mappings.get(attester)
            if mapping is None or is_zero_address(mapping.coinbase_address):
                missing.append(attester)
        if missing:
            logger.warning(f"[{self.network}] {len(missing)} watched attester(s) have no coinbase yet: "
                           f"{', '.join(missing)}")
