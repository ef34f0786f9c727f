"""
Per-network poll loop tying the coinbase reconciler to the attester lifecycle.
"""

import math
import os
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Set

from web3 import Web3

from .abi import STAKED_WITH_PROVIDER
from .cache import CoinbaseCache
from .chain import ChainClient
from .config import LOG_CHUNK_SIZE, NetworkConfig, load_network_config, parse_networks
from .errors import ConfigError, ReconciliationConflict, StakeCanaryError, UpstreamUnavailable
from .handlers import CoinbaseChangeLogger, NewAttesterBatcher
from .lifecycle import AttesterLifecycle, classify_from_chain, is_attester_in_provider_queue
from .log import get_logger
from .models import (
    EntryQueueStats,
    OnChainStatus,
    ProviderQueueSnapshot,
    PublisherBalance,
    QueuedAttester,
    ReconciliationResult,
    is_zero_address,
    normalize_address,
)
from .reconciler import CoinbaseReconciler

logger = get_logger("monitor")


def format_duration(seconds: float) -> str:
    m, s = divmod(max(0, int(seconds)), 60)
    h, m = divmod(m, 60)
    if h > 0:
        return f"{h}h {m}m"
    return f"{m}m {s}s" if m > 0 else f"{s}s"


def required_topup_wei(balance_wei: int, attester_count: int, publisher_count: int, min_wei_per_attester: int) -> int:
    """Top-up that keeps a publisher funded for its share of attesters; never negative."""
    if publisher_count <= 0:
        return 0
    per_publisher = math.ceil(attester_count / publisher_count)
    return max(0, per_publisher * min_wei_per_attester - balance_wei)


@dataclass
class NetworkContext:
    """Everything one network's poll loop reads and writes; nothing is shared across networks."""
    config: NetworkConfig
    chain: ChainClient
    reconciler: CoinbaseReconciler
    lifecycle: AttesterLifecycle
    batcher: Optional[NewAttesterBatcher] = None
    provider_queue: Optional[ProviderQueueSnapshot] = None
    # Lower-cased attesters in rollup entry queue order
    entry_queue: Optional[List[str]] = None
    entry_queue_stats: Optional[EntryQueueStats] = None
    publisher_balances: Dict[str, PublisherBalance] = field(default_factory=dict)
    poll_count: int = 0

    @property
    def network(self) -> str:
        return self.config.name

    def in_provider_queue(self, address: str) -> bool:
        return is_attester_in_provider_queue(self.provider_queue, address)

    def in_rollup_queue(self, address: str) -> bool:
        if self.entry_queue is None:
            return False
        return normalize_address(address) in self.entry_queue

    def entry_queue_position(self, address: str) -> Optional[int]:
        if self.entry_queue is None:
            return None
        try:
            return self.entry_queue.index(normalize_address(address))
        except ValueError:
            return None

    def coinbase_for(self, address: str) -> Optional[str]:
        """Scraped coinbase first, then the one declared in the scraper config."""
        scraped = self.reconciler.coinbase_for(address)
        if scraped:
            return scraped
        configured = self.config.configured_coinbases.get(normalize_address(address))
        if configured and not is_zero_address(configured):
            return configured
        return None

    def has_coinbase(self, address: str) -> bool:
        return self.coinbase_for(address) is not None


def discover_rollup_address(ctx: "NetworkContext", chunk_size: int = LOG_CHUNK_SIZE) -> Optional[str]:
    """
    Rollup named by the newest StakedWithProvider log for this provider.
    Walks back from the head one chunk at a time and stops at the first chunk with a hit.
    """
    end = ctx.chain.get_block_number()
    while end >= ctx.config.start_block:
        start = max(ctx.config.start_block, end - chunk_size + 1)
        logs = ctx.chain.get_logs(ctx.config.staking_registry_address, STAKED_WITH_PROVIDER,
                                  [ctx.config.provider_id], start, end)
        logs = [log for log in logs if not is_zero_address(log["args"].get("rollupAddress"))]
        if logs:
            newest = max(logs, key=lambda log: (log["blockNumber"], log["logIndex"]))
            return newest["args"]["rollupAddress"]
        end = start - 1
    return None


def build_context(config: NetworkConfig, chain: Optional[ChainClient] = None,
                  cache: Optional[CoinbaseCache] = None, with_handlers: bool = True) -> NetworkContext:
    chain = chain or ChainClient(config)
    cache = cache or CoinbaseCache(config.data_dir)

    provider_id = config.provider_id
    if provider_id is None and config.provider_admin:
        logger.info(f"[{config.name}] Looking up staking provider for admin {config.provider_admin}...")
        provider_id = chain.find_provider_id(config.provider_admin)
        if provider_id is None:
            raise ConfigError(f"[{config.name}] No staking provider registered for admin {config.provider_admin}")
        logger.info(f"[{config.name}] Provider ID: {provider_id}")
    if provider_id is None:
        raise ConfigError(f"[{config.name}] Set PROVIDER_ID or PROVIDER_ADMIN_ADDRESS")
    config.provider_id = provider_id

    reconciler = CoinbaseReconciler(
        network=config.name,
        chain=chain,
        cache=cache,
        provider_id=provider_id,
        registry_address=config.staking_registry_address,
        watch_set=config.targets,
        start_block=config.start_block,
    )
    context = NetworkContext(
        config=config,
        chain=chain,
        reconciler=reconciler,
        lifecycle=AttesterLifecycle(config.name),
    )
    if with_handlers:
        context.batcher = NewAttesterBatcher(config.name, config.debounce_sec)
        context.lifecycle.subscribe(context.batcher.on_state_change)
        reconciler.subscribe(CoinbaseChangeLogger(config.name).on_mapping)
    return context


class StakeCanary:
    def __init__(self, contexts: List[NetworkContext]):
        self.contexts = contexts
        self.failed_networks: Set[str] = set()
        self._stop = threading.Event()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> "StakeCanary":
        networks = parse_networks(environ.get("NETWORKS", "mainnet"))
        return cls([build_context(load_network_config(n, environ)) for n in networks])

    def init_network(self, ctx: NetworkContext):
        """Verifies the RPC and primes the coinbase snapshot from disk."""
        net = ctx.network
        logger.info(f"[{net}] Initializing (chain {ctx.config.chain_id}, provider {ctx.config.provider_id})...")
        ctx.chain.verify_connection()

        if not ctx.config.targets:
            logger.warning(f"[{net}] No TARGETS configured. Monitoring the provider queue only.")
        else:
            logger.info(f"[{net}] Tracking {len(ctx.config.targets)} attesters: {', '.join(sorted(ctx.config.targets))}")
        if ctx.chain.rollup is None:
            self.resolve_rollup(ctx)
        if ctx.chain.rollup is None:
            logger.warning(f"[{net}] ROLLUP_ADDRESS not set; entry queue and validator status signals disabled")

        snapshot = ctx.reconciler.load_snapshot()
        if snapshot is not None:
            logger.info(f"[{net}] Loaded {len(snapshot.mappings)} cached coinbase mapping(s) "
                        f"up to block {snapshot.last_scanned_block}")

    def resolve_rollup(self, ctx: NetworkContext):
        net = ctx.network
        logger.info(f"[{net}] ROLLUP_ADDRESS not set; looking it up from StakedWithProvider logs...")
        try:
            rollup = discover_rollup_address(ctx)
        except UpstreamUnavailable as e:
            logger.warning(f"[{net}] Rollup lookup failed: {e}")
            return
        if rollup is None:
            logger.warning(f"[{net}] No StakedWithProvider log names a rollup for provider {ctx.config.provider_id}")
            return
        ctx.chain.use_rollup(rollup)
        ctx.config.rollup_address = rollup
        logger.info(f"[{net}] Using rollup {rollup}")

    def refresh_queues(self, ctx: NetworkContext):
        queue = ctx.chain.get_provider_queue(ctx.config.provider_id)
        ctx.provider_queue = ProviderQueueSnapshot(provider_id=ctx.config.provider_id, attesters=queue)
        if ctx.chain.rollup is not None:
            ctx.entry_queue = [normalize_address(a) for a in ctx.chain.get_all_queued_attesters()]

    def poll(self, ctx: NetworkContext) -> ReconciliationResult:
        """
        One full cycle for a network: queues, coinbase scrape, then one lifecycle
        step per target. UpstreamUnavailable from the queue or scrape aborts the cycle.
        """
        net = ctx.network
        self.refresh_queues(ctx)
        result = ctx.reconciler.scrape_incremental()

        for target in sorted(ctx.config.targets):
            view, status_known = None, False
            if ctx.chain.rollup is not None:
                try:
                    view = ctx.chain.get_attester_view(target)
                    status_known = True
                except UpstreamUnavailable as e:
                    logger.error(f"[{net}] Failed to check status for {target}: {e}")

            ctx.lifecycle.step(
                target,
                has_coinbase=ctx.has_coinbase(target),
                in_provider_queue=ctx.in_provider_queue(target),
                in_rollup_queue=ctx.in_rollup_queue(target),
                view=view,
                status_known=status_known,
            )

        self.report_entry_queue(ctx)
        self.check_publishers(ctx)

        ctx.poll_count += 1
        counts = ctx.lifecycle.count_by_state()
        states = " | ".join(f"{state.value}: {n}" for state, n in counts.items() if n)
        queue_len = len(ctx.provider_queue.attesters) if ctx.provider_queue else 0
        logger.info(f"[Heartbeat] [{net}] L1: {result.end_block} | Provider queue: {queue_len} | "
                    f"Coinbases: {len(result.mappings)} | {states or 'no attesters'}")
        return result

    def report_entry_queue(self, ctx: NetworkContext) -> Optional[EntryQueueStats]:
        """Position and ETA of every tracked attester waiting in the rollup entry queue."""
        if ctx.entry_queue is None:
            return None
        net = ctx.network
        try:
            epoch_duration = ctx.chain.get_epoch_duration()
            flush_size = ctx.chain.get_entry_queue_flush_size()
        except UpstreamUnavailable as e:
            logger.error(f"[{net}] Failed to read entry queue parameters: {e}")
            return None

        time_per_attester = 0.0
        if flush_size > 0:
            time_per_attester = epoch_duration * ctx.config.l2_block_time_sec / flush_size

        queued = []
        for target in ctx.config.targets:
            position = ctx.entry_queue_position(target)
            if position is None:
                continue
            queued.append(QueuedAttester(
                address=target,
                position=position,
                has_coinbase=ctx.has_coinbase(target),
                eta_sec=position * time_per_attester,
            ))
        queued.sort(key=lambda q: q.position)
        stats = EntryQueueStats(total_queue_length=len(ctx.entry_queue),
                                time_per_attester_sec=time_per_attester, queued=queued)
        ctx.entry_queue_stats = stats

        for q in queued:
            logger.info(f"[{net}] Entry queue: {q.address} at position {q.position + 1}/{stats.total_queue_length} "
                        f"(ETA {format_duration(q.eta_sec)})")
            if not q.has_coinbase:
                logger.warning(f"[{net}] Queued attester {q.address} has no coinbase configured")
        missing = stats.next_missing_coinbase
        if missing is not None:
            logger.error(f"[{net}] Next attester without coinbase {missing.address} activates in "
                         f"{format_duration(missing.eta_sec)}; set its coinbase before then")
        return stats

    def check_publishers(self, ctx: NetworkContext) -> Dict[str, PublisherBalance]:
        """Warns when a publisher holds less ETH than its share of attesters needs."""
        publishers = ctx.config.publishers
        if not publishers:
            return {}
        net = ctx.network
        attester_count = len(ctx.config.targets)
        balances: Dict[str, PublisherBalance] = {}
        for publisher in publishers:
            try:
                balance = ctx.chain.get_balance(publisher)
            except UpstreamUnavailable as e:
                logger.error(f"[{net}] Failed to read balance of publisher {publisher}: {e}")
                continue
            topup = required_topup_wei(balance, attester_count, len(publishers), ctx.config.min_eth_per_attester_wei)
            balances[publisher] = PublisherBalance(address=publisher, balance_wei=balance, required_topup_wei=topup)
            if topup > 0:
                logger.warning(f"[{net}] Publisher {publisher} balance {Web3.from_wei(balance, 'ether')} ETH is low; "
                               f"top up {Web3.from_wei(topup, 'ether')} ETH")
        ctx.publisher_balances = balances
        return balances

    def run_network(self, ctx: NetworkContext):
        """Polls one network until stopped; polls never overlap."""
        net = ctx.network
        try:
            self.init_network(ctx)
        except StakeCanaryError as e:
            logger.error(f"[{net}] Failed to initialize: {e}")
            self.failed_networks.add(net)
            return

        while not self._stop.is_set():
            try:
                self.poll(ctx)
            except ReconciliationConflict:
                logger.critical(f"[{net}] Stopping monitor: coinbase conflict needs manual inspection")
                self.failed_networks.add(net)
                return
            except UpstreamUnavailable as e:
                logger.error(f"[{net}] Poll aborted, will retry: {e}")
            except Exception as e:
                logger.error(f"[{net}] Loop error: {e}", exc_info=True)
            self._stop.wait(ctx.config.poll_interval_sec)

    def run_realtime(self):
        """Real-time monitoring, one thread per network."""
        logger.info("Starting Real-time Monitor...")
        threads = [
            threading.Thread(target=self.run_network, args=(ctx,), name=f"stakecanary-{ctx.network}", daemon=True)
            for ctx in self.contexts
        ]
        for t in threads:
            t.start()
        try:
            while any(t.is_alive() for t in threads):
                for t in threads:
                    t.join(timeout=1.0)
        except KeyboardInterrupt:
            logger.info("Stopping...")
        finally:
            self.stop()
            for t in threads:
                t.join(timeout=5.0)

    def stop(self):
        self._stop.set()
        for ctx in self.contexts:
            if ctx.batcher is not None:
                ctx.batcher.debouncer.cancel()

    def run_scan(self, mode: str = "incremental") -> Dict[str, ReconciliationResult]:
        """One-shot coinbase scrape per network ("full" or "incremental")."""
        results: Dict[str, ReconciliationResult] = {}
        for ctx in self.contexts:
            self.init_network(ctx)
            if mode == "full":
                result = ctx.reconciler.scrape_full()
            else:
                result = ctx.reconciler.scrape_incremental()
            results[ctx.network] = result

            logger.info("-" * 40)
            logger.info(f"[{ctx.network}] Scan Complete. Blocks {result.start_block}-{result.end_block}")
            logger.info(f"[{ctx.network}] Mappings: {len(result.mappings)} "
                        f"(new: {result.new_mappings}, updated: {result.updated_mappings})")
            logger.info("-" * 40)
        return results

    def report_status(self):
        """Prints on-chain status and the state it implies for every target."""
        for ctx in self.contexts:
            net = ctx.network
            self.init_network(ctx)
            self.refresh_queues(ctx)
            self.report_entry_queue(ctx)
            self.check_publishers(ctx)

            for target in sorted(ctx.config.targets):
                view, status = None, None
                if ctx.chain.rollup is not None:
                    view = ctx.chain.get_attester_view(target)
                    # The rollup reverts for attesters it has never seen
                    status = view.status if view is not None else OnChainStatus.NONE
                coinbase = ctx.coinbase_for(target)
                derived = classify_from_chain(
                    has_coinbase=coinbase is not None,
                    in_provider_queue=ctx.in_provider_queue(target),
                    in_rollup_queue=ctx.in_rollup_queue(target),
                    on_chain_status=status,
                )
                status_str = status.name if status is not None else "UNKNOWN (no rollup)"
                balance = Web3.from_wei(view.effective_balance, "ether") if view is not None else 0
                withdrawer = view.withdrawer if view is not None else "unknown"
                derived_str = derived.value if derived is not None else "unchanged"
                logger.info(f"[{net}] Attester {target}: status {status_str} (Balance: {balance}) | "
                            f"Coinbase: {coinbase or 'none'} | Withdrawer: {withdrawer} | State: {derived_str}")
                if view is not None and view.exit.exists:
                    logger.info(f"[{net}]   Exit: amount {Web3.from_wei(view.exit.amount, 'ether')}, "
                                f"exitable at {view.exit.exitable_at}, recipient {view.exit.recipient_or_withdrawer}")
                if status in (OnChainStatus.ZOMBIE, OnChainStatus.EXITING):
                    logger.warning(f"[{net}] Attester {target} status is {status_str}")
