"""
Monitor Service

Owns the pipeline state and its background tasks:
1. Seeds the registry from the whale store and the leaderboard
2. Runs the trade stream (discovery, pushed prices, liquidation feed)
3. Runs a baseline full scan once the stream has had time to discover
4. Periodically rescans all addresses, refreshes prices and the leaderboard
5. Serves immediate scans requested by whale trades or manual adds, and
   alerts on genuinely new risky positions

All state is mutated by synchronous methods on one event loop, so every
mutation is atomic with respect to the other tasks.
"""

import asyncio
import logging
import re
import sqlite3
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from ..alerts.base import AlertPayload, LoggingSink, NotificationSink
from ..api.hyperliquid import HyperliquidClient
from ..config import Config, config as default_config
from ..db.whale_db import WhaleDB
from ..models import DangerLevel, Direction, EvaluatedPosition
from .dedup import AlertDeduplicator
from .enrichment import WalletEnrichment
from .evaluator import TAG_VAULT_ATTACK, ClassificationRule
from .liquidations import LiquidationTracker
from .market_data import MarketDataCache
from .registry import AddressRegistry
from .scanner import PositionScanner
from .tasks import run_periodic, wait_for_stop
from .trade_stream import TradeStreamListener

logger = logging.getLogger(__name__)

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

# Trigger marker for scans that did not come from a trade
MANUAL_TRIGGER = None


class LiquidationMonitor:
    """
    Main monitoring service.

    Args:
        cfg: Configuration (default: global config)
        client: Exchange client (default: HyperliquidClient)
        sinks: Notification sinks (default: LoggingSink only)
        store: Optional whale store for seeding and write-through
        rules: Classification rules for the evaluator
        clock: Time source (injectable for tests)
    """

    def __init__(
        self,
        cfg: Config = None,
        client=None,
        sinks: Sequence[NotificationSink] = None,
        store: Optional[WhaleDB] = None,
        rules: Sequence[ClassificationRule] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg or default_config
        self.client = client or HyperliquidClient(self.cfg)
        self.sinks: List[NotificationSink] = list(sinks) if sinks is not None else [LoggingSink()]
        self.store = store
        self._clock = clock

        self.market_data = MarketDataCache(clock=clock)
        self.registry = AddressRegistry(self.cfg, clock=clock)
        self.dedup = AlertDeduplicator(cfg=self.cfg, clock=clock)
        self.enrichment = WalletEnrichment(self.client, self.cfg, clock=clock)
        self.liquidations = LiquidationTracker(self.cfg)
        self.scanner = PositionScanner(
            self.client, self.market_data, self.registry, self.cfg,
            rules=rules, enrichment=self.enrichment, clock=clock,
        )
        self.stream = TradeStreamListener(
            self.registry,
            self.market_data,
            request_scan=self.request_immediate_scan,
            on_fills=self.liquidations.process_fills,
            on_address_seen=self._remember_address,
            cfg=self.cfg,
            clock=clock,
        )

        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._notify_tasks: Set[asyncio.Task] = set()

        # Immediate scans: queue of addresses, triggers coalesced per address
        self._scan_queue: asyncio.Queue = asyncio.Queue(maxsize=self.cfg.immediate_scan_queue_size)
        self._pending_scans: Dict[str, Set[Optional[str]]] = {}

        # Whale store write-through buffer: address -> volume delta
        self._pending_writes: Dict[str, float] = {}

        self.baseline_done = False
        self.started_at: Optional[float] = None
        self.alerts_sent = 0
        self.alerts_failed = 0
        self.scans_dropped = 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _spawn(self, name: str, coro) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.append(task)
        return task

    async def start(self):
        """Run the startup sequence and launch the background tasks."""
        logger.info("Starting HL Liquidation Hunter...")
        self._stop.clear()
        self.started_at = self._clock()

        await self._load_store()

        instruments = await self.client.get_instrument_list()
        if instruments:
            self.stream.set_instruments(instruments)
            logger.info(f"Loaded {len(instruments)} instruments")
        else:
            logger.warning("Instrument list unavailable, subscribing to majors only")

        await self.refresh_prices()
        await self.refresh_leaderboard()

        self._spawn("trade_stream", self.stream.run(self._stop))
        for i in range(self.cfg.immediate_scan_workers):
            self._spawn(f"scan_worker_{i}", self._scan_worker())

        logger.info(f"Waiting {self.cfg.startup_discovery_wait_sec:.0f}s for trade discovery...")
        if await wait_for_stop(self._stop, self.cfg.startup_discovery_wait_sec):
            return

        await self.refresh_positions()

        self._spawn("positions", run_periodic(
            "positions", self.cfg.refresh_interval_sec, self.refresh_positions, self._stop))
        self._spawn("prices", run_periodic(
            "prices", self.cfg.price_refresh_sec, self.refresh_prices, self._stop))
        self._spawn("leaderboard", run_periodic(
            "leaderboard", self.cfg.leaderboard_refresh_sec, self.refresh_leaderboard, self._stop))
        self._spawn("housekeeping", run_periodic(
            "housekeeping", self.cfg.housekeeping_interval_sec, self.housekeeping, self._stop))

        logger.info(f"Monitor running: {len(self.registry)} addresses, {len(self.scanner)} tracked positions")

    async def run(self):
        """Start, then block until stop is requested."""
        try:
            await self.start()
            await self._stop.wait()
        finally:
            await self.stop()

    def request_stop(self):
        self._stop.set()

    async def stop(self):
        """
        Stop the monitor.

        Background loops exit at their next wake-up; in-flight requests are
        allowed to finish or time out before sessions are closed.
        """
        logger.info("Stopping monitor...")
        self._stop.set()

        grace = self.cfg.request_timeout_sec + 5
        await self._drain(self._tasks, grace, "background")
        self._tasks = []
        await self._drain(list(self._notify_tasks), grace, "notification")

        try:
            await self.flush_store()
        finally:
            await self._close_resources()
        logger.info("Monitor stopped")

    async def _close_resources(self):
        closers = [("stream", self.stream.close), ("client", self.client.close)]
        closers += [(sink.platform, sink.close) for sink in self.sinks]
        for name, close in closers:
            try:
                await close()
            except Exception as e:
                logger.error(f"Closing {name} failed: {e!r}")

    @staticmethod
    async def _drain(tasks: List[asyncio.Task], timeout: float, label: str):
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} {label} tasks that did not finish in {timeout:.0f}s")
            await asyncio.gather(*pending, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Periodic work
    # -------------------------------------------------------------------------

    async def refresh_positions(self):
        positions = await self.scanner.full_scan()
        if positions is not None and not self.baseline_done:
            self.baseline_done = True
            logger.info(f"Marked {len(positions)} existing positions as known (no alerts for these)")
        if positions:
            await self.enrich_tracked(positions)

    async def enrich_tracked(self, positions: List[EvaluatedPosition]) -> int:
        """
        Look up wallet facts for tracked positions whose address is not cached
        yet, most dangerous first, at most enrichment_warm_limit addresses.

        Returns:
            Number of tracked records updated
        """
        pending: List[str] = []
        for pos in positions:
            if len(pending) >= self.cfg.enrichment_warm_limit:
                break
            if pos.address not in pending and not self.enrichment.is_cached(pos.address):
                pending.append(pos.address)
        if not pending:
            return 0

        await asyncio.gather(*(self.enrichment.warm(addr) for addr in pending))
        # Records may have been replaced by immediate scans while fetching
        updated = self.scanner.reapply_enrichment(set(pending))
        logger.debug(f"Enriched {updated} tracked positions across {len(pending)} addresses")
        return updated

    async def refresh_prices(self):
        prices = await self.client.get_all_mark_prices()
        if prices:
            self.market_data.replace(prices)
        else:
            logger.warning("Price refresh failed, keeping cached prices")

    async def refresh_leaderboard(self):
        addresses = await self.client.get_leaderboard_addresses()
        added = self.registry.import_addresses(addresses)
        logger.info(f"Leaderboard: {len(addresses)} traders, {added} new (registry: {len(self.registry)})")
        if added and self.store is not None:
            await self._store_call(self.store.upsert_batch, [(a, 0.0) for a in addresses], "leaderboard")

    async def housekeeping(self):
        evicted = self.registry.evict_if_over_capacity()
        expired = self.dedup.prune()
        pruned = self.enrichment.prune()
        await self.flush_store()
        logger.debug(f"Housekeeping: {evicted} evicted, {expired} cooldowns expired, {pruned} cache entries pruned")

    # -------------------------------------------------------------------------
    # Immediate scans
    # -------------------------------------------------------------------------

    def request_immediate_scan(self, address: str, instrument: Optional[str]) -> bool:
        """
        Queue an out-of-band scan. Duplicate requests for a pending address
        are coalesced.

        Returns:
            False if the queue is full and the request was dropped
        """
        address = address.lower()
        pending = self._pending_scans.get(address)
        if pending is not None:
            pending.add(instrument)
            return True

        try:
            self._scan_queue.put_nowait(address)
        except asyncio.QueueFull:
            self.scans_dropped += 1
            logger.warning(f"Immediate scan queue full, dropping {address[:10]}")
            return False

        self._pending_scans[address] = {instrument}
        return True

    async def _scan_worker(self):
        while not self._stop.is_set():
            try:
                address = await asyncio.wait_for(self._scan_queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue

            triggers = self._pending_scans.pop(address, {MANUAL_TRIGGER})
            try:
                await self.check_address(address, triggers)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Immediate scan of {address[:10]} failed: {e}")
            finally:
                self._scan_queue.task_done()

    async def check_address(self, address: str, triggers: Set[Optional[str]]) -> List[EvaluatedPosition]:
        """
        Scan one address, merge the results and alert on eligible new keys.

        A new key is eligible when its instrument triggered the scan, when it
        carries the vault-attack tag, or when the scan was manual.

        Returns:
            Positions that were alerted
        """
        positions = await self.scanner.scan_address(address)
        if positions is None:
            return []

        new_positions = self.scanner.merge_address(address, positions)
        if not new_positions:
            return []
        if not self.baseline_done:
            logger.debug(f"Baseline scan pending, not alerting {len(new_positions)} new positions")
            return []

        manual = MANUAL_TRIGGER in triggers
        alerted = []
        for pos in new_positions:
            if manual or pos.instrument in triggers or TAG_VAULT_ATTACK in pos.tags:
                logger.info(
                    f"NEW POSITION: {pos.short_address} | {pos.instrument} {pos.direction.value} | "
                    f"${pos.notional_usd / 1e6:.2f}M | {pos.distance_pct:.2f}%"
                )
                if await self.alert(pos, reason="manual" if manual else "new_position",
                                    trigger=None if manual else pos.instrument):
                    alerted.append(pos)
        return alerted

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    async def alert(self, position: EvaluatedPosition, reason: str = "new_position", trigger: str = None) -> bool:
        """
        Claim cooldown slots, enrich, and dispatch to every eligible sink.

        Returns:
            True if at least one sink was scheduled
        """
        sinks = [
            sink for sink in self.sinks
            if self.dedup.should_alert(position.address, position.instrument, sink.platform)
        ]
        if not sinks:
            return False

        enriched = await self.enrichment.enrich(position)
        self.scanner.replace_tracked(enriched)

        payload = AlertPayload(position=enriched, reason=reason, trigger_instrument=trigger)
        for sink in sinks:
            task = asyncio.create_task(self._deliver(sink, payload))
            self._notify_tasks.add(task)
            task.add_done_callback(self._notify_tasks.discard)
        return True

    async def _deliver(self, sink: NotificationSink, payload: AlertPayload):
        try:
            ok = await sink.send(payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"{sink.platform} delivery failed: {type(e).__name__}")
            ok = False

        if ok:
            self.alerts_sent += 1
        else:
            self.alerts_failed += 1

    # -------------------------------------------------------------------------
    # Whale store
    # -------------------------------------------------------------------------

    def _remember_address(self, address: str, volume_usd: float):
        self._pending_writes[address] = self._pending_writes.get(address, 0.0) + volume_usd

    async def _store_call(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            logger.error(f"Whale store error in {fn.__name__}: {e}")
            return None

    async def _load_store(self):
        if self.store is None:
            return
        rows = await self._store_call(self.store.load_top_addresses, self.cfg.max_addresses)
        if not rows:
            return
        added = self.registry.import_addresses(
            [r["address"] for r in rows],
            volumes={r["address"]: r["volume"] for r in rows},
        )
        logger.info(f"Loaded {added} addresses from whale store")

    async def flush_store(self):
        """Write buffered address sightings to the whale store."""
        if self.store is None or not self._pending_writes:
            return
        batch, self._pending_writes = self._pending_writes, {}
        await self._store_call(self.store.upsert_batch, list(batch.items()))

    # -------------------------------------------------------------------------
    # External surface
    # -------------------------------------------------------------------------

    def add_address_manually(self, address: str) -> bool:
        """
        Register an address and queue an immediate scan. Every risky
        position found on it is eligible to alert.

        Returns:
            False if the address is malformed or the scan queue is full
        """
        if not isinstance(address, str) or not ADDRESS_RE.match(address.strip()):
            logger.warning(f"Rejecting malformed address {address!r}")
            return False

        address = address.strip().lower()
        self.registry.register(address, 0.0)
        self._remember_address(address, 0.0)
        logger.info(f"Manual add: {address}")
        return self.request_immediate_scan(address, MANUAL_TRIGGER)

    def snapshot(self) -> Dict[str, Any]:
        """Read-only view for dashboards: tracked positions, stats and registry size."""
        return {
            "tracked_positions": self.scanner.tracked_positions(),
            "stats": self.stats(),
            "registry_size": len(self.registry),
        }

    def stats(self) -> Dict[str, Any]:
        positions = self.scanner.tracked_positions()

        by_level = {level: 0 for level in DangerLevel}
        by_instrument: Dict[str, Dict[str, float]] = {}
        longs = 0
        for p in positions:
            by_level[p.danger_level] += 1
            if p.direction == Direction.LONG:
                longs += 1
            entry = by_instrument.setdefault(p.instrument, {"count": 0, "value_usd": 0.0})
            entry["count"] += 1
            entry["value_usd"] += p.notional_usd

        price_age = self.market_data.age_sec
        return {
            "total_positions": len(positions),
            "critical": by_level[DangerLevel.CRITICAL],
            "warning": by_level[DangerLevel.WARNING],
            "watch": by_level[DangerLevel.WATCH],
            "longs": longs,
            "shorts": len(positions) - longs,
            "total_value_at_risk": sum(p.notional_usd for p in positions),
            "by_instrument": by_instrument,
            "registry_size": len(self.registry),
            "active_addresses": self.registry.active_count(),
            "evicted_addresses": self.registry.evicted_total,
            "stream": self.stream.stats(),
            "prices": {
                "instruments": len(self.market_data),
                "age_sec": round(price_age, 1) if price_age is not None else None,
            },
            "enrichment": self.enrichment.stats(),
            "liquidations": self.liquidations.stats(),
            "alerts": {
                "sent": self.alerts_sent,
                "failed": self.alerts_failed,
                "suppressed": self.dedup.suppressed,
                "cooldown_entries": len(self.dedup),
            },
            "scans": {
                "completed": self.scanner.scans_completed,
                "aborted": self.scanner.scans_aborted,
                "immediate": self.scanner.immediate_scans,
                "pending": self._scan_queue.qsize(),
                "dropped": self.scans_dropped,
                "last_scan_at": self.scanner.last_scan_at,
                "last_scan_duration": self.scanner.last_scan_duration,
            },
            "baseline_done": self.baseline_done,
            "sinks": [sink.platform for sink in self.sinks],
        }
