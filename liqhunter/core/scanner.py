"""
Position Scanner

Two scan modes over one batched fetch primitive:

Full scan (periodic):
    Fetch every registry address in batches of scan_batch_size with a short
    delay between batches, evaluate, and replace the tracked set wholesale.
    Addresses whose fetch failed keep their previous entries. If prices are
    unavailable or every fetch fails, the cycle is aborted and the previous
    snapshot stays in place.

Immediate scan (out of band):
    Fetch one address and merge its evaluated positions into the tracked set.
    Keys that were not tracked before are reported back as new; only those
    may trigger an alert.

Neither mode sends alerts itself.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from ..config import Config, config as default_config
from ..models import AccountSnapshot, DangerLevel, Direction, EvaluatedPosition
from .enrichment import WalletEnrichment
from .evaluator import ClassificationRule, default_rules, evaluate_account, sort_by_danger
from .market_data import MarketDataCache
from .registry import AddressRegistry

logger = logging.getLogger(__name__)

PositionKey = Tuple[str, str]


class PositionScanner:
    """
    Owns the tracked position set.

    Args:
        client: Position and market data source (HyperliquidClient or fake)
        market_data: Shared price cache
        registry: Address registry to scan
        cfg: Batch sizes, limits and thresholds
        rules: Classification rules passed to the evaluator
        enrichment: Wallet enrichment whose cached facts are attached to
            freshly evaluated records (optional)
        clock: Time source (injectable for tests)
    """

    def __init__(
        self,
        client,
        market_data: MarketDataCache,
        registry: AddressRegistry,
        cfg: Config = None,
        rules: Sequence[ClassificationRule] = None,
        enrichment: Optional[WalletEnrichment] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg or default_config
        self.client = client
        self.enrichment = enrichment
        self.market_data = market_data
        self.registry = registry
        self.rules = default_rules(self.cfg) if rules is None else list(rules)
        self._clock = clock

        self._tracked: Dict[PositionKey, EvaluatedPosition] = {}

        # Stats
        self.scans_completed = 0
        self.scans_aborted = 0
        self.immediate_scans = 0
        self.fetch_failures = 0
        self.last_scan_at: Optional[float] = None
        self.last_scan_duration: Optional[float] = None
        self.last_scan_addresses = 0

    # -------------------------------------------------------------------------
    # Prices
    # -------------------------------------------------------------------------

    async def current_prices(self) -> Optional[Dict[str, float]]:
        """
        Refresh mark prices, falling back to the cache.

        Returns:
            Price snapshot, or None when neither source has any prices
        """
        prices = await self.client.get_all_mark_prices()
        if prices:
            self.market_data.replace(prices)
            return self.market_data.snapshot()

        if self.market_data:
            logger.warning(f"Price fetch failed, using cached prices ({len(self.market_data)} instruments)")
            return self.market_data.snapshot()

        return None

    # -------------------------------------------------------------------------
    # Fetching
    # -------------------------------------------------------------------------

    async def fetch_accounts(self, addresses: Sequence[str]) -> Dict[str, Optional[AccountSnapshot]]:
        """
        Fetch account state for many addresses in rate-limited batches.

        Returns:
            Dict mapping address to snapshot (None where the fetch failed)
        """
        results: Dict[str, Optional[AccountSnapshot]] = {}
        batch_size = max(self.cfg.scan_batch_size, 1)

        for i in range(0, len(addresses), batch_size):
            batch = addresses[i:i + batch_size]
            responses = await asyncio.gather(
                *(self.client.get_account_state(addr) for addr in batch),
                return_exceptions=True,
            )

            for addr, response in zip(batch, responses):
                if isinstance(response, BaseException):
                    if isinstance(response, asyncio.CancelledError):
                        raise response
                    logger.warning(f"Position fetch for {addr[:10]} raised {response!r}")
                    response = None
                if response is None:
                    self.fetch_failures += 1
                results[addr] = response

            if i + batch_size < len(addresses):
                await asyncio.sleep(self.cfg.scan_batch_delay_sec)

        return results

    # -------------------------------------------------------------------------
    # Full scan
    # -------------------------------------------------------------------------

    async def full_scan(self, addresses: Sequence[str] = None) -> Optional[List[EvaluatedPosition]]:
        """
        Rescan the registry and replace the tracked set.

        Args:
            addresses: Addresses to scan (default: registry scan list)

        Returns:
            The new tracked positions (most dangerous first), or None if the
            cycle was aborted
        """
        start = time.monotonic()

        prices = await self.current_prices()
        if not prices:
            self.scans_aborted += 1
            logger.error("No price data available, skipping scan")
            return None

        if addresses is None:
            addresses = self.registry.addresses_to_scan()
        addresses = [a.lower() for a in addresses]
        logger.info(f"Scanning {len(addresses)} addresses...")

        accounts = await self.fetch_accounts(addresses)
        if addresses and all(acct is None for acct in accounts.values()):
            self.scans_aborted += 1
            logger.error(f"All {len(addresses)} position fetches failed, keeping previous snapshot")
            return None

        previous_by_address: Dict[str, List[EvaluatedPosition]] = {}
        for pos in self._tracked.values():
            previous_by_address.setdefault(pos.address, []).append(pos)

        fresh: Dict[PositionKey, EvaluatedPosition] = {}
        carried = 0
        for addr in addresses:
            account = accounts.get(addr)
            if account is None:
                for pos in previous_by_address.get(addr, []):
                    fresh[pos.key] = pos
                    carried += 1
                continue
            for pos in evaluate_account(account, prices, self.cfg, self.rules):
                fresh[pos.key] = self._with_cached_enrichment(pos)

        self._tracked = fresh
        self.scans_completed += 1
        self.last_scan_at = self._clock()
        self.last_scan_duration = time.monotonic() - start
        self.last_scan_addresses = len(addresses)

        positions = self.tracked_positions()
        longs = sum(1 for p in positions if p.direction == Direction.LONG)
        critical = sum(1 for p in positions if p.danger_level == DangerLevel.CRITICAL)
        logger.info(
            f"Found {len(positions)} at-risk ({longs} longs, {len(positions) - longs} shorts) - "
            f"{critical} critical in {self.last_scan_duration:.1f}s"
            + (f" ({carried} carried over from failed fetches)" if carried else "")
        )
        return positions

    # -------------------------------------------------------------------------
    # Immediate scan
    # -------------------------------------------------------------------------

    async def scan_address(self, address: str) -> Optional[List[EvaluatedPosition]]:
        """
        Fetch and evaluate one address without touching the tracked set.

        Returns:
            Qualifying positions, or None if the fetch failed
        """
        prices = self.market_data.snapshot()
        if not prices:
            prices = await self.current_prices()
            if not prices:
                logger.warning(f"No prices available, skipping scan of {address[:10]}")
                return None

        account = await self.client.get_account_state(address.lower())
        if account is None:
            self.fetch_failures += 1
            logger.debug(f"Immediate scan of {address[:10]} failed, skipping")
            return None

        self.immediate_scans += 1
        return evaluate_account(account, prices, self.cfg, self.rules)

    def merge_address(self, address: str, positions: List[EvaluatedPosition]) -> List[EvaluatedPosition]:
        """
        Merge one address's fresh evaluation into the tracked set.

        Entries of this address that no longer qualify are removed; existing
        keys are updated in place.

        Returns:
            Positions whose key was not tracked before
        """
        address = address.lower()
        fresh_keys = {p.key for p in positions}
        for key in [k for k in self._tracked if k[0] == address and k not in fresh_keys]:
            del self._tracked[key]

        new_positions = []
        for pos in positions:
            pos = self._with_cached_enrichment(pos)
            if pos.key not in self._tracked:
                new_positions.append(pos)
            self._tracked[pos.key] = pos
        return new_positions

    def _with_cached_enrichment(self, position: EvaluatedPosition) -> EvaluatedPosition:
        if self.enrichment is None:
            return position
        return self.enrichment.apply_cached(position)

    def reapply_enrichment(self, addresses: Set[str]) -> int:
        """Re-attach cached wallet facts to the tracked records of these addresses."""
        updated = 0
        for key, pos in list(self._tracked.items()):
            if pos.address in addresses:
                self._tracked[key] = self._with_cached_enrichment(pos)
                updated += 1
        return updated

    def replace_tracked(self, position: EvaluatedPosition):
        """Swap in an updated record (e.g. after enrichment) if still tracked."""
        if position.key in self._tracked:
            self._tracked[position.key] = position

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def tracked_positions(self) -> List[EvaluatedPosition]:
        """Tracked positions, most dangerous first."""
        return sort_by_danger(self._tracked.values())

    def is_tracked(self, address: str, instrument: str) -> bool:
        return (address.lower(), instrument) in self._tracked

    def __len__(self) -> int:
        return len(self._tracked)
