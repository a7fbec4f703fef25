"""
Enrichment Cache Layer

Lazily fetched, TTL-cached per-address facts used to decorate alerts:
- wallet age (days since earliest fill) - cached permanently, the earliest
  fill never moves, so the age is computed at read time
- all-time PnL - short TTL, it changes with trading activity

Lookups are best effort. A failed fetch yields None, is not cached, and never
raises into position evaluation. Concurrent lookups for the same key share a
single in-flight fetch.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

from ..config import Config, config as default_config
from ..models import EvaluatedPosition
from .evaluator import apply_enrichment

logger = logging.getLogger(__name__)

T = TypeVar("T")

SECONDS_PER_DAY = 86400


@dataclass
class CacheEntry(Generic[T]):
    value: T
    fetched_at: float


class TTLCache(Generic[T]):
    """
    Async read-through cache keyed by address.

    Args:
        fetch: Coroutine function returning the value or None on failure
        ttl_sec: Entry lifetime, None for permanent
        clock: Time source (injectable for tests)
        name: Label for logs and stats
    """

    def __init__(
        self,
        fetch: Callable[[str], Awaitable[Optional[T]]],
        ttl_sec: Optional[float],
        clock: Callable[[], float] = time.time,
        name: str = "cache",
    ):
        self._fetch = fetch
        self.ttl_sec = ttl_sec
        self._clock = clock
        self.name = name
        self._entries: Dict[str, CacheEntry[T]] = {}
        self._inflight: Dict[str, asyncio.Future] = {}

        self.hits = 0
        self.misses = 0
        self.failures = 0

    def _is_fresh(self, entry: CacheEntry[T]) -> bool:
        return self.ttl_sec is None or self._clock() - entry.fetched_at < self.ttl_sec

    def peek(self, key: str) -> Optional[T]:
        """Fresh cached value without fetching."""
        entry = self._entries.get(key)
        if entry is not None and self._is_fresh(entry):
            return entry.value
        return None

    async def get(self, key: str) -> Optional[T]:
        """Cached value, or fetch it (sharing any fetch already in flight)."""
        entry = self._entries.get(key)
        if entry is not None and self._is_fresh(entry):
            self.hits += 1
            return entry.value

        pending = self._inflight.get(key)
        if pending is None:
            self.misses += 1
            pending = asyncio.ensure_future(self._load(key))
            self._inflight[key] = pending

        # shield: one cancelled caller must not cancel the shared fetch
        return await asyncio.shield(pending)

    async def _load(self, key: str) -> Optional[T]:
        try:
            value = await self._fetch(key)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"{self.name} lookup failed for {key[:10]}: {e!r}")
            value = None
        finally:
            self._inflight.pop(key, None)

        if value is None:
            self.failures += 1
            return None

        self._entries[key] = CacheEntry(value=value, fetched_at=self._clock())
        return value

    def prune(self) -> int:
        """Drop expired entries. Returns the number removed."""
        if self.ttl_sec is None:
            return 0
        expired = [k for k, e in self._entries.items() if not self._is_fresh(e)]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "failures": self.failures,
            "in_flight": len(self._inflight),
        }

    def __len__(self) -> int:
        return len(self._entries)


class WalletEnrichment:
    """
    Wallet age and all-time PnL lookups for alert enrichment.

    Args:
        source: Object with get_earliest_activity_time(address) and
            get_all_time_realized_pnl(address) coroutines
        cfg: TTLs and thresholds
        clock: Time source (injectable for tests)
    """

    def __init__(self, source, cfg: Config = None, clock: Callable[[], float] = time.time):
        self.cfg = cfg or default_config
        self._clock = clock
        self.earliest_activity = TTLCache(
            source.get_earliest_activity_time,
            self.cfg.wallet_age_ttl_sec,
            clock=clock,
            name="wallet_age",
        )
        self.all_time_pnl_cache = TTLCache(
            source.get_all_time_realized_pnl,
            self.cfg.pnl_ttl_sec,
            clock=clock,
            name="all_time_pnl",
        )

    def _age_days(self, earliest_ms: Optional[int]) -> Optional[int]:
        if earliest_ms is None:
            return None
        age_sec = self._clock() - earliest_ms / 1000
        return max(int(age_sec // SECONDS_PER_DAY), 0)

    async def wallet_age_days(self, address: str) -> Optional[int]:
        return self._age_days(await self.earliest_activity.get(address.lower()))

    async def all_time_pnl(self, address: str) -> Optional[float]:
        return await self.all_time_pnl_cache.get(address.lower())

    async def enrich(self, position: EvaluatedPosition) -> EvaluatedPosition:
        """Attach wallet age and all-time PnL; unknown facts stay None."""
        age_days, pnl = await asyncio.gather(
            self.wallet_age_days(position.address),
            self.all_time_pnl(position.address),
        )
        return apply_enrichment(position, age_days, pnl, self.cfg)

    def apply_cached(self, position: EvaluatedPosition) -> EvaluatedPosition:
        """Attach whatever is already cached, without fetching."""
        address = position.address.lower()
        return apply_enrichment(
            position,
            self._age_days(self.earliest_activity.peek(address)),
            self.all_time_pnl_cache.peek(address),
            self.cfg,
        )

    async def warm(self, address: str):
        """Fetch both facts into the caches."""
        await asyncio.gather(self.wallet_age_days(address), self.all_time_pnl(address))

    def is_cached(self, address: str) -> bool:
        address = address.lower()
        return (
            self.earliest_activity.peek(address) is not None
            and self.all_time_pnl_cache.peek(address) is not None
        )

    def prune(self) -> int:
        return self.earliest_activity.prune() + self.all_time_pnl_cache.prune()

    def stats(self) -> Dict[str, Any]:
        return {
            "wallet_age": self.earliest_activity.stats(),
            "all_time_pnl": self.all_time_pnl_cache.stats(),
        }
