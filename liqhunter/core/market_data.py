"""
Market Data Cache

Holds the latest mark price per instrument. Polling replaces the snapshot
wholesale; pushed allMids updates from the stream are merged in.
"""

import logging
import time
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


class MarketDataCache:
    """Process-wide mark price snapshot."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._prices: Dict[str, float] = {}
        self._updated_at: Optional[float] = None
        self.replace_count = 0
        self.merge_count = 0

    def replace(self, prices: Dict[str, float]) -> bool:
        """
        Swap in an authoritative snapshot.

        An empty snapshot is ignored so a failed refresh never wipes
        known prices.

        Returns:
            True if the snapshot was applied
        """
        if not prices:
            logger.warning("Empty price snapshot ignored, keeping previous prices")
            return False
        self._prices = dict(prices)
        self._updated_at = self._clock()
        self.replace_count += 1
        return True

    def merge(self, prices: Dict[str, float]):
        """Merge an incremental update (e.g. a pushed allMids message)."""
        if not prices:
            return
        self._prices.update(prices)
        self._updated_at = self._clock()
        self.merge_count += 1

    def get(self, instrument: str) -> Optional[float]:
        return self._prices.get(instrument)

    def snapshot(self) -> Dict[str, float]:
        """A copy of all known prices."""
        return dict(self._prices)

    @property
    def age_sec(self) -> Optional[float]:
        """Seconds since the last update, None if never updated."""
        if self._updated_at is None:
            return None
        return self._clock() - self._updated_at

    def __len__(self) -> int:
        return len(self._prices)

    def __bool__(self) -> bool:
        return bool(self._prices)
