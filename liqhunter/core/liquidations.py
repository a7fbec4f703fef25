"""
Liquidation Feed

Detects liquidations from the HLP vault's fill stream.

Detection rule: a fill is a liquidation if it carries a liquidation record
or its direction text mentions liquidation, and its notional |sz| * px is at
least liquidation_min_usd.

Side: the vault takes the other side of the liquidated position, so an HLP
buy means a SHORT was liquidated and an HLP sell means a LONG was.

Duplicates (the same fill replayed after a reconnect) are recognised by fill
hash, or failing that by same instrument, notional within $1K and time
within 3s.
"""

import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from ..config import Config, config as default_config
from ..models import LiquidationEvent

logger = logging.getLogger(__name__)

DUPLICATE_VALUE_TOLERANCE_USD = 1_000
DUPLICATE_TIME_TOLERANCE_MS = 3_000


def is_liquidation_fill(fill: dict) -> bool:
    liquidation = fill.get("liquidation")
    if isinstance(liquidation, dict) and liquidation:
        return True
    direction = fill.get("dir")
    return isinstance(direction, str) and "liq" in direction.lower()


def parse_liquidation(fill: Any, min_usd: float) -> Optional[LiquidationEvent]:
    """
    LiquidationEvent for a qualifying fill, None otherwise.

    Raises:
        KeyError, TypeError, ValueError on malformed fills
    """
    if not isinstance(fill, dict) or not is_liquidation_fill(fill):
        return None

    size = abs(float(fill.get("sz", 0)))
    price = float(fill.get("px", 0))
    value = size * price
    if value < min_usd:
        return None

    liquidation = fill.get("liquidation") or {}
    return LiquidationEvent(
        instrument=fill["coin"],
        side="SHORT" if fill.get("side") == "B" else "LONG",
        price=price,
        size=size,
        value_usd=value,
        time_ms=int(fill.get("time") or 0),
        fill_hash=fill.get("hash"),
        liquidated_user=liquidation.get("liquidatedUser"),
        method=liquidation.get("method"),
    )


class LiquidationTracker:
    """Bounded, deduplicated history of detected liquidations."""

    def __init__(self, cfg: Config = None):
        self.cfg = cfg or default_config
        self.recent: Deque[LiquidationEvent] = deque(maxlen=self.cfg.max_recent_liquidations)
        self.whales: Deque[LiquidationEvent] = deque(maxlen=self.cfg.max_whale_liquidations)
        self.total_detected = 0
        self.total_value_usd = 0.0

    def _is_duplicate(self, event: LiquidationEvent) -> bool:
        for seen in self.recent:
            if event.fill_hash and seen.fill_hash == event.fill_hash:
                return True
            if (
                seen.instrument == event.instrument
                and abs(seen.value_usd - event.value_usd) < DUPLICATE_VALUE_TOLERANCE_USD
                and abs(seen.time_ms - event.time_ms) < DUPLICATE_TIME_TOLERANCE_MS
            ):
                return True
        return False

    def process_fills(self, fills: List[dict]) -> List[LiquidationEvent]:
        """
        Record the liquidations contained in a batch of vault fills.

        Returns:
            Newly recorded events (duplicates excluded)
        """
        added = []
        for fill in fills:
            try:
                event = parse_liquidation(fill, self.cfg.liquidation_min_usd)
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Dropping malformed vault fill: {e}")
                continue

            if event is None or self._is_duplicate(event):
                continue

            self.recent.appendleft(event)
            self.total_detected += 1
            self.total_value_usd += event.value_usd
            added.append(event)

            if event.value_usd >= self.cfg.whale_liquidation_usd:
                self.whales.appendleft(event)
                logger.info(f"WHALE LIQ: {event.instrument} {event.side} ${event.value_usd / 1e6:.2f}M")
            else:
                logger.info(f"LIQ: {event.instrument} {event.side} ${event.value_usd / 1e3:.0f}K")

        return added

    def stats(self) -> Dict[str, Any]:
        return {
            "recent": len(self.recent),
            "whales": len(self.whales),
            "total_detected": self.total_detected,
            "total_value_usd": self.total_value_usd,
        }
