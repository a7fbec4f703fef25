"""
Trade & Registry Models
=======================

Dataclasses for trade stream events, tracked addresses and detected
liquidations.
"""

from dataclasses import dataclass
from typing import Optional, Tuple


@dataclass(frozen=True)
class TradeEvent:
    """One executed trade from the trades channel."""
    instrument: str
    price: float
    size: float
    counterparties: Tuple[str, ...]  # lowercase addresses (buyer, seller)
    side: Optional[str] = None  # "B" or "A" (taker side)
    time_ms: Optional[int] = None
    trade_hash: Optional[str] = None

    @property
    def notional_usd(self) -> float:
        return abs(self.size) * self.price


@dataclass
class TrackedAddress:
    """
    An address worth scanning.

    last_seen_at only moves forward and cumulative_volume_usd only grows.
    last_seen_at is 0.0 for addresses imported without a trade sighting
    (leaderboard, persisted store), which makes them eligible for eviction.
    """
    address: str
    last_seen_at: float
    cumulative_volume_usd: float = 0.0
    first_seen_at: float = 0.0
    trade_count: int = 0


@dataclass(frozen=True)
class LiquidationEvent:
    """A liquidation observed in the HLP vault fill stream."""
    instrument: str
    side: str  # side of the liquidated position: "LONG" or "SHORT"
    price: float
    size: float
    value_usd: float
    time_ms: int
    fill_hash: Optional[str] = None
    liquidated_user: Optional[str] = None
    method: Optional[str] = None
