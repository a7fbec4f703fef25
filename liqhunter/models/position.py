"""
Position Models
===============

Dataclasses for position data from the Hyperliquid clearinghouseState
endpoint and the risk-classified records derived from them.
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional, Tuple


# Rule labels attached to evaluated positions
TAG_VAULT_ATTACK = "VAULT_ATTACK"
TAG_DEGEN_WHALE = "DEGEN_WHALE"
TAG_FRESH_WALLET = "FRESH_WALLET"


class Direction(Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class DangerLevel(Enum):
    """Risk bucket based on distance to liquidation."""
    CRITICAL = "CRITICAL"  # <= 5%
    WARNING = "WARNING"    # <= 10%
    WATCH = "WATCH"        # only reachable under the relaxed threshold

    @property
    def severity(self) -> int:
        """Higher is more dangerous."""
        return _SEVERITY[self]


_SEVERITY = {
    DangerLevel.WATCH: 0,
    DangerLevel.WARNING: 1,
    DangerLevel.CRITICAL: 2,
}


@dataclass(frozen=True)
class RawPosition:
    """One open position as reported by the exchange. Re-fetched each scan."""
    instrument: str
    size: float  # signed: > 0 long, < 0 short
    entry_price: float
    liquidation_price: Optional[float]  # None when the exchange reports none
    leverage: float
    leverage_type: str  # "cross" or "isolated"
    margin_used: float
    unrealized_pnl: float

    @property
    def direction(self) -> Direction:
        return Direction.LONG if self.size > 0 else Direction.SHORT


@dataclass(frozen=True)
class AccountSnapshot:
    """Full account state for one address."""
    address: str
    positions: Tuple[RawPosition, ...]
    account_value: float


@dataclass(frozen=True)
class SiblingPosition:
    """Another open position on the same account, for alert context."""
    instrument: str
    direction: Direction
    notional_usd: float
    unrealized_pnl: float
    leverage: float


@dataclass(frozen=True)
class EvaluatedPosition:
    """
    A position that passed the risk filters.

    Recomputed on every scan and replaced wholesale; at most one record per
    (address, instrument) is tracked at a time.
    """
    address: str
    instrument: str
    direction: Direction
    size: float
    notional_usd: float
    entry_price: float
    mark_price: float
    liq_price: float
    distance_to_liq: float  # fraction, 0.05 = 5%
    danger_level: DangerLevel
    leverage: float
    margin_used: float
    unrealized_pnl: float

    # Rule labels, e.g. {"VAULT_ATTACK"}
    tags: FrozenSet[str] = frozenset()

    # Wallet context (only when an account snapshot was supplied)
    account_value: Optional[float] = None
    total_unrealized_pnl: Optional[float] = None
    sibling_positions: Tuple[SiblingPosition, ...] = ()

    # Enrichment (best effort, None = unknown)
    wallet_age_days: Optional[int] = None
    all_time_pnl: Optional[float] = None
    is_new_address: bool = False

    @property
    def key(self) -> Tuple[str, str]:
        """Unique identifier for this position in the tracked set."""
        return (self.address, self.instrument)

    @property
    def distance_pct(self) -> float:
        return self.distance_to_liq * 100

    @property
    def is_profitable_whale(self) -> Optional[bool]:
        if self.all_time_pnl is None:
            return None
        return self.all_time_pnl > 0

    @property
    def short_address(self) -> str:
        return f"{self.address[:6]}...{self.address[-4:]}"

    @property
    def total_position_count(self) -> int:
        return len(self.sibling_positions) + 1
