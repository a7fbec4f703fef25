"""
Shared Data Models
==================

This package contains dataclasses used across the project.
"""

from .position import (
    TAG_DEGEN_WHALE,
    TAG_FRESH_WALLET,
    TAG_VAULT_ATTACK,
    AccountSnapshot,
    DangerLevel,
    Direction,
    EvaluatedPosition,
    RawPosition,
    SiblingPosition,
)
from .trade import LiquidationEvent, TrackedAddress, TradeEvent

__all__ = [
    "TAG_DEGEN_WHALE",
    "TAG_FRESH_WALLET",
    "TAG_VAULT_ATTACK",
    "AccountSnapshot",
    "DangerLevel",
    "Direction",
    "EvaluatedPosition",
    "RawPosition",
    "SiblingPosition",
    "LiquidationEvent",
    "TrackedAddress",
    "TradeEvent",
]
