# Core pipeline
from .dedup import AlertDeduplicator
from .enrichment import TTLCache, WalletEnrichment
from .evaluator import (
    ClassificationRule,
    VaultAttackRule,
    apply_enrichment,
    classify_danger,
    evaluate_account,
    evaluate_position,
)
from .liquidations import LiquidationTracker
from .market_data import MarketDataCache
from .monitor import LiquidationMonitor
from .registry import AddressRegistry
from .scanner import PositionScanner
from .trade_stream import Backoff, TradeStreamListener

__all__ = [
    "AlertDeduplicator",
    "TTLCache",
    "WalletEnrichment",
    "ClassificationRule",
    "VaultAttackRule",
    "apply_enrichment",
    "classify_danger",
    "evaluate_account",
    "evaluate_position",
    "LiquidationTracker",
    "MarketDataCache",
    "LiquidationMonitor",
    "AddressRegistry",
    "PositionScanner",
    "Backoff",
    "TradeStreamListener",
]
