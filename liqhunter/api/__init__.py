"""
API Package
===========

External API clients.

Components:
- hyperliquid.py: HyperliquidClient (prices, positions, enrichment, leaderboard)
"""

from .hyperliquid import (
    FALLBACK_WHALES,
    HyperliquidClient,
    all_time_pnl_from_portfolio,
    earliest_fill_time,
    parse_account_state,
    parse_mids,
    parse_mids_from_asset_ctxs,
)

__all__ = [
    "FALLBACK_WHALES",
    "HyperliquidClient",
    "all_time_pnl_from_portfolio",
    "earliest_fill_time",
    "parse_account_state",
    "parse_mids",
    "parse_mids_from_asset_ctxs",
]
