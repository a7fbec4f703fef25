"""
Configuration for HL Liquidation Hunter

All settings in one place for easy tuning. Defaults live on the Config
dataclass; environment variables (optionally from a .env file at the project
root) override the handful of values operators actually change.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).parent.parent
_ENV_PATH = _PROJECT_ROOT / ".env"


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class Config:
    """All configuration settings."""

    # -------------------------------------------------------------------------
    # API Settings
    # -------------------------------------------------------------------------
    api_url: str = "https://api.hyperliquid.xyz/info"
    ws_url: str = "wss://api.hyperliquid.xyz/ws"
    leaderboard_url: str = "https://stats-data.hyperliquid.xyz/Mainnet/leaderboard"

    # Hyperliquid rate limits are per IP - keep concurrency modest
    max_concurrent_requests: int = 10
    request_timeout_sec: float = 10.0
    max_retries: int = 3
    retry_backoff_sec: float = 1.0

    # -------------------------------------------------------------------------
    # Discovery Thresholds (trade notional, USD)
    # -------------------------------------------------------------------------
    discovery_trade_usd: float = 100_000
    immediate_check_trade_usd: float = 500_000

    # -------------------------------------------------------------------------
    # Position Thresholds
    # -------------------------------------------------------------------------
    min_position_usd: float = 2_000_000

    # Distance to liquidation as a fraction of mark price (0.05 = 5%)
    critical_distance: float = 0.05
    warning_distance: float = 0.10
    max_distance: float = 0.10

    # Non-major instruments with large notional are tracked further out
    relaxed_max_distance: float = 0.15
    vault_attack_min_usd: float = 2_000_000
    vault_attack_escalation_usd: float = 10_000_000

    major_instruments: FrozenSet[str] = field(default_factory=lambda: frozenset({
        "BTC", "ETH", "SOL", "BNB", "XRP", "DOGE",
        "ADA", "AVAX", "DOT", "MATIC", "LINK", "NEAR",
    }))

    # -------------------------------------------------------------------------
    # Scheduling (seconds)
    # -------------------------------------------------------------------------
    refresh_interval_sec: float = 60.0
    price_refresh_sec: float = 5.0
    leaderboard_refresh_sec: float = 600.0
    housekeeping_interval_sec: float = 300.0
    startup_discovery_wait_sec: float = 5.0

    scan_batch_size: int = 10
    scan_batch_delay_sec: float = 0.5

    immediate_scan_workers: int = 5
    immediate_scan_queue_size: int = 1000

    # -------------------------------------------------------------------------
    # Address Registry
    # -------------------------------------------------------------------------
    max_addresses: int = 2000
    max_addresses_to_scan: int = 500
    registry_keep_fraction: float = 0.8
    registry_retention_sec: float = 24 * 60 * 60

    # -------------------------------------------------------------------------
    # Alerts & Enrichment
    # -------------------------------------------------------------------------
    alert_cooldown_sec: float = 30 * 60
    wallet_age_ttl_sec: Optional[float] = None  # earliest fill never moves
    pnl_ttl_sec: float = 300.0
    new_wallet_days: int = 7
    enrichment_warm_limit: int = 50  # uncached addresses looked up per full scan

    # -------------------------------------------------------------------------
    # Trade Stream
    # -------------------------------------------------------------------------
    stream_idle_timeout_sec: float = 120.0
    stream_watchdog_interval_sec: float = 30.0
    stream_heartbeat_sec: float = 30.0
    reconnect_base_sec: float = 1.0
    reconnect_max_sec: float = 60.0

    # -------------------------------------------------------------------------
    # Liquidation Feed (HLP vault fills)
    # -------------------------------------------------------------------------
    hlp_vault_address: str = "0xdfc24b077bc1425ad1dea75bcb6f8158e10df303"
    liquidation_min_usd: float = 50_000
    whale_liquidation_usd: float = 500_000
    max_recent_liquidations: int = 200
    max_whale_liquidations: int = 50

    # -------------------------------------------------------------------------
    # Notifications (from environment)
    # -------------------------------------------------------------------------
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    # -------------------------------------------------------------------------
    # Storage & Logging
    # -------------------------------------------------------------------------
    db_path: Path = field(default_factory=lambda: _PROJECT_ROOT / "data" / "whales.db")
    log_level: str = "INFO"
    log_file: str = str(_PROJECT_ROOT / "logs" / "monitor.log")

    @property
    def telegram_configured(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)

    def is_major(self, instrument: str) -> bool:
        """Whether an instrument belongs to the liquid majors set."""
        return instrument.upper() in self.major_instruments

    @classmethod
    def from_env(cls) -> "Config":
        """
        Build a Config from environment variables.

        Loads .env from the project root first (if present). Unparseable
        numeric values are ignored with a warning so a typo never takes the
        monitor down.
        """
        if _ENV_PATH.exists():
            load_dotenv(_ENV_PATH)

        cfg = cls()

        cfg.api_url = os.environ.get("HYPERLIQUID_API_URL", cfg.api_url)
        cfg.ws_url = os.environ.get("HYPERLIQUID_WS_URL", cfg.ws_url)

        cfg.min_position_usd = _env_float("MIN_POSITION_USD", cfg.min_position_usd)
        cfg.discovery_trade_usd = _env_float("MIN_TRADE_USD", cfg.discovery_trade_usd)
        cfg.immediate_check_trade_usd = _env_float("IMMEDIATE_CHECK_USD", cfg.immediate_check_trade_usd)
        cfg.refresh_interval_sec = _env_float("REFRESH_INTERVAL", cfg.refresh_interval_sec)
        cfg.alert_cooldown_sec = _env_float("ALERT_COOLDOWN_SEC", cfg.alert_cooldown_sec)
        cfg.max_addresses = int(_env_float("MAX_ADDRESSES", cfg.max_addresses))

        cfg.telegram_bot_token = os.environ.get("TELEGRAM_BOT_TOKEN") or None
        cfg.telegram_chat_id = (
            os.environ.get("TELEGRAM_CHAT_ID")
            or os.environ.get("TELEGRAM_CHANNEL_ID")
            or None
        )

        db_path = os.environ.get("WHALE_DB_PATH")
        if db_path:
            cfg.db_path = Path(db_path)

        cfg.log_level = os.environ.get("LOG_LEVEL", cfg.log_level).upper()
        return cfg


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}, using default {default}")
        return default


# Global config instance
config = Config.from_env()
