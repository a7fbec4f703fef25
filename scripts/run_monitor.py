#!/usr/bin/env python3
"""
HL Liquidation Hunter
=====================

Continuous liquidation-risk monitor for Hyperliquid whales.

Pipeline:
    - $100K+ trades on the stream register both counterparties
    - $500K+ trades queue an immediate scan of both counterparties
    - Every known address is rescanned each refresh interval
    - Only genuinely new risky positions ($2M+, within 10% of liquidation) alert

Usage:
    python scripts/run_monitor.py                   # run with Telegram if configured
    python scripts/run_monitor.py --dry-run         # alerts go to the log only
    python scripts/run_monitor.py --test-telegram   # send one synthetic alert and exit
"""

import argparse
import asyncio
import logging
import signal
import sys
from datetime import date
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from liqhunter.alerts import AlertPayload, LoggingSink, TelegramSink
from liqhunter.config import config
from liqhunter.core import LiquidationMonitor
from liqhunter.db import WhaleDB
from liqhunter.models import DangerLevel, Direction, EvaluatedPosition

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
QUIET_LOGGERS = ("aiohttp", "urllib3", "requests")


def setup_logging(log_level: str = config.log_level, log_file: str = config.log_file):
    """Console plus one log file per day (logs/monitor_YYYY-MM-DD.log)."""
    base = Path(log_file)
    base.parent.mkdir(parents=True, exist_ok=True)
    daily_file = base.with_name(f"{base.stem}_{date.today().isoformat()}{base.suffix}")

    handlers = [logging.FileHandler(daily_file), logging.StreamHandler(sys.stdout)]
    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT, handlers=handlers, force=True)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Writing log to {daily_file}")


def send_test_alert() -> bool:
    """Push a synthetic CRITICAL BTC alert straight to Telegram (no cooldowns)."""
    sink = TelegramSink.from_env(config)
    if sink is None:
        return False

    position = EvaluatedPosition(
        address="0x0000000000000000000000000000000000000000",
        instrument="BTC",
        direction=Direction.LONG,
        size=100.0,
        notional_usd=9_500_000,
        entry_price=100_000,
        mark_price=95_000,
        liq_price=92_000,
        distance_to_liq=(95_000 - 92_000) / 95_000,
        danger_level=DangerLevel.CRITICAL,
        leverage=20,
        margin_used=475_000,
        unrealized_pnl=-500_000,
    )
    return asyncio.run(sink.send(AlertPayload(position=position, reason="test")))


async def run(monitor: LiquidationMonitor):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, monitor.request_stop)
        except NotImplementedError:
            # No loop signal handlers on Windows; Ctrl+C raises KeyboardInterrupt instead
            pass
    await monitor.run()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Hyperliquid whale liquidation-risk monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Usage:")[1],
    )
    parser.add_argument(
        "--refresh-interval", type=float, default=config.refresh_interval_sec,
        help=f"seconds between full rescans (default: {config.refresh_interval_sec:.0f})",
    )
    parser.add_argument("--dry-run", action="store_true", help="log alerts, never send to Telegram")
    parser.add_argument("--test-telegram", action="store_true", help="send one test alert and exit")
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default=config.log_level,
        help=f"default: {config.log_level}",
    )
    parser.add_argument(
        "--db-path", type=Path, default=config.db_path,
        help=f"whale address store (default: {config.db_path})",
    )
    parser.add_argument("--no-db", action="store_true", help="do not seed from or write to the whale store")
    return parser


def print_banner(sinks, store_path):
    rows = [
        ("Min position", f"${config.min_position_usd / 1e6:.1f}M"),
        ("Max distance", f"{config.max_distance:.0%} ({config.relaxed_max_distance:.0%} for large non-majors)"),
        ("Discovery", f"${config.discovery_trade_usd / 1e3:.0f}K trades, "
                      f"immediate scan at ${config.immediate_check_trade_usd / 1e3:.0f}K"),
        ("Rescan every", f"{config.refresh_interval_sec:.0f}s"),
        ("Cooldown", f"{config.alert_cooldown_sec / 60:.0f} min"),
        ("Sinks", ", ".join(s.platform for s in sinks)),
        ("Whale DB", store_path or "disabled"),
    ]
    print("\n" + "-" * 60)
    print("HL LIQUIDATION HUNTER")
    print("-" * 60)
    for label, value in rows:
        print(f"{label + ':':<16}{value}")
    print("-" * 60 + "\nCtrl+C to stop\n")


def main():
    args = build_parser().parse_args()

    setup_logging(args.log_level)
    logger = logging.getLogger(__name__)

    if args.test_telegram:
        ok = send_test_alert()
        print("Test alert delivered." if ok else
              "Test alert failed: check TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID.")
        sys.exit(0 if ok else 1)

    config.refresh_interval_sec = args.refresh_interval

    sinks = [LoggingSink()]
    telegram = None if args.dry_run else TelegramSink.from_env(config)
    if telegram is not None:
        sinks.append(telegram)

    store = None if args.no_db else WhaleDB(args.db_path)
    print_banner(sinks, None if store is None else store.db_path)

    try:
        asyncio.run(run(LiquidationMonitor(config, sinks=sinks, store=store)))
    except KeyboardInterrupt:
        logger.info("Interrupted, monitor stopped")
    except Exception as e:
        logger.exception(f"Monitor crashed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
