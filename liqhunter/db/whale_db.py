"""
Whale Database

Persists discovered addresses and their cumulative trade volume so a restart
can seed the registry. The store is non-decreasing: addresses are only added
and volume only grows.

Best effort: the monitor reads it once at startup and writes through from a
worker thread; failures are logged by the caller and never stop the pipeline.
"""

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

from ..config import config

logger = logging.getLogger(__name__)


class WhaleDB:
    """SQLite store for known whale addresses."""

    def __init__(self, db_path: Path = None):
        self.db_path = Path(db_path or config.db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        """Initialize database schema."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS whales (
                    address TEXT PRIMARY KEY,
                    source TEXT NOT NULL,
                    volume_usd REAL NOT NULL DEFAULT 0,
                    trade_count INTEGER NOT NULL DEFAULT 0,
                    first_seen TEXT NOT NULL,
                    last_seen TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_whales_volume
                ON whales(volume_usd)
            """)
            conn.commit()

    # -------------------------------------------------------------------------
    # Write
    # -------------------------------------------------------------------------

    def upsert(self, address: str, volume_delta: float = 0.0, source: str = "trade"):
        """
        Add an address or accumulate volume on an existing one.

        Args:
            address: Wallet address (0x...)
            volume_delta: Trade notional to add (USD)
            source: Where the address came from ("trade", "leaderboard", "manual")
        """
        self.upsert_batch([(address, volume_delta)], source=source)

    def upsert_batch(self, rows: Iterable[Tuple[str, float]], source: str = "trade") -> int:
        """
        Upsert many (address, volume_delta) pairs in one transaction.

        Returns:
            Number of rows written
        """
        now = datetime.now(timezone.utc).isoformat()
        params = [
            (address.lower(), source, max(volume, 0.0), 1 if volume > 0 else 0, now, now)
            for address, volume in rows
            if address
        ]
        if not params:
            return 0

        with sqlite3.connect(self.db_path) as conn:
            conn.executemany("""
                INSERT INTO whales (address, source, volume_usd, trade_count, first_seen, last_seen)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(address) DO UPDATE SET
                    volume_usd = volume_usd + excluded.volume_usd,
                    trade_count = trade_count + excluded.trade_count,
                    last_seen = excluded.last_seen
            """, params)
            conn.commit()

        return len(params)

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    def load_top_addresses(self, limit: int) -> List[Dict]:
        """
        Highest-volume addresses.

        Returns:
            List of {"address": str, "volume": float}, largest volume first
        """
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute("""
                SELECT address, volume_usd FROM whales
                ORDER BY volume_usd DESC, last_seen DESC
                LIMIT ?
            """, (limit,)).fetchall()

        return [{"address": row[0], "volume": row[1]} for row in rows]

    def count(self) -> int:
        with sqlite3.connect(self.db_path) as conn:
            return conn.execute("SELECT COUNT(*) FROM whales").fetchone()[0]
