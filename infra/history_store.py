"""
portfolio-signals Infrastructure: Price History Store

Daily bars persisted to SQLite, keyed by (symbol, date). Filled by the
nightly backfill job; read back for window metrics.
"""

import sqlite3
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional
import logging

from core.models import PriceBar

logger = logging.getLogger(__name__)


class PriceHistoryStore:
    """SQLite-backed daily price history."""

    def __init__(self, db_file: str = "data/price_history.db"):
        self.db_file = Path(db_file)
        self.db_file.parent.mkdir(parents=True, exist_ok=True)
        self._init_sqlite()
        logger.info("Initialized PriceHistoryStore at %s", self.db_file)

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_file))

    def _init_sqlite(self) -> None:
        conn = self._connect()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS daily_bars (
                    symbol TEXT NOT NULL,
                    bar_date TEXT NOT NULL,
                    open REAL,
                    high REAL,
                    low REAL,
                    close REAL NOT NULL,
                    volume REAL,
                    source TEXT,
                    stored_at TEXT NOT NULL,
                    PRIMARY KEY (symbol, bar_date)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_bars_date ON daily_bars(bar_date)")
            conn.commit()
        finally:
            conn.close()

    def upsert_bars(self, symbol: str, bars: Iterable[PriceBar], source: str = "") -> int:
        """Insert or replace bars; returns the number of rows written."""
        symbol = symbol.upper()
        stored_at = datetime.now(timezone.utc).isoformat()
        rows = [
            (symbol, bar.date.isoformat(), bar.open, bar.high, bar.low, bar.close, bar.volume, source, stored_at)
            for bar in bars
        ]
        if not rows:
            return 0

        conn = self._connect()
        try:
            conn.executemany(
                """
                INSERT OR REPLACE INTO daily_bars
                    (symbol, bar_date, open, high, low, close, volume, source, stored_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            conn.commit()
        finally:
            conn.close()

        logger.debug("Stored %d bars for %s", len(rows), symbol)
        return len(rows)

    def get_bars(self, symbol: str, since: Optional[date] = None, limit: Optional[int] = None) -> List[PriceBar]:
        """Bars for `symbol`, newest first."""
        sql = "SELECT bar_date, open, high, low, close, volume FROM daily_bars WHERE symbol = ?"
        params: list = [symbol.upper()]
        if since is not None:
            sql += " AND bar_date >= ?"
            params.append(since.isoformat())
        sql += " ORDER BY bar_date DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))

        conn = self._connect()
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()

        return [
            PriceBar(
                date=date.fromisoformat(bar_date),
                open=open_,
                high=high,
                low=low,
                close=close,
                volume=volume,
            )
            for bar_date, open_, high, low, close, volume in rows
        ]

    def latest_dates(self) -> Dict[str, date]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT symbol, MAX(bar_date) FROM daily_bars GROUP BY symbol").fetchall()
        finally:
            conn.close()
        return {symbol: date.fromisoformat(latest) for symbol, latest in rows}

    def symbols(self) -> List[str]:
        return sorted(self.latest_dates())
