# store.py
# Last known status per symbol, kept for recovery across restarts.

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS crypto_symbol_status (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL,
    in_long INTEGER DEFAULT 0,
    buy_time TEXT,
    sell_time TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""

UPSERT = """
INSERT INTO crypto_symbol_status (symbol, status, in_long, buy_time, sell_time, created_at, updated_at)
VALUES (?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(symbol) DO UPDATE SET
    status = excluded.status,
    in_long = excluded.in_long,
    buy_time = COALESCE(excluded.buy_time, crypto_symbol_status.buy_time),
    sell_time = COALESCE(excluded.sell_time, crypto_symbol_status.sell_time),
    updated_at = excluded.updated_at
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SymbolStatusStore:
    """sqlite-backed upsert/read of ``crypto_symbol_status`` rows.

    Each call opens its own connection inside a worker thread so the event
    loop never blocks on disk I/O.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path

    def _init_sync(self) -> None:
        with sqlite3.connect(self.db_path) as con:
            con.execute(SCHEMA)

    def _upsert_sync(self, symbol: str, status: str, in_long: bool,
                     buy_time: Optional[str], sell_time: Optional[str]) -> None:
        now = _now()
        with sqlite3.connect(self.db_path) as con:
            con.execute(UPSERT, (symbol, status, int(in_long), buy_time, sell_time, now, now))

    def _get_sync(self, symbol: str) -> Optional[Dict[str, Any]]:
        with sqlite3.connect(self.db_path) as con:
            con.row_factory = sqlite3.Row
            row = con.execute(
                "SELECT * FROM crypto_symbol_status WHERE symbol = ?", (symbol,)
            ).fetchone()
        if row is None:
            return None
        out = dict(row)
        out["in_long"] = bool(out["in_long"])
        return out

    async def init(self) -> None:
        await asyncio.to_thread(self._init_sync)

    async def upsert_status(self, symbol: str, status: str, in_long: bool,
                            buy_time: Optional[str] = None,
                            sell_time: Optional[str] = None) -> None:
        await asyncio.to_thread(self._upsert_sync, symbol.lower(), status, in_long, buy_time, sell_time)

    async def get_status(self, symbol: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._get_sync, symbol.lower())

    async def record(self, symbol: str, status: str, in_long: bool) -> None:
        """Upsert, stamping buy/sell time from the status; failures are only logged."""
        now = _now()
        buy_time = now if status == "BUY" else None
        sell_time = now if status == "SELL" else None
        try:
            await self.upsert_status(symbol, status, in_long, buy_time, sell_time)
        except sqlite3.Error as exc:
            logger.error("[%s] Failed to persist status %s: %s", symbol, status, exc)
