"""
trendpipe SQLite Store
======================

Async SQLite implementation of :class:`SeriesStore` using aiosqlite.
Default backend for local runs and the backend used by the test-suite.

Tables mirror the hosted store: reference data (``instruments``,
``indicators``), the three series (``candles``, ``signals``,
``ema_trends``), ``processing_state`` checkpoints and the flat
``strategy_snapshot`` table.
"""

import asyncio
import json
import logging
import re
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiosqlite

from ..core.errors import StoreError
from .base import Filter, Order, SeriesStore, encode_value

logger = logging.getLogger("trendpipe.storage.sqlite")

_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Columns holding JSON documents, encoded on write and decoded on read
_JSON_COLUMNS: Dict[str, frozenset] = {
    "indicators": frozenset({"params"}),
    "strategy_snapshot": frozenset({"timeframes"}),
}

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS instruments (
        id INTEGER PRIMARY KEY,
        symbol TEXT NOT NULL,
        security_id TEXT,
        exchange_segment TEXT,
        instrument_type TEXT,
        is_active INTEGER DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS indicators (
        id INTEGER PRIMARY KEY,
        type TEXT NOT NULL,
        period INTEGER,
        params TEXT,
        is_active INTEGER DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS candles (
        instrument_id INTEGER NOT NULL,
        timeframe TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        open REAL NOT NULL,
        high REAL NOT NULL,
        low REAL NOT NULL,
        close REAL NOT NULL,
        volume REAL DEFAULT 0,
        UNIQUE(instrument_id, timeframe, timestamp)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS signals (
        instrument_id INTEGER NOT NULL,
        indicator_id INTEGER NOT NULL,
        timeframe TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        value REAL NOT NULL,
        UNIQUE(instrument_id, indicator_id, timeframe, timestamp)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ema_trends (
        instrument_id INTEGER NOT NULL,
        timeframe TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        short_ema REAL NOT NULL,
        long_ema REAL NOT NULL,
        trend TEXT NOT NULL CHECK (trend IN ('Bullish', 'Bearish')),
        crossover TEXT CHECK (crossover IS NULL OR crossover IN ('Bullish', 'Bearish')),
        UNIQUE(instrument_id, timeframe, timestamp)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS processing_state (
        stage TEXT NOT NULL,
        instrument_id INTEGER NOT NULL,
        timeframe TEXT NOT NULL,
        last_processed_timestamp TEXT,
        last_run_at TEXT,
        status TEXT DEFAULT 'completed'
            CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
        UNIQUE(stage, instrument_id, timeframe)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS strategy_snapshot (
        instrument_id INTEGER PRIMARY KEY,
        symbol TEXT NOT NULL,
        cmp REAL NOT NULL,
        cmp_timestamp TEXT NOT NULL,
        prcnt_change REAL,
        timeframes TEXT,
        last_updated TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_candles_ts ON candles(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_trends_crossover ON ema_trends(instrument_id, timeframe, crossover)",
)


def _ident(name: str) -> str:
    if not _IDENT.match(name):
        raise StoreError(f"Invalid identifier: {name!r}")
    return name


def _where(filters: Sequence[Filter]) -> Tuple[str, List[Any]]:
    """Translate filters into a WHERE clause and its parameters."""
    clauses: List[str] = []
    params: List[Any] = []
    simple = {"eq": "=", "neq": "!=", "gt": ">", "gte": ">=", "lt": "<", "lte": "<="}
    for f in filters:
        col = _ident(f.column)
        if f.op in simple:
            clauses.append(f"{col} {simple[f.op]} ?")
            params.append(encode_value(f.value))
        elif f.op in ("in", "not_in"):
            values = list(f.value or ())
            if not values:
                clauses.append("0" if f.op == "in" else "1")
                continue
            marks = ", ".join("?" for _ in values)
            keyword = "IN" if f.op == "in" else "NOT IN"
            clauses.append(f"{col} {keyword} ({marks})")
            params.extend(encode_value(v) for v in values)
        elif f.op == "is_null":
            clauses.append(f"{col} IS NULL")
        elif f.op == "not_null":
            clauses.append(f"{col} IS NOT NULL")
    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


class SqliteStore(SeriesStore):
    """
    Async SQLite series store.

    Args:
        db_path: Path to the SQLite database file, or ``":memory:"``.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._connection: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Establish database connection and create tables."""
        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row
        for statement in _SCHEMA:
            await self._connection.execute(statement)
        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.commit()
        logger.info("SQLite store connected: %s", self.db_path)

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("SQLite store connection closed")

    def _conn(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise StoreError("SQLite store is not connected")
        return self._connection

    # ─── Row codecs ───────────────────────────────────────────────────────

    def _encode_row(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        json_cols = _JSON_COLUMNS.get(table, frozenset())
        out = {}
        for key, value in row.items():
            if key in json_cols and value is not None and not isinstance(value, str):
                out[key] = json.dumps(value, sort_keys=True)
            else:
                out[key] = encode_value(value)
        return out

    def _decode_row(self, table: str, row: aiosqlite.Row) -> Dict[str, Any]:
        out = dict(row)
        for key in _JSON_COLUMNS.get(table, frozenset()):
            if isinstance(out.get(key), str):
                out[key] = json.loads(out[key])
        return out

    # ─── SeriesStore API ──────────────────────────────────────────────────

    async def query(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order: Sequence[Order] = (),
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        columns: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        select = ", ".join(_ident(c) for c in columns) if columns else "*"
        where, params = _where(filters)
        sql = f"SELECT {select} FROM {_ident(table)}{where}"
        if order:
            sql += " ORDER BY " + ", ".join(
                f"{_ident(col)} {'DESC' if descending else 'ASC'}" for col, descending in order
            )
        if limit is not None or offset is not None:
            sql += " LIMIT ?"
            params.append(limit if limit is not None else -1)
            if offset is not None:
                sql += " OFFSET ?"
                params.append(offset)
        try:
            cursor = await self._conn().execute(sql, params)
            rows = await cursor.fetchall()
        except (sqlite3.Error, ValueError) as exc:
            raise StoreError(f"query {table} failed: {exc}") from exc
        return [self._decode_row(table, r) for r in rows]

    async def upsert(
        self,
        table: str,
        rows: Sequence[Dict[str, Any]],
        conflict: Sequence[str],
        ignore_duplicates: bool = False,
    ) -> int:
        if not rows:
            return 0
        encoded = [self._encode_row(table, r) for r in rows]
        cols = list(encoded[0].keys())
        col_sql = ", ".join(_ident(c) for c in cols)
        marks = ", ".join("?" for _ in cols)
        conflict_sql = ", ".join(_ident(c) for c in conflict)
        updates = [c for c in cols if c not in conflict]
        if ignore_duplicates or not updates:
            action = "DO NOTHING"
        else:
            action = "DO UPDATE SET " + ", ".join(f"{c} = excluded.{c}" for c in updates)
        sql = (
            f"INSERT INTO {_ident(table)} ({col_sql}) VALUES ({marks}) "
            f"ON CONFLICT({conflict_sql}) {action}"
        )
        params = [tuple(r.get(c) for c in cols) for r in encoded]

        async with self._write_lock:
            conn = self._conn()
            before = conn.total_changes
            try:
                await conn.executemany(sql, params)
                await conn.commit()
            except (sqlite3.Error, ValueError) as exc:
                await conn.rollback()
                raise StoreError(f"upsert {table} failed: {exc}") from exc
            return conn.total_changes - before

    async def update(
        self,
        table: str,
        values: Dict[str, Any],
        filters: Sequence[Filter],
    ) -> int:
        if not values:
            return 0
        encoded = self._encode_row(table, values)
        set_sql = ", ".join(f"{_ident(c)} = ?" for c in encoded)
        where, params = _where(filters)
        sql = f"UPDATE {_ident(table)} SET {set_sql}{where}"
        async with self._write_lock:
            conn = self._conn()
            try:
                cursor = await conn.execute(sql, [*encoded.values(), *params])
                await conn.commit()
            except (sqlite3.Error, ValueError) as exc:
                await conn.rollback()
                raise StoreError(f"update {table} failed: {exc}") from exc
            return cursor.rowcount

    async def delete(self, table: str, filters: Sequence[Filter]) -> None:
        if not filters:
            raise StoreError(f"Refusing unfiltered delete on {table}")
        where, params = _where(filters)
        async with self._write_lock:
            conn = self._conn()
            try:
                await conn.execute(f"DELETE FROM {_ident(table)}{where}", params)
                await conn.commit()
            except (sqlite3.Error, ValueError) as exc:
                await conn.rollback()
                raise StoreError(f"delete from {table} failed: {exc}") from exc
