"""
Repositories
============

Typed access to each table on top of a :class:`SeriesStore`.  Pipeline
stages never build filters themselves; they ask a repository for
entities and hand entities back.

Usage::

    candles = CandleRepository(store)
    latest = await candles.latest(instrument_id=1, timeframe="5")
    await candles.prune(1, "5", keep=210)
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from ..core.models import (
    Candle,
    IndicatorConfig,
    Instrument,
    Signal,
    SnapshotRow,
    TrendRecord,
    parse_timestamp,
)
from .base import Filter, Order, SeriesStore, asc, desc, eq, gt, in_, lt, lte, not_in, not_null

logger = logging.getLogger("trendpipe.storage.repositories")

INSTRUMENTS = "instruments"
INDICATORS = "indicators"
CANDLES = "candles"
SIGNALS = "signals"
TRENDS = "ema_trends"
SNAPSHOT = "strategy_snapshot"

CANDLE_KEY = ("instrument_id", "timeframe", "timestamp")
SIGNAL_KEY = ("instrument_id", "indicator_id", "timeframe", "timestamp")
TREND_KEY = ("instrument_id", "timeframe", "timestamp")

# Hosted stores cap rows per response (PostgREST defaults to 1000)
PAGE_SIZE = 1000


async def _query_all(
    store: SeriesStore,
    table: str,
    filters: Sequence[Filter] = (),
    order: Sequence[Order] = (),
    columns: Optional[Sequence[str]] = None,
    page_size: int = PAGE_SIZE,
) -> List[Dict[str, Any]]:
    """Read every matching row in pages of *page_size*.

    *order* must be total over the table so pages neither overlap nor skip.
    """
    rows: List[Dict[str, Any]] = []
    offset = 0
    while True:
        page = await store.query(
            table, filters=list(filters), order=list(order),
            limit=page_size, offset=offset, columns=columns,
        )
        rows.extend(page)
        if len(page) < page_size:
            return rows
        offset += page_size


async def _prune(store: SeriesStore, table: str, scope: List[Filter], keep: int) -> None:
    """Keep only the newest *keep* rows of *table* within *scope*.

    Finds the newest row past the retention window and deletes everything
    at or before it.
    """
    if keep <= 0:
        return
    boundary = await store.query(
        table, filters=scope, order=[desc("timestamp")], limit=1, offset=keep,
        columns=["timestamp"],
    )
    if not boundary:
        return
    await store.delete(table, [*scope, lte("timestamp", boundary[0]["timestamp"])])


class InstrumentRepository:
    def __init__(self, store: SeriesStore):
        self._store = store

    async def list_active(self) -> List[Instrument]:
        rows = await self._store.query(INSTRUMENTS, [eq("is_active", True)], [asc("id")])
        return [Instrument.from_row(r) for r in rows]

    async def get_many(self, ids: Iterable[int]) -> Dict[int, Instrument]:
        ids = sorted(set(ids))
        if not ids:
            return {}
        rows = await self._store.query(INSTRUMENTS, [in_("id", ids)])
        return {inst.id: inst for inst in (Instrument.from_row(r) for r in rows)}

    async def upsert(self, instruments: Sequence[Instrument]) -> int:
        return await self._store.upsert(
            INSTRUMENTS, [i.to_row() for i in instruments], conflict=["id"],
        )


class IndicatorRepository:
    def __init__(self, store: SeriesStore):
        self._store = store

    async def list_active(self, indicator_type: str = "ema") -> List[IndicatorConfig]:
        """Active indicators of *indicator_type* with a usable period."""
        rows = await self._store.query(INDICATORS, [eq("is_active", True)], [asc("id")])
        configs = [IndicatorConfig.from_row(r) for r in rows]
        return [c for c in configs if c.type == indicator_type and c.period > 0]

    async def upsert(self, indicators: Sequence[IndicatorConfig]) -> int:
        return await self._store.upsert(
            INDICATORS, [i.to_row() for i in indicators], conflict=["id"],
        )


class CandleRepository:
    def __init__(self, store: SeriesStore):
        self._store = store

    @staticmethod
    def _scope(instrument_id: int, timeframe: str) -> List[Filter]:
        return [eq("instrument_id", instrument_id), eq("timeframe", timeframe)]

    async def upsert(self, candles: Sequence[Candle]) -> int:
        """Merge on (instrument, timeframe, timestamp); re-fetched bars overwrite."""
        return await self._store.upsert(CANDLES, [c.to_row() for c in candles], CANDLE_KEY)

    async def latest(self, instrument_id: int, timeframe: str) -> Optional[Candle]:
        rows = await self._store.query(
            CANDLES, self._scope(instrument_id, timeframe), [desc("timestamp")], limit=1,
        )
        return Candle.from_row(rows[0]) if rows else None

    async def list(
        self,
        instrument_id: int,
        timeframe: str,
        after: Optional[datetime] = None,
    ) -> List[Candle]:
        """Candles in ascending time order, optionally only those after *after*."""
        filters = self._scope(instrument_id, timeframe)
        if after is not None:
            filters.append(gt("timestamp", after))
        rows = await self._store.query(CANDLES, filters, [asc("timestamp")])
        return [Candle.from_row(r) for r in rows]

    async def count(self, instrument_id: int, timeframe: str) -> int:
        rows = await self._store.query(
            CANDLES, self._scope(instrument_id, timeframe), columns=["timestamp"],
        )
        return len(rows)

    async def latest_for_instrument(
        self,
        instrument_id: int,
        before: Optional[datetime] = None,
    ) -> Optional[Candle]:
        """Newest candle of the instrument across all timeframes."""
        filters = [eq("instrument_id", instrument_id)]
        if before is not None:
            filters.append(lt("timestamp", before))
        rows = await self._store.query(CANDLES, filters, [desc("timestamp")], limit=1)
        return Candle.from_row(rows[0]) if rows else None

    async def distinct_pairs(self) -> List[Tuple[int, str]]:
        """Every (instrument_id, timeframe) with at least one stored candle."""
        rows = await _query_all(
            self._store, CANDLES,
            order=[asc("instrument_id"), asc("timeframe"), asc("timestamp")],
            columns=["instrument_id", "timeframe"],
        )
        pairs: Set[Tuple[int, str]] = {(int(r["instrument_id"]), str(r["timeframe"])) for r in rows}
        return sorted(pairs)

    async def prune(self, instrument_id: int, timeframe: str, keep: int) -> None:
        await _prune(self._store, CANDLES, self._scope(instrument_id, timeframe), keep)


class SignalRepository:
    def __init__(self, store: SeriesStore):
        self._store = store

    @staticmethod
    def _scope(instrument_id: int, indicator_id: int, timeframe: str) -> List[Filter]:
        return [
            eq("instrument_id", instrument_id),
            eq("indicator_id", indicator_id),
            eq("timeframe", timeframe),
        ]

    async def insert_new(self, signals: Sequence[Signal]) -> int:
        """Insert signals; rows already stored for a timestamp are left untouched."""
        return await self._store.upsert(
            SIGNALS, [s.to_row() for s in signals], SIGNAL_KEY, ignore_duplicates=True,
        )

    async def existing_timestamps(
        self,
        instrument_id: int,
        indicator_id: int,
        timeframe: str,
        timestamps: Sequence[datetime],
    ) -> Set[datetime]:
        if not timestamps:
            return set()
        rows = await self._store.query(
            SIGNALS,
            [*self._scope(instrument_id, indicator_id, timeframe), in_("timestamp", timestamps)],
            columns=["timestamp"],
        )
        return {parse_timestamp(r["timestamp"]) for r in rows}

    async def latest_before(
        self,
        instrument_id: int,
        indicator_id: int,
        timeframe: str,
        before: datetime,
    ) -> Optional[Signal]:
        rows = await self._store.query(
            SIGNALS,
            [*self._scope(instrument_id, indicator_id, timeframe), lt("timestamp", before)],
            [desc("timestamp")],
            limit=1,
        )
        return Signal.from_row(rows[0]) if rows else None

    async def since(
        self,
        instrument_id: int,
        indicator_id: int,
        timeframe: str,
        after: Optional[datetime] = None,
    ) -> List[Signal]:
        """Signals in ascending time order, optionally only those after *after*."""
        filters = self._scope(instrument_id, indicator_id, timeframe)
        if after is not None:
            filters.append(gt("timestamp", after))
        rows = await self._store.query(SIGNALS, filters, [asc("timestamp")])
        return [Signal.from_row(r) for r in rows]

    async def prune(self, instrument_id: int, indicator_id: int, timeframe: str, keep: int) -> None:
        await _prune(
            self._store, SIGNALS, self._scope(instrument_id, indicator_id, timeframe), keep,
        )


class TrendRepository:
    def __init__(self, store: SeriesStore):
        self._store = store

    @staticmethod
    def _scope(instrument_id: int, timeframe: str) -> List[Filter]:
        return [eq("instrument_id", instrument_id), eq("timeframe", timeframe)]

    async def upsert(self, records: Sequence[TrendRecord]) -> int:
        return await self._store.upsert(TRENDS, [r.to_row() for r in records], TREND_KEY)

    async def latest(self, instrument_id: int, timeframe: str) -> Optional[TrendRecord]:
        rows = await self._store.query(
            TRENDS, self._scope(instrument_id, timeframe), [desc("timestamp")], limit=1,
        )
        return TrendRecord.from_row(rows[0]) if rows else None

    async def latest_crossover(self, instrument_id: int, timeframe: str) -> Optional[TrendRecord]:
        rows = await self._store.query(
            TRENDS,
            [*self._scope(instrument_id, timeframe), not_null("crossover")],
            [desc("timestamp")],
            limit=1,
        )
        return TrendRecord.from_row(rows[0]) if rows else None

    async def list(self, instrument_id: int, timeframe: str) -> List[TrendRecord]:
        rows = await self._store.query(
            TRENDS, self._scope(instrument_id, timeframe), [asc("timestamp")],
        )
        return [TrendRecord.from_row(r) for r in rows]

    async def prune(self, instrument_id: int, timeframe: str, keep: int) -> None:
        await _prune(self._store, TRENDS, self._scope(instrument_id, timeframe), keep)


class SnapshotRepository:
    def __init__(self, store: SeriesStore):
        self._store = store

    async def replace_all(self, rows: Sequence[SnapshotRow]) -> int:
        """Replace the snapshot with *rows*.

        Rows are upserted first and stale instruments deleted afterwards, so
        a concurrent reader never observes an empty table.
        """
        written = await self._store.upsert(
            SNAPSHOT, [r.to_row() for r in rows], conflict=["instrument_id"],
        )
        keep_ids = [r.instrument_id for r in rows]
        await self._store.delete(SNAPSHOT, [not_in("instrument_id", keep_ids)])
        return written

    async def list(self, order_timeframe: Optional[str] = None) -> List[SnapshotRow]:
        """All snapshot rows, newest crossover on *order_timeframe* first (nulls last)."""
        rows = [
            SnapshotRow.from_row(r)
            for r in await _query_all(self._store, SNAPSHOT, order=[asc("instrument_id")])
        ]
        rows.sort(key=lambda r: r.symbol)
        if order_timeframe is None:
            return rows

        def crossover_at(row: SnapshotRow) -> Optional[datetime]:
            state = row.timeframes.get(order_timeframe)
            return state.crossover_at if state else None

        with_cross = [r for r in rows if crossover_at(r) is not None]
        without = [r for r in rows if crossover_at(r) is None]
        with_cross.sort(key=crossover_at, reverse=True)
        return with_cross + without
