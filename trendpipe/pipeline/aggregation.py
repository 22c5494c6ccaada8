"""
Aggregation Stage
=================

Rebuilds the per-instrument snapshot: current price (CMP), percent change
against the prior session's last close, and the latest trend and
crossover timestamp for each configured timeframe.

The prior close is the newest candle strictly before local midnight of
the CMP candle's session day, in the configured session time zone.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from ..core.config import PipelineConfig
from ..core.errors import ConfigError, PipelineError
from ..core.indicators import percent_change
from ..core.models import Instrument, SnapshotRow, TimeframeState
from ..core.sessions import SessionCalendar
from ..storage.repositories import (
    CandleRepository,
    InstrumentRepository,
    SnapshotRepository,
    TrendRepository,
)
from .base import Clock, PairOutcome, PipelineStage, StageResult, run_in_batches, utcnow


class AggregationStage(PipelineStage):
    name = "aggregation"

    def __init__(
        self,
        instruments: InstrumentRepository,
        candles: CandleRepository,
        trends: TrendRepository,
        snapshot: SnapshotRepository,
        calendar: SessionCalendar,
        config: PipelineConfig,
        clock: Clock = utcnow,
    ):
        super().__init__(clock)
        self.instruments = instruments
        self.candles = candles
        self.trends = trends
        self.snapshot = snapshot
        self.calendar = calendar
        self.config = config

    async def build_row(self, instrument: Instrument) -> Optional[SnapshotRow]:
        """Snapshot row for *instrument*, or None when it has no candles."""
        current = await self.candles.latest_for_instrument(instrument.id)
        if current is None:
            return None
        day_start = self.calendar.session_day_start(current.timestamp)
        prior = await self.candles.latest_for_instrument(instrument.id, before=day_start)

        timeframes: Dict[str, TimeframeState] = {}
        for timeframe in self.config.timeframes:
            latest = await self.trends.latest(instrument.id, timeframe)
            crossover = await self.trends.latest_crossover(instrument.id, timeframe)
            timeframes[timeframe] = TimeframeState(
                trend=latest.trend if latest else None,
                crossover_at=crossover.timestamp if crossover else None,
            )

        return SnapshotRow(
            instrument_id=instrument.id,
            symbol=instrument.symbol,
            cmp=current.close,
            cmp_timestamp=current.timestamp,
            prcnt_change=percent_change(current.close, prior.close if prior else None),
            timeframes=timeframes,
            last_updated=self.now(),
        )

    async def _run(self) -> StageResult:
        pairs = await self.candles.distinct_pairs()
        instrument_ids = sorted({instrument_id for instrument_id, _ in pairs})
        if not instrument_ids:
            raise ConfigError("No instruments with candles found")
        known = await self.instruments.get_many(instrument_ids)

        result = StageResult(stage=self.name)
        rows: List[SnapshotRow] = []

        async def aggregate(instrument_id: int) -> PairOutcome:
            outcome = PairOutcome(instrument_id=instrument_id)
            instrument = known.get(instrument_id)
            if instrument is None:
                self.logger.warning("Skipping instrument %s: not in reference data", instrument_id)
                outcome.skipped = True
                return outcome
            try:
                row = await self.build_row(instrument)
            except PipelineError as exc:
                self.logger.warning("Aggregation failed for %s: %s", instrument.symbol, exc)
                outcome.error = str(exc)
                return outcome
            except Exception as exc:
                self.logger.exception("Aggregation crashed for %s", instrument.symbol)
                outcome.error = f"{type(exc).__name__}: {exc}"
                return outcome
            if row is None:
                outcome.skipped = True
            else:
                rows.append(row)
                outcome.written = 1
            return outcome

        outcomes = await run_in_batches(
            instrument_ids, aggregate, self.config.concurrency.compute_batch_size,
        )
        for outcome in outcomes:
            result.add(outcome, "snapshot_rows")

        # A failed instrument keeps its previous snapshot row
        failed_ids = {o.instrument_id for o in outcomes if o.error is not None}
        if failed_ids:
            previous = [r for r in await self.snapshot.list() if r.instrument_id in failed_ids]
            rows.extend(previous)
        rows.sort(key=lambda r: r.instrument_id)
        await self.snapshot.replace_all(rows)
        return result
