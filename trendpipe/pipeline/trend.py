"""
Trend Stage
===========

Folds the short/long EMA signal pairs of every (instrument, timeframe)
into trend records with crossover events.

For each pair the stage reads the signals after its trend checkpoint plus
the most recent short and long value before them (the crossover
carry-in), folds the timestamps in ascending order, upserts the records,
prunes to the trend retention size and advances the checkpoint to the
last timestamp that produced a record.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..core.config import PipelineConfig
from ..core.errors import ConfigError, PipelineError
from ..core.indicators import CrossoverState, fold_trend
from ..core.models import IndicatorConfig, Signal, TrendRecord
from ..storage.checkpoints import CheckpointRepository
from ..storage.repositories import (
    CandleRepository,
    IndicatorRepository,
    SignalRepository,
    TrendRepository,
)
from .base import Clock, PairOutcome, PipelineStage, StageResult, run_in_batches, utcnow


class TrendStage(PipelineStage):
    name = "trend"

    def __init__(
        self,
        indicators: IndicatorRepository,
        candles: CandleRepository,
        signals: SignalRepository,
        trends: TrendRepository,
        checkpoints: CheckpointRepository,
        config: PipelineConfig,
        clock: Clock = utcnow,
    ):
        super().__init__(clock)
        self.indicators = indicators
        self.candles = candles
        self.signals = signals
        self.trends = trends
        self.checkpoints = checkpoints
        self.config = config

    async def resolve_indicators(self) -> Tuple[IndicatorConfig, IndicatorConfig]:
        """The active short- and long-period EMA indicators."""
        by_period = {}
        for ind in await self.indicators.list_active("ema"):
            by_period.setdefault(ind.period, ind)
        short_period = self.config.trend.short_period
        long_period = self.config.trend.long_period
        missing = [p for p in (short_period, long_period) if p not in by_period]
        if missing:
            raise ConfigError(f"No active EMA indicator with period {missing}")
        return by_period[short_period], by_period[long_period]

    async def _carry_in(
        self,
        instrument_id: int,
        timeframe: str,
        short: IndicatorConfig,
        long: IndicatorConfig,
        before: datetime,
    ) -> Optional[CrossoverState]:
        prev_short = await self.signals.latest_before(instrument_id, short.id, timeframe, before)
        prev_long = await self.signals.latest_before(instrument_id, long.id, timeframe, before)
        if prev_short is None or prev_long is None:
            return None
        return CrossoverState(prev_short=prev_short.value, prev_long=prev_long.value)

    async def process_pair(
        self,
        pair: Tuple[int, str],
        short: IndicatorConfig,
        long: IndicatorConfig,
    ) -> PairOutcome:
        instrument_id, timeframe = pair
        outcome = PairOutcome(instrument_id=instrument_id, timeframe=timeframe)
        try:
            checkpoint = await self.checkpoints.get(self.name, instrument_id, timeframe)
            after = checkpoint.last_processed_timestamp if checkpoint else None
            new_timestamps = [c.timestamp for c in await self.candles.list(instrument_id, timeframe, after)]
            if not new_timestamps:
                outcome.skipped = True
                return outcome

            short_values = _by_timestamp(
                await self.signals.since(instrument_id, short.id, timeframe, after))
            long_values = _by_timestamp(
                await self.signals.since(instrument_id, long.id, timeframe, after))
            pairs = [
                (ts, short_values[ts], long_values[ts])
                for ts in new_timestamps
                if ts in short_values and ts in long_values
            ]
            if not pairs:
                outcome.skipped = True
                return outcome

            carry_in = await self._carry_in(instrument_id, timeframe, short, long, pairs[0][0])
            points, _ = fold_trend(pairs, carry_in)
            records: List[TrendRecord] = [
                TrendRecord(
                    instrument_id=instrument_id,
                    timeframe=timeframe,
                    timestamp=p.timestamp,
                    short_ema=p.short_ema,
                    long_ema=p.long_ema,
                    trend=p.trend,
                    crossover=p.crossover,
                )
                for p in points
            ]
            await self.trends.upsert(records)
            await self.trends.prune(instrument_id, timeframe, self.config.retention.trends)
            await self.checkpoints.advance(self.name, instrument_id, timeframe, records[-1].timestamp)
            outcome.written = len(records)
            self.logger.debug(
                "%s/%s: %d trend records, %d crossovers",
                instrument_id, timeframe, len(records),
                sum(1 for r in records if r.crossover),
            )
        except PipelineError as exc:
            self.logger.warning("Trend failed for %s/%s: %s", instrument_id, timeframe, exc)
            outcome.error = str(exc)
        except Exception as exc:
            self.logger.exception("Trend crashed for %s/%s", instrument_id, timeframe)
            outcome.error = f"{type(exc).__name__}: {exc}"
        return outcome

    async def _run(self) -> StageResult:
        short, long = await self.resolve_indicators()
        pairs = await self.candles.distinct_pairs()
        if not pairs:
            raise ConfigError("No instrument/timeframe pairs with candles found")

        result = StageResult(stage=self.name)
        outcomes = await run_in_batches(
            pairs,
            lambda pair: self.process_pair(pair, short, long),
            self.config.concurrency.compute_batch_size,
        )
        for outcome in outcomes:
            result.add(outcome, "trend_records")
        return result


def _by_timestamp(signals: List[Signal]) -> Dict[datetime, float]:
    return {s.timestamp: s.value for s in signals}
