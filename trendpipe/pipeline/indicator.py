"""
Indicator Stage
===============

Computes EMA signals for every (instrument, timeframe) pair that has
candles newer than its indicator checkpoint.

The EMA is computed over the full stored candle series of the pair (the
retention window), seeded with the mean of the first ``period`` closes.
Only timestamps that have no stored signal yet are inserted; existing
values are never overwritten.  Each (instrument, indicator, timeframe)
series is then pruned to the signal retention size.
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

from ..core.config import PipelineConfig
from ..core.errors import ConfigError, PipelineError
from ..core.indicators import ema_batch, round_value
from ..core.models import Candle, IndicatorConfig, Signal
from ..storage.checkpoints import CheckpointRepository
from ..storage.repositories import CandleRepository, IndicatorRepository, SignalRepository
from .base import Clock, PairOutcome, PipelineStage, StageResult, run_in_batches, utcnow


class IndicatorStage(PipelineStage):
    name = "indicator"

    def __init__(
        self,
        indicators: IndicatorRepository,
        candles: CandleRepository,
        signals: SignalRepository,
        checkpoints: CheckpointRepository,
        config: PipelineConfig,
        clock: Clock = utcnow,
    ):
        super().__init__(clock)
        self.indicators = indicators
        self.candles = candles
        self.signals = signals
        self.checkpoints = checkpoints
        self.config = config

    async def compute_indicator(
        self,
        indicator: IndicatorConfig,
        series: Sequence[Candle],
        new: Sequence[Candle],
    ) -> int:
        """Insert signals of *indicator* for the *new* candles of *series*."""
        if not new:
            return 0
        instrument_id, timeframe = new[0].instrument_id, new[0].timeframe
        values = ema_batch([c.close for c in series], indicator.period)
        first_new = new[0].timestamp

        candidates = [
            Signal(
                instrument_id=instrument_id,
                indicator_id=indicator.id,
                timeframe=timeframe,
                timestamp=candle.timestamp,
                value=round_value(value),
            )
            for candle, value in zip(series, values)
            if value is not None and candle.timestamp >= first_new
        ]
        # Anything older than the retention window would be pruned straight away
        candidates = candidates[-self.config.retention.signals:]
        if not candidates:
            return 0

        existing = await self.signals.existing_timestamps(
            instrument_id, indicator.id, timeframe, [s.timestamp for s in candidates],
        )
        fresh = [s for s in candidates if s.timestamp not in existing]
        written = await self.signals.insert_new(fresh) if fresh else 0
        await self.signals.prune(
            instrument_id, indicator.id, timeframe, self.config.retention.signals,
        )
        return written

    async def process_pair(
        self,
        pair: Tuple[int, str],
        indicators: Sequence[IndicatorConfig],
    ) -> PairOutcome:
        instrument_id, timeframe = pair
        outcome = PairOutcome(instrument_id=instrument_id, timeframe=timeframe)
        try:
            checkpoint = await self.checkpoints.get(self.name, instrument_id, timeframe)
            after = checkpoint.last_processed_timestamp if checkpoint else None
            series = await self.candles.list(instrument_id, timeframe)
            new = [c for c in series if after is None or c.timestamp > after]
            if not new:
                outcome.skipped = True
                return outcome

            for indicator in indicators:
                outcome.written += await self.compute_indicator(indicator, series, new)
            self.logger.debug(
                "%s/%s: %d new candles, %d signals written",
                instrument_id, timeframe, len(new), outcome.written,
            )

            await self.checkpoints.advance(self.name, instrument_id, timeframe, new[-1].timestamp)
        except PipelineError as exc:
            self.logger.warning("Indicators failed for %s/%s: %s", instrument_id, timeframe, exc)
            outcome.error = str(exc)
        except Exception as exc:
            self.logger.exception("Indicators crashed for %s/%s", instrument_id, timeframe)
            outcome.error = f"{type(exc).__name__}: {exc}"
        return outcome

    async def _run(self) -> StageResult:
        indicators: List[IndicatorConfig] = await self.indicators.list_active("ema")
        if not indicators:
            raise ConfigError("No active EMA indicators found")
        pairs = await self.candles.distinct_pairs()
        if not pairs:
            raise ConfigError("No instrument/timeframe pairs with candles found")

        self.logger.info("Computing %d indicators over %d pairs", len(indicators), len(pairs))
        result = StageResult(stage=self.name)
        outcomes = await run_in_batches(
            pairs,
            lambda pair: self.process_pair(pair, indicators),
            self.config.concurrency.compute_batch_size,
        )
        for outcome in outcomes:
            result.add(outcome, "signals")
        return result
