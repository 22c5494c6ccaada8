"""
Ingestion Stage
===============

Fetches intraday bars for every active instrument and configured
timeframe, keeps only bars inside the trading session, merges them into
the candle table, prunes each series to the retention window and
advances the per-pair checkpoint.

Fetch range per pair:

* no checkpoint -> seed a full retention window (session-aware)
* checkpoint    -> checkpoint + 1 minute .. now, unless that span implies
  more bars than the retention window, in which case reseed
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from ..connectors.dhan_client import DhanClient
from ..core.config import PipelineConfig
from ..core.errors import ConfigError, PipelineError
from ..core.models import Candle, Checkpoint, Instrument
from ..core.sessions import SessionCalendar
from ..storage.checkpoints import CheckpointRepository
from ..storage.repositories import CandleRepository, InstrumentRepository
from .base import Clock, PairOutcome, PipelineStage, StageResult, run_in_batches, utcnow

DELTA_OFFSET = timedelta(minutes=1)


class IngestionStage(PipelineStage):
    name = "ingestion"

    def __init__(
        self,
        client: Optional[DhanClient],
        instruments: InstrumentRepository,
        candles: CandleRepository,
        checkpoints: CheckpointRepository,
        calendar: SessionCalendar,
        config: PipelineConfig,
        clock: Clock = utcnow,
    ):
        super().__init__(clock)
        self.client = client
        self.instruments = instruments
        self.candles = candles
        self.checkpoints = checkpoints
        self.calendar = calendar
        self.config = config

    def fetch_range(
        self,
        checkpoint: Optional[Checkpoint],
        now: datetime,
        timeframe: str,
    ) -> Tuple[datetime, datetime]:
        keep = self.config.retention.candles
        last = checkpoint.last_processed_timestamp if checkpoint else None
        if last is None:
            return self.calendar.seed_range(now, keep, timeframe)
        start = last + DELTA_OFFSET
        if self.calendar.candles_between(start, now, timeframe) > keep:
            self.logger.info(
                "Large gap since %s for timeframe %s, reseeding retention window",
                last.isoformat(), timeframe,
            )
            return self.calendar.seed_range(now, keep, timeframe)
        return start, now

    async def ingest_pair(self, instrument: Instrument, timeframe: str, now: datetime) -> PairOutcome:
        outcome = PairOutcome(instrument_id=instrument.id, timeframe=timeframe)
        try:
            checkpoint = await self.checkpoints.get(self.name, instrument.id, timeframe)
            start, end = self.fetch_range(checkpoint, now, timeframe)
            if end <= start:
                outcome.skipped = True
                return outcome

            bars = await self.client.fetch(instrument, timeframe, start, end)
            session_bars = [b for b in bars if self.calendar.is_within_session(b.timestamp)]
            if len(session_bars) != len(bars):
                self.logger.debug(
                    "%s/%s: dropped %d bars outside session",
                    instrument.symbol, timeframe, len(bars) - len(session_bars),
                )
            if not session_bars:
                outcome.skipped = True
                return outcome

            candles = [Candle.from_bar(instrument.id, timeframe, b) for b in session_bars]
            await self.candles.upsert(candles)
            await self.candles.prune(instrument.id, timeframe, self.config.retention.candles)

            latest = await self.candles.latest(instrument.id, timeframe)
            if latest is not None:
                await self.checkpoints.advance(self.name, instrument.id, timeframe, latest.timestamp)
            outcome.written = len(candles)
        except PipelineError as exc:
            self.logger.warning("Ingestion failed for %s/%s: %s", instrument.symbol, timeframe, exc)
            outcome.error = str(exc)
        except Exception as exc:
            self.logger.exception("Ingestion crashed for %s/%s", instrument.symbol, timeframe)
            outcome.error = f"{type(exc).__name__}: {exc}"
        return outcome

    async def _ingest_instrument(self, instrument: Instrument, now: datetime) -> List[PairOutcome]:
        # Timeframes of one instrument run sequentially to stay within provider limits
        outcomes = []
        for timeframe in self.config.timeframes:
            outcomes.append(await self.ingest_pair(instrument, timeframe, now))
        return outcomes

    async def _run(self) -> StageResult:
        if self.client is None:
            raise ConfigError("Provider credentials are not configured")
        active = await self.instruments.list_active()
        if not active:
            raise ConfigError("No active instruments found")

        result = StageResult(stage=self.name)
        routed = [i for i in active if i.has_routing]
        for inst in active:
            if not inst.has_routing:
                self.logger.warning("Skipping %s: missing provider routing fields", inst.symbol)
                result.skipped_pairs += len(self.config.timeframes)

        now = self.now()
        concurrency = self.config.concurrency
        batches = await run_in_batches(
            routed,
            lambda inst: self._ingest_instrument(inst, now),
            concurrency.ingestion_batch_size,
            concurrency.ingestion_pacing_seconds,
        )
        for outcomes in batches:
            for outcome in outcomes:
                result.add(outcome, "candles")
        return result
