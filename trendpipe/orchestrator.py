"""
trendpipe Orchestrator
======================

Runs the four stages in order (ingestion, indicator, trend, aggregation)
and reports every step's outcome.  A failed step never stops the run:
all steps execute and overall success is the AND of the step results.

The pipeline's own run state is kept under the checkpoint key
``("pipeline", 0, "global")``: ``processing`` while running, then
``completed`` or ``failed``.  Stages never read it.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from .connectors.dhan_client import DhanClient
from .core.config import PipelineConfig
from .core.errors import ConfigError, StoreError
from .core.logger import get_logger
from .core.models import CheckpointStatus, SnapshotRow
from .core.sessions import SessionCalendar
from .pipeline import (
    AggregationStage,
    IndicatorStage,
    IngestionStage,
    PipelineStage,
    StageResult,
    TrendStage,
)
from .pipeline.base import Clock, utcnow
from .storage import (
    CandleRepository,
    CheckpointRepository,
    IndicatorRepository,
    InstrumentRepository,
    RestStore,
    SeriesStore,
    SignalRepository,
    SnapshotRepository,
    SqliteStore,
    TrendRepository,
)

logger = get_logger("orchestrator")


def _step_detail(result: StageResult) -> str:
    if result.message:
        return result.message
    if result.errors:
        first = result.errors[0]
        return f"{len(result.errors)} pair error(s), first: {first['error']}"
    return f"HTTP {result.status}"


class PipelineOrchestrator:
    """Sequential, continue-on-error runner over the pipeline stages."""

    def __init__(
        self,
        stages: Sequence[PipelineStage],
        checkpoints: CheckpointRepository,
        snapshot: Optional[SnapshotRepository] = None,
        timeframes: Sequence[str] = (),
        store: Optional[SeriesStore] = None,
        client: Optional[DhanClient] = None,
        clock: Clock = utcnow,
    ):
        self.stages = list(stages)
        self.checkpoints = checkpoints
        self.snapshot = snapshot
        self.timeframes = tuple(timeframes)
        self._store = store
        self._client = client
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def store(self) -> Optional[SeriesStore]:
        return self._store

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def stage(self, name: str) -> PipelineStage:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise ConfigError(f"Unknown stage: {name}")

    async def _record_state(self, status: CheckpointStatus, started: datetime) -> None:
        try:
            if status == CheckpointStatus.COMPLETED:
                await self.checkpoints.complete_pipeline(started)
            else:
                await self.checkpoints.mark_pipeline(status)
        except StoreError as exc:
            logger.warning("Could not record pipeline state %s: %s", status.value, exc)

    async def run(self) -> Dict[str, Any]:
        """Run every stage once; returns ``{success, error, steps}``."""
        if self._lock.locked():
            return {"success": False, "error": "Pipeline is already running", "steps": []}

        async with self._lock:
            started = self._clock()
            logger.info("Pipeline run starting")
            await self._record_state(CheckpointStatus.PROCESSING, started)

            steps: List[Dict[str, Any]] = []
            error: Optional[str] = None
            for stage in self.stages:
                result = await stage.run()
                steps.append({
                    "name": stage.name,
                    "ok": result.ok,
                    "status": result.status,
                    "detail": result.to_dict(),
                })
                if not result.ok:
                    error = f"{stage.name} failed: {_step_detail(result)}"
                    logger.warning("Step %s failed (status %d)", stage.name, result.status)

            success = all(step["ok"] for step in steps)
            await self._record_state(
                CheckpointStatus.COMPLETED if success else CheckpointStatus.FAILED, started,
            )
            logger.info("Pipeline run finished: success=%s", success)
            return {"success": success, "error": error, "steps": steps}

    async def run_stage(self, name: str) -> StageResult:
        return await self.stage(name).run()

    async def status(self) -> Dict[str, Any]:
        status = await self.checkpoints.get_pipeline_status()
        status["is_running"] = status["is_running"] or self.is_running
        return status

    async def snapshot_rows(self) -> List[SnapshotRow]:
        if self.snapshot is None:
            return []
        order_tf = self.timeframes[0] if self.timeframes else None
        return await self.snapshot.list(order_timeframe=order_tf)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
        if self._store is not None:
            await self._store.close()


def build_store(config: PipelineConfig) -> SeriesStore:
    store_cfg = config.store
    if store_cfg.backend == "rest":
        return RestStore(
            url=store_cfg.url,
            api_key=store_cfg.api_key,
            timeout_seconds=store_cfg.timeout_seconds,
            chunk_size=store_cfg.chunk_size,
        )
    return SqliteStore(store_cfg.db_path)


def build_client(config: PipelineConfig) -> Optional[DhanClient]:
    provider = config.provider
    if not provider.client_id or not provider.access_token:
        logger.warning("Provider credentials missing; ingestion will be skipped")
        return None
    return DhanClient(
        client_id=provider.client_id,
        access_token=provider.access_token,
        base_url=provider.base_url,
        timeout_seconds=provider.timeout_seconds,
        exchange_tz=config.session.timezone,
    )


async def build_orchestrator(
    config: PipelineConfig,
    store: Optional[SeriesStore] = None,
    client: Optional[DhanClient] = None,
    clock: Clock = utcnow,
) -> PipelineOrchestrator:
    """Wire store, provider client, repositories and stages from *config*.

    The store is connected here; call :meth:`PipelineOrchestrator.close`
    when done.
    """
    if store is None:
        store = build_store(config)
    await store.connect()
    if client is None:
        client = build_client(config)

    calendar = SessionCalendar(config.session)
    instruments = InstrumentRepository(store)
    indicators = IndicatorRepository(store)
    candles = CandleRepository(store)
    signals = SignalRepository(store)
    trends = TrendRepository(store)
    snapshot = SnapshotRepository(store)
    checkpoints = CheckpointRepository(store, clock=clock)

    stages: List[PipelineStage] = [
        IngestionStage(client, instruments, candles, checkpoints, calendar, config, clock),
        IndicatorStage(indicators, candles, signals, checkpoints, config, clock),
        TrendStage(indicators, candles, signals, trends, checkpoints, config, clock),
        AggregationStage(instruments, candles, trends, snapshot, calendar, config, clock),
    ]
    return PipelineOrchestrator(
        stages,
        checkpoints,
        snapshot=snapshot,
        timeframes=config.timeframes,
        store=store,
        client=client,
        clock=clock,
    )
