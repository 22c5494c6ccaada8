"""
Checkpoint repository.

One row per (stage, instrument, timeframe) in ``processing_state`` holding
the last processed timestamp, the last run time and a status.  The
pipeline's own run state lives under the reserved key
``("pipeline", 0, "global")``.

Advances are compare-and-advance: the stored timestamp only moves
forward, so a late writer from an overlapping run cannot rewind it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from ..core.models import Checkpoint, CheckpointStatus, to_iso
from .base import SeriesStore, eq, is_null, lte

logger = logging.getLogger("trendpipe.storage.checkpoints")

PROCESSING_STATE = "processing_state"
CHECKPOINT_KEY = ("stage", "instrument_id", "timeframe")

PIPELINE_STAGE = "pipeline"
PIPELINE_INSTRUMENT_ID = 0
PIPELINE_TIMEFRAME = "global"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CheckpointRepository:
    """Read and advance per-stage checkpoints."""

    def __init__(self, store: SeriesStore, clock: Callable[[], datetime] = _utcnow):
        self._store = store
        self._clock = clock

    @staticmethod
    def _key(stage: str, instrument_id: int, timeframe: str):
        return [eq("stage", stage), eq("instrument_id", instrument_id), eq("timeframe", timeframe)]

    async def get(self, stage: str, instrument_id: int, timeframe: str) -> Optional[Checkpoint]:
        rows = await self._store.query(
            PROCESSING_STATE, self._key(stage, instrument_id, timeframe), limit=1,
        )
        return Checkpoint.from_row(rows[0]) if rows else None

    async def set(
        self,
        stage: str,
        instrument_id: int,
        timeframe: str,
        last_processed: Optional[datetime],
        status: CheckpointStatus = CheckpointStatus.COMPLETED,
    ) -> None:
        """Unconditionally write the checkpoint row."""
        row: Dict[str, Any] = {
            "stage": stage,
            "instrument_id": instrument_id,
            "timeframe": timeframe,
            "last_processed_timestamp": to_iso(last_processed) if last_processed else None,
            "last_run_at": to_iso(self._clock()),
            "status": status.value,
        }
        await self._store.upsert(PROCESSING_STATE, [row], CHECKPOINT_KEY)

    async def advance(
        self,
        stage: str,
        instrument_id: int,
        timeframe: str,
        last_processed: datetime,
        status: CheckpointStatus = CheckpointStatus.COMPLETED,
    ) -> bool:
        """Move the checkpoint forward to *last_processed*.

        Returns False (and leaves the row alone) when the stored checkpoint
        is already newer.
        """
        values = {
            "last_processed_timestamp": to_iso(last_processed),
            "last_run_at": to_iso(self._clock()),
            "status": status.value,
        }
        key = self._key(stage, instrument_id, timeframe)
        changed = await self._store.update(
            PROCESSING_STATE, values, [*key, lte("last_processed_timestamp", last_processed)],
        )
        if changed:
            return True
        changed = await self._store.update(
            PROCESSING_STATE, values, [*key, is_null("last_processed_timestamp")],
        )
        if changed:
            return True

        existing = await self.get(stage, instrument_id, timeframe)
        if existing is None:
            await self.set(stage, instrument_id, timeframe, last_processed, status)
            return True
        logger.warning(
            "Checkpoint %s/%s/%s not moved back from %s to %s",
            stage, instrument_id, timeframe,
            existing.last_processed_timestamp, last_processed,
        )
        return False

    async def mark(
        self,
        stage: str,
        instrument_id: int,
        timeframe: str,
        status: CheckpointStatus,
    ) -> None:
        """Set the status (and run time) without touching the timestamp."""
        values = {"last_run_at": to_iso(self._clock()), "status": status.value}
        changed = await self._store.update(
            PROCESSING_STATE, values, self._key(stage, instrument_id, timeframe),
        )
        if not changed:
            await self.set(stage, instrument_id, timeframe, None, status)

    # ─── Pipeline run state ───────────────────────────────────────────────

    async def pipeline_state(self) -> Optional[Checkpoint]:
        return await self.get(PIPELINE_STAGE, PIPELINE_INSTRUMENT_ID, PIPELINE_TIMEFRAME)

    async def mark_pipeline(self, status: CheckpointStatus) -> None:
        await self.mark(PIPELINE_STAGE, PIPELINE_INSTRUMENT_ID, PIPELINE_TIMEFRAME, status)

    async def complete_pipeline(self, processed_until: datetime) -> None:
        await self.set(
            PIPELINE_STAGE, PIPELINE_INSTRUMENT_ID, PIPELINE_TIMEFRAME,
            processed_until, CheckpointStatus.COMPLETED,
        )

    async def get_pipeline_status(self) -> Dict[str, Any]:
        """``{last_run_at, status, is_running}`` for status endpoints."""
        state = await self.pipeline_state()
        if state is None:
            return {"last_run_at": None, "status": None, "is_running": False}
        return {
            "last_run_at": to_iso(state.last_run_at) if state.last_run_at else None,
            "status": state.status.value,
            "is_running": state.status == CheckpointStatus.PROCESSING,
        }
