"""
Pipeline stage base.

Every stage implements :meth:`PipelineStage._run` and returns a
:class:`StageResult`.  :meth:`PipelineStage.run` turns escaping errors
into a failed result so the orchestrator can keep going:

* ``ConfigError`` -> status 404 (nothing to do / misconfigured)
* any other error -> status 500
* success -> status 200, even when individual pairs failed
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from ..core.errors import ConfigError
from ..core.logger import get_stage_logger

T = TypeVar("T")
R = TypeVar("R")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PairOutcome:
    """Result of processing one work item (instrument or instrument/timeframe)."""
    instrument_id: int
    timeframe: Optional[str] = None
    written: int = 0
    skipped: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class StageResult:
    stage: str
    ok: bool = True
    status: int = 200
    message: str = ""
    processed_pairs: int = 0
    skipped_pairs: int = 0
    totals: Dict[str, int] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def add(self, outcome: PairOutcome, total_key: str) -> None:
        if outcome.error is not None:
            self.errors.append({
                "instrument_id": outcome.instrument_id,
                "timeframe": outcome.timeframe,
                "error": outcome.error,
            })
        elif outcome.skipped:
            self.skipped_pairs += 1
        else:
            self.processed_pairs += 1
        self.totals[total_key] = self.totals.get(total_key, 0) + outcome.written

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "ok": self.ok,
            "status": self.status,
            "message": self.message,
            "processed_pairs": self.processed_pairs,
            "skipped_pairs": self.skipped_pairs,
            "totals": dict(self.totals),
            "errors": list(self.errors),
        }


async def run_in_batches(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    batch_size: int,
    pacing_seconds: float = 0.0,
) -> List[R]:
    """Run *worker* over *items* in concurrent batches of *batch_size*.

    Batches run one after another with *pacing_seconds* between them.
    The worker is expected to catch its own per-item errors.
    """
    results: List[R] = []
    size = max(1, batch_size)
    for start in range(0, len(items), size):
        if start and pacing_seconds > 0:
            await asyncio.sleep(pacing_seconds)
        batch = items[start:start + size]
        results.extend(await asyncio.gather(*(worker(item) for item in batch)))
    return results


class PipelineStage(ABC):
    """Abstract base class for a checkpoint-gated pipeline stage."""

    name: str = "stage"

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock
        self.logger = get_stage_logger(self.name)

    def now(self) -> datetime:
        return self._clock()

    async def run(self) -> StageResult:
        self.logger.info("Stage %s starting", self.name)
        try:
            result = await self._run()
        except ConfigError as exc:
            self.logger.warning("Stage %s not run: %s", self.name, exc)
            return StageResult(stage=self.name, ok=False, status=404, message=str(exc))
        except Exception as exc:
            self.logger.exception("Stage %s failed", self.name)
            return StageResult(stage=self.name, ok=False, status=500, message=str(exc))

        self.logger.info(
            "Stage %s done: processed=%d skipped=%d errors=%d totals=%s",
            self.name, result.processed_pairs, result.skipped_pairs,
            len(result.errors), result.totals,
        )
        return result

    @abstractmethod
    async def _run(self) -> StageResult:
        """Process every work item and return the aggregated result."""
