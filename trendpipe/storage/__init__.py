"""Persistence layer: store backends, repositories and checkpoints."""

from .base import Filter, SeriesStore
from .checkpoints import CheckpointRepository
from .repositories import (
    CandleRepository,
    IndicatorRepository,
    InstrumentRepository,
    SignalRepository,
    SnapshotRepository,
    TrendRepository,
)
from .rest_store import RestStore
from .sqlite_store import SqliteStore

__all__ = [
    "Filter",
    "SeriesStore",
    "SqliteStore",
    "RestStore",
    "CheckpointRepository",
    "CandleRepository",
    "IndicatorRepository",
    "InstrumentRepository",
    "SignalRepository",
    "SnapshotRepository",
    "TrendRepository",
]
