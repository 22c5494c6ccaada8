"""
Shared test fixtures.

Stage and repository tests run against a real in-memory SQLite store.
"""

from types import SimpleNamespace

import pytest
import pytest_asyncio

from trendpipe.core.models import IndicatorConfig
from trendpipe.storage import (
    CandleRepository,
    CheckpointRepository,
    IndicatorRepository,
    InstrumentRepository,
    SignalRepository,
    SnapshotRepository,
    SqliteStore,
    TrendRepository,
)


@pytest_asyncio.fixture
async def store():
    store = SqliteStore(":memory:")
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def repos(store):
    """All repositories bound to the in-memory store."""
    return SimpleNamespace(
        instruments=InstrumentRepository(store),
        indicators=IndicatorRepository(store),
        candles=CandleRepository(store),
        signals=SignalRepository(store),
        trends=TrendRepository(store),
        snapshot=SnapshotRepository(store),
        checkpoints=CheckpointRepository(store),
    )


@pytest_asyncio.fixture
async def ema_indicators(repos):
    """Active EMA(9) and EMA(30) indicator configs."""
    indicators = [
        IndicatorConfig(id=1, type="ema", period=9),
        IndicatorConfig(id=2, type="ema", period=30),
    ]
    await repos.indicators.upsert(indicators)
    return indicators
