"""
Tests for the trend stage: classification, crossovers and carry-in.
"""

import pytest

from trendpipe.core.models import IndicatorConfig, Signal
from trendpipe.pipeline import TrendStage

from factories import MONDAY, FixedClock, ist, make_candles, make_config, session_slots


def _stage(repos, config=None):
    return TrendStage(
        repos.indicators, repos.candles, repos.signals, repos.trends, repos.checkpoints,
        config or make_config(), FixedClock(ist(MONDAY, 15, 35)),
    )


async def _seed(repos, timestamps, shorts, longs):
    await repos.candles.upsert(make_candles(1, "5", timestamps, [100.0] * len(timestamps)))
    signals = []
    for ts, short, long in zip(timestamps, shorts, longs):
        signals.append(Signal(1, 1, "5", ts, short))
        if long is not None:
            signals.append(Signal(1, 2, "5", ts, long))
    await repos.signals.insert_new(signals)


class TestTrendStage:

    @pytest.mark.asyncio
    async def test_crossovers(self, repos, ema_indicators):
        slots = session_slots(MONDAY)[:4]
        await _seed(repos, slots, [1.0, 3.0, 3.0, 1.0], [2.0, 2.0, 2.0, 2.0])

        result = await _stage(repos).run()

        records = await repos.trends.list(1, "5")
        assert [r.trend for r in records] == ["Bearish", "Bullish", "Bullish", "Bearish"]
        assert [r.crossover for r in records] == [None, "Bullish", None, "Bearish"]
        assert result.totals == {"trend_records": 4}
        cp = await repos.checkpoints.get("trend", 1, "5")
        assert cp.last_processed_timestamp == slots[3]

    @pytest.mark.asyncio
    async def test_equal_emas_are_bullish(self, repos, ema_indicators):
        slots = session_slots(MONDAY)[:2]
        await _seed(repos, slots, [1.0, 2.0], [2.0, 2.0])

        await _stage(repos).run()

        records = await repos.trends.list(1, "5")
        assert [r.trend for r in records] == ["Bearish", "Bullish"]
        assert records[1].crossover == "Bullish"

    @pytest.mark.asyncio
    async def test_crossover_carried_across_runs(self, repos, ema_indicators):
        slots = session_slots(MONDAY)[:3]
        stage = _stage(repos)
        await _seed(repos, slots[:2], [1.0, 1.5], [2.0, 2.0])
        await stage.run()

        await _seed(repos, slots[2:], [2.5], [2.0])
        result = await stage.run()

        records = await repos.trends.list(1, "5")
        assert len(records) == 3
        assert records[-1].crossover == "Bullish"
        assert result.totals == {"trend_records": 1}

    @pytest.mark.asyncio
    async def test_waits_for_both_signals(self, repos, ema_indicators):
        slots = session_slots(MONDAY)[:3]
        # long EMA still warming up on the last candle
        await _seed(repos, slots, [1.0, 2.0, 3.0], [2.0, 2.0, None])

        await _stage(repos).run()

        records = await repos.trends.list(1, "5")
        assert [r.timestamp for r in records] == slots[:2]
        cp = await repos.checkpoints.get("trend", 1, "5")
        assert cp.last_processed_timestamp == slots[1]

    @pytest.mark.asyncio
    async def test_trend_retention(self, repos, ema_indicators):
        slots = session_slots(MONDAY)[:6]
        await _seed(repos, slots, [1.0] * 6, [2.0] * 6)

        await _stage(repos, make_config(trends=2)).run()

        records = await repos.trends.list(1, "5")
        assert [r.timestamp for r in records] == slots[-2:]

    @pytest.mark.asyncio
    async def test_missing_long_indicator_is_404(self, repos, ema_indicators):
        await repos.indicators.upsert([IndicatorConfig(id=2, type="ema", period=30, is_active=False)])
        result = await _stage(repos).run()
        assert (result.ok, result.status) == (False, 404)
        assert "30" in result.message
