"""
Tests for the indicator stage: EMA signals, no-overwrite and retention.
"""

import pytest

from trendpipe.core.models import IndicatorConfig
from trendpipe.pipeline import IndicatorStage

from factories import MONDAY, FixedClock, ist, make_candles, make_config, session_slots


def _stage(repos, config=None):
    config = config or make_config()
    return IndicatorStage(
        repos.indicators, repos.candles, repos.signals, repos.checkpoints,
        config, FixedClock(ist(MONDAY, 15, 35)),
    )


@pytest.fixture
def slots():
    return session_slots(MONDAY)[:10]


class TestIndicatorStage:

    @pytest.mark.asyncio
    async def test_ema_signals_for_new_candles(self, repos, slots):
        await repos.indicators.upsert([IndicatorConfig(id=1, type="ema", period=3)])
        await repos.candles.upsert(make_candles(1, "5", slots[:9], range(1, 10)))

        result = await _stage(repos).run()

        signals = await repos.signals.since(1, 1, "5")
        assert [s.value for s in signals] == [2.0, 3.0, 4.0, 5.0, 6.0, 7.0, 8.0]
        assert [s.timestamp for s in signals] == slots[2:9]
        assert result.totals == {"signals": 7}
        cp = await repos.checkpoints.get("indicator", 1, "5")
        assert cp.last_processed_timestamp == slots[8]

    @pytest.mark.asyncio
    async def test_existing_signals_are_not_overwritten(self, repos, slots):
        await repos.indicators.upsert([IndicatorConfig(id=1, type="ema", period=3)])
        await repos.candles.upsert(make_candles(1, "5", slots[:9], range(1, 10)))
        stage = _stage(repos)
        await stage.run()

        # A corrected historical close must not rewrite stored signals
        await repos.candles.upsert(make_candles(1, "5", [slots[4]], [50]))
        await repos.candles.upsert(make_candles(1, "5", [slots[9]], [10]))
        result = await stage.run()

        signals = await repos.signals.since(1, 1, "5")
        assert [s.value for s in signals[:7]] == [2.0, 3.0, 4.0, 5.0, 6.0, 7.0, 8.0]
        assert len(signals) == 8
        assert result.totals == {"signals": 1}

    @pytest.mark.asyncio
    async def test_no_new_candles_is_skipped(self, repos, slots):
        await repos.indicators.upsert([IndicatorConfig(id=1, type="ema", period=3)])
        await repos.candles.upsert(make_candles(1, "5", slots[:5], range(1, 6)))
        stage = _stage(repos)
        await stage.run()

        result = await stage.run()
        assert result.skipped_pairs == 1
        assert result.processed_pairs == 0

    @pytest.mark.asyncio
    async def test_signal_retention(self, repos, slots):
        await repos.indicators.upsert([IndicatorConfig(id=1, type="ema", period=3)])
        await repos.candles.upsert(make_candles(1, "5", slots, range(1, 11)))

        await _stage(repos, make_config(signals=3)).run()

        signals = await repos.signals.since(1, 1, "5")
        assert [s.timestamp for s in signals] == slots[-3:]

    @pytest.mark.asyncio
    async def test_warmup_only_writes_nothing(self, repos, ema_indicators, slots):
        await repos.candles.upsert(make_candles(1, "5", slots[:5], range(1, 6)))

        result = await _stage(repos).run()

        assert result.ok
        assert result.totals == {"signals": 0}
        assert await repos.signals.since(1, 1, "5") == []
        # the candles were still consumed
        cp = await repos.checkpoints.get("indicator", 1, "5")
        assert cp.last_processed_timestamp == slots[4]

    @pytest.mark.asyncio
    async def test_no_indicators_is_404(self, repos, slots):
        await repos.candles.upsert(make_candles(1, "5", slots[:3], [1, 2, 3]))
        result = await _stage(repos).run()
        assert (result.ok, result.status) == (False, 404)

    @pytest.mark.asyncio
    async def test_no_candles_is_404(self, repos, ema_indicators):
        result = await _stage(repos).run()
        assert result.status == 404
