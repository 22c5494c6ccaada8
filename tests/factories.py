"""
Test factories: session timestamps, bars, candles, configs and fake HTTP.
"""

from __future__ import annotations

import json
from dataclasses import replace
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence
from zoneinfo import ZoneInfo

from trendpipe.core.config import (
    ConcurrencyConfig,
    PipelineConfig,
    RetentionConfig,
    StoreConfig,
)
from trendpipe.core.models import Bar, Candle, Instrument

IST = ZoneInfo("Asia/Kolkata")

# 2026-01-05 is a Monday
MONDAY = date(2026, 1, 5)
FRIDAY = date(2026, 1, 2)
SATURDAY = date(2026, 1, 3)


def ist(day: date, hour: int, minute: int = 0) -> datetime:
    """Exchange-local wall-clock time as aware UTC."""
    return datetime.combine(day, time(hour, minute), tzinfo=IST).astimezone(timezone.utc)


def session_slots(day: date, step_minutes: int = 5) -> List[datetime]:
    """Bar open times of one full 09:15-15:30 session."""
    slots = []
    current = ist(day, 9, 15)
    close = ist(day, 15, 30)
    while current < close:
        slots.append(current)
        current += timedelta(minutes=step_minutes)
    return slots


def make_bar(ts: datetime, close: float, volume: float = 100.0) -> Bar:
    return Bar(timestamp=ts, open=close, high=close + 1, low=close - 1, close=close, volume=volume)


def make_candles(
    instrument_id: int,
    timeframe: str,
    timestamps: Sequence[datetime],
    closes: Sequence[float],
) -> List[Candle]:
    return [
        Candle.from_bar(instrument_id, timeframe, make_bar(ts, close))
        for ts, close in zip(timestamps, closes)
    ]


def make_instrument(instrument_id: int = 1, symbol: str = "RELIANCE", routed: bool = True) -> Instrument:
    return Instrument(
        id=instrument_id,
        symbol=symbol,
        security_id="2885" if routed else None,
        exchange_segment="NSE_EQ" if routed else None,
        instrument_type="EQUITY" if routed else None,
    )


def make_config(
    timeframes: Sequence[str] = ("5",),
    candles: int = 210,
    signals: int = 50,
    trends: int = 50,
) -> PipelineConfig:
    """Config with an in-memory store and no pacing delay."""
    return PipelineConfig(
        timeframes=tuple(timeframes),
        store=StoreConfig(db_path=":memory:"),
        retention=RetentionConfig(candles=candles, signals=signals, trends=trends),
        concurrency=replace(ConcurrencyConfig(), ingestion_pacing_seconds=0.0),
    )


class FixedClock:
    """Callable clock returning a settable instant."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class StubProvider:
    """In-memory market-data provider.

    Serves pre-loaded bars per (instrument, timeframe) within the requested
    range and records every call.  With ``ignore_range`` it returns every
    stored bar, like a provider that resends bars already delivered.
    """

    def __init__(self, bars: Optional[Dict[tuple, List[Bar]]] = None, ignore_range: bool = False):
        self.bars: Dict[tuple, List[Bar]] = bars or {}
        self.calls: List[tuple] = []
        self.fail_for: set = set()
        self.ignore_range = ignore_range

    def add(self, instrument_id: int, timeframe: str, bars: Iterable[Bar]) -> None:
        self.bars.setdefault((instrument_id, timeframe), []).extend(bars)

    async def fetch(self, instrument, timeframe, from_dt, to_dt) -> List[Bar]:
        from trendpipe.core.errors import ProviderError

        self.calls.append((instrument.id, timeframe, from_dt, to_dt))
        if instrument.id in self.fail_for:
            raise ProviderError(f"Dhan HTTP 500 for {instrument.symbol}/{timeframe}")
        bars = self.bars.get((instrument.id, timeframe), [])
        return sorted(
            (b for b in bars if self.ignore_range or from_dt <= b.timestamp <= to_dt),
            key=lambda b: b.timestamp,
        )

    async def close(self) -> None:
        pass


# ═══════════════════════════════════════════════════════════════════════════
# Fake aiohttp session
# ═══════════════════════════════════════════════════════════════════════════


class FakeResponse:
    def __init__(self, status: int = 200, payload: Any = None, text: Optional[str] = None):
        self.status = status
        self._text = text if text is not None else ("" if payload is None else json.dumps(payload))

    async def text(self) -> str:
        return self._text

    async def json(self, content_type: Optional[str] = "application/json") -> Any:
        return json.loads(self._text)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Records requests and replays queued responses in order."""

    def __init__(self, responses: Sequence[FakeResponse]):
        self._responses = list(responses)
        self.requests: List[Dict[str, Any]] = []
        self.closed = False

    def _next(self, **call) -> FakeResponse:
        self.requests.append(call)
        return self._responses.pop(0)

    def request(self, method, url, params=None, data=None, headers=None):
        return self._next(method=method, url=url, params=params, data=data, headers=headers)

    def post(self, url, json=None, headers=None):
        return self._next(method="POST", url=url, json=json, headers=headers)

    async def close(self):
        self.closed = True
