"""
trendpipe Indicators Module
===========================

Pure, deterministic indicator maths used by the indicator and trend stages.

1. **EMA**: batch computation seeded with the simple average of the first
   ``period`` closes (the usual charting-tool convention).
2. **Trend / crossover**: an explicit fold over ascending (short, long)
   EMA pairs with a :class:`CrossoverState` accumulator.
3. **Percent change** against a prior close.

NO RANDOMNESS. NO WALL-CLOCK. Same input, bit-identical output.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, NamedTuple, Optional, Sequence, Tuple

# Decimal places used for stored EMA values
EMA_PRECISION = 6
PERCENT_PRECISION = 2

BULLISH = "Bullish"
BEARISH = "Bearish"


# ═══════════════════════════════════════════════════════════════════════════
# EMA (Exponential Moving Average)
# ═══════════════════════════════════════════════════════════════════════════


def ema_alpha(period: int) -> float:
    if period < 1:
        raise ValueError("period must be >= 1")
    return 2.0 / (period + 1)


def round_value(value: float, places: int = EMA_PRECISION) -> float:
    return round(value, places)


def ema_batch(prices: Sequence[float], period: int) -> List[Optional[float]]:
    """
    Compute EMA for an entire price series.

    Returns a list the same length as *prices*; the first ``period - 1``
    entries are None (warmup).  Values are unrounded.

    Seed = arithmetic mean of the first ``period`` prices, then
    ``ema = price * alpha + ema * (1 - alpha)`` with ``alpha = 2 / (period + 1)``.
    """
    alpha = ema_alpha(period)
    n = len(prices)
    result: List[Optional[float]] = [None] * n
    if n < period:
        return result

    ema = sum(prices[:period]) / period
    result[period - 1] = ema
    for i in range(period, n):
        ema = prices[i] * alpha + ema * (1 - alpha)
        result[i] = ema
    return result


# ═══════════════════════════════════════════════════════════════════════════
# Trend / Crossover
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class CrossoverState:
    """The (short, long) EMA pair seen at the previous timestamp."""
    prev_short: float
    prev_long: float


class TrendPoint(NamedTuple):
    timestamp: datetime
    short_ema: float
    long_ema: float
    trend: str
    crossover: Optional[str]


def classify_trend(short_ema: float, long_ema: float) -> str:
    return BULLISH if short_ema >= long_ema else BEARISH


def detect_crossover(
    state: Optional[CrossoverState],
    short_ema: float,
    long_ema: float,
) -> Optional[str]:
    """Crossover event between *state* and the current pair, or None.

    Without prior state there is nothing to cross from, so no event.
    """
    if state is None:
        return None
    if state.prev_short < state.prev_long and short_ema >= long_ema:
        return BULLISH
    if state.prev_short > state.prev_long and short_ema <= long_ema:
        return BEARISH
    return None


def fold_trend(
    pairs: Iterable[Tuple[datetime, float, float]],
    carry_in: Optional[CrossoverState] = None,
) -> Tuple[List[TrendPoint], Optional[CrossoverState]]:
    """Fold ascending ``(timestamp, short, long)`` pairs into trend points.

    Returns the points and the final accumulator, which is the carry-in
    for the next batch of the same series.
    """
    points: List[TrendPoint] = []
    state = carry_in
    for ts, short_ema, long_ema in pairs:
        points.append(TrendPoint(
            timestamp=ts,
            short_ema=short_ema,
            long_ema=long_ema,
            trend=classify_trend(short_ema, long_ema),
            crossover=detect_crossover(state, short_ema, long_ema),
        ))
        state = CrossoverState(prev_short=short_ema, prev_long=long_ema)
    return points, state


# ═══════════════════════════════════════════════════════════════════════════
# Percent change
# ═══════════════════════════════════════════════════════════════════════════


def percent_change(current: float, prior: Optional[float]) -> Optional[float]:
    """``(current - prior) / prior * 100`` rounded to 2 places; None if prior is missing or zero."""
    if prior is None or prior == 0:
        return None
    return round((current - prior) / prior * 100, PERCENT_PRECISION)
