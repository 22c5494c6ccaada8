"""
Session schedule helpers.

Deterministic session-window arithmetic for an exchange that trades one
continuous session per day (09:15-15:30 Asia/Kolkata by default).  All
helpers take explicit timestamps; nothing here reads the wall clock.

Session rules
-------------
* A *session day* is any local calendar day that is neither a weekend
  day nor in the configured holiday list.
* A bar is inside the session when its local time is between the open
  and the close, both inclusive, on a session day.
* Timestamps are converted with ``zoneinfo`` so the boundaries stay
  correct even for zones that observe DST.
"""

from __future__ import annotations

import math
from datetime import date, datetime, timedelta, timezone
from typing import List, Tuple
from zoneinfo import ZoneInfo

from .config import SessionConfig
from .errors import ConfigError

# Upper bound on how far back we walk looking for session days
_MAX_CALENDAR_WALK_DAYS = 3660


def timeframe_minutes(timeframe: str) -> int:
    """Candle granularity in minutes for a timeframe string ("5", "60")."""
    try:
        minutes = int(timeframe)
    except (TypeError, ValueError):
        raise ConfigError(f"Unsupported timeframe: {timeframe!r}")
    if minutes <= 0:
        raise ConfigError(f"Unsupported timeframe: {timeframe!r}")
    return minutes


class SessionCalendar:
    """Session calendar bound to a :class:`SessionConfig`."""

    def __init__(self, config: SessionConfig) -> None:
        self._config = config
        self._tz = ZoneInfo(config.timezone)
        self._holidays = frozenset(config.holidays)
        self._open_minute = config.open_time.hour * 60 + config.open_time.minute
        self._close_minute = config.close_time.hour * 60 + config.close_time.minute

    @property
    def tz(self) -> ZoneInfo:
        return self._tz

    @property
    def session_minutes(self) -> int:
        """Length of one session in minutes (375 for 09:15-15:30)."""
        return self._close_minute - self._open_minute

    # ─── Classification ───────────────────────────────────────────────────

    def to_local(self, ts: datetime) -> datetime:
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ts.astimezone(self._tz)

    def is_session_day(self, day: date) -> bool:
        return day.weekday() not in self._config.weekend_days and day not in self._holidays

    def is_within_session(self, ts: datetime) -> bool:
        """True when *ts* falls inside the session window on a session day."""
        local = self.to_local(ts)
        if not self.is_session_day(local.date()):
            return False
        minute = local.hour * 60 + local.minute
        if minute == self._close_minute:
            return local.second == 0 and local.microsecond == 0
        return self._open_minute <= minute < self._close_minute

    def session_open(self, day: date) -> datetime:
        """Session open on *day* as an aware UTC datetime."""
        local = datetime.combine(day, self._config.open_time, tzinfo=self._tz)
        return local.astimezone(timezone.utc)

    def session_close(self, day: date) -> datetime:
        local = datetime.combine(day, self._config.close_time, tzinfo=self._tz)
        return local.astimezone(timezone.utc)

    def session_day_start(self, ts: datetime) -> datetime:
        """Local midnight of the day containing *ts*, as aware UTC."""
        local_day = self.to_local(ts).date()
        midnight = datetime.combine(local_day, datetime.min.time(), tzinfo=self._tz)
        return midnight.astimezone(timezone.utc)

    # ─── Candle arithmetic ────────────────────────────────────────────────

    def candles_per_session(self, timeframe: str) -> int:
        """Bars one full session yields (75 for "5", 7 for "60")."""
        return math.ceil(self.session_minutes / timeframe_minutes(timeframe))

    def sessions_for_candles(self, candle_count: int, timeframe: str) -> int:
        """Number of full sessions needed to cover *candle_count* bars."""
        if candle_count <= 0:
            return 0
        return math.ceil(candle_count / self.candles_per_session(timeframe))

    def recent_session_days(self, end: date, count: int) -> List[date]:
        """The *count* most recent session days up to and including *end*, oldest first."""
        days: List[date] = []
        current = end
        walked = 0
        while len(days) < count:
            if walked > _MAX_CALENDAR_WALK_DAYS:
                raise ConfigError(
                    f"No {count} session days found in the last "
                    f"{_MAX_CALENDAR_WALK_DAYS} days; check session.holidays"
                )
            if self.is_session_day(current):
                days.append(current)
            current -= timedelta(days=1)
            walked += 1
        days.reverse()
        return days

    def seed_range(
        self,
        now: datetime,
        candle_count: int,
        timeframe: str,
    ) -> Tuple[datetime, datetime]:
        """Date range that covers a full retention window of *candle_count* bars.

        One extra session is requested because the current session may be
        only partly traded.
        """
        sessions = self.sessions_for_candles(candle_count, timeframe) + 1
        days = self.recent_session_days(self.to_local(now).date(), sessions)
        return self.session_open(days[0]), now.astimezone(timezone.utc)

    def candles_between(self, start: datetime, end: datetime, timeframe: str) -> int:
        """Implied number of bars between *start* and *end* (session time only)."""
        if end <= start:
            return 0
        start_local = self.to_local(start)
        end_local = self.to_local(end)
        total_minutes = 0.0
        day = start_local.date()
        while day <= end_local.date():
            if self.is_session_day(day):
                window_start = max(start, self.session_open(day))
                window_end = min(end, self.session_close(day))
                if window_end > window_start:
                    total_minutes += (window_end - window_start).total_seconds() / 60.0
            day += timedelta(days=1)
        return math.ceil(total_minutes / timeframe_minutes(timeframe))
