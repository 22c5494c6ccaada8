"""
Entity DTOs.

Every entity the pipeline reads or writes has a frozen dataclass here with
``from_row`` (fail fast on missing fields) and ``to_row`` (store-ready
dict).  Timestamps are aware UTC datetimes in memory and ISO-8601
strings in the store.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .errors import DataValidationError


# ═══════════════════════════════════════════════════════════════════════════
# Timestamp helpers
# ═══════════════════════════════════════════════════════════════════════════


def parse_timestamp(value: Any) -> datetime:
    """Parse a store/provider timestamp into an aware UTC datetime.

    Accepts datetimes, ISO-8601 strings (``Z`` or offset; naive means UTC)
    and unix seconds.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str) and value:
        text = value.strip().replace(" ", "T", 1)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            raise DataValidationError(f"Unparseable timestamp: {value!r}")
    else:
        raise DataValidationError(f"Unparseable timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Canonical store representation: ``YYYY-MM-DDTHH:MM:SS+00:00``."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _require(row: Mapping[str, Any], key: str, entity: str) -> Any:
    value = row.get(key)
    if value is None:
        raise DataValidationError(f"{entity} row missing required field '{key}': {dict(row)}")
    return value


def _float(row: Mapping[str, Any], key: str, entity: str) -> float:
    raw = _require(row, key, entity)
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise DataValidationError(f"{entity}.{key} is not numeric: {raw!r}")


def _optional_ts(value: Any) -> Optional[datetime]:
    return parse_timestamp(value) if value not in (None, "") else None


# ═══════════════════════════════════════════════════════════════════════════
# Reference data (read-only to the pipeline)
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Instrument:
    id: int
    symbol: str
    security_id: Optional[str] = None
    exchange_segment: Optional[str] = None
    instrument_type: Optional[str] = None
    is_active: bool = True

    @property
    def has_routing(self) -> bool:
        """All provider routing fields are present."""
        return bool(self.security_id and self.exchange_segment and self.instrument_type)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Instrument":
        instrument_id = int(_require(row, "id", "Instrument"))
        return cls(
            id=instrument_id,
            symbol=str(row.get("symbol") or instrument_id),
            security_id=(str(row["security_id"]) if row.get("security_id") else None),
            exchange_segment=row.get("exchange_segment"),
            instrument_type=row.get("instrument_type") or row.get("instrument"),
            is_active=bool(row.get("is_active", True)),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "security_id": self.security_id,
            "exchange_segment": self.exchange_segment,
            "instrument_type": self.instrument_type,
            "is_active": self.is_active,
        }


@dataclass(frozen=True)
class IndicatorConfig:
    id: int
    type: str
    period: int
    is_active: bool = True

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "IndicatorConfig":
        indicator_id = int(_require(row, "id", "IndicatorConfig"))
        raw_period = row.get("period")
        if raw_period is None:
            params = row.get("params") or {}
            if isinstance(params, str):
                try:
                    params = json.loads(params)
                except ValueError:
                    raise DataValidationError(f"IndicatorConfig.params is not JSON: {params!r}")
            raw_period = params.get("period", 0)
        try:
            period = int(raw_period)
        except (TypeError, ValueError):
            period = 0
        return cls(
            id=indicator_id,
            type=str(_require(row, "type", "IndicatorConfig")).lower(),
            period=period,
            is_active=bool(row.get("is_active", True)),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "period": self.period,
            "is_active": self.is_active,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Series entities
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Bar:
    """Single price bar as returned by the market-data provider."""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class Candle:
    instrument_id: int
    timeframe: str
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_bar(cls, instrument_id: int, timeframe: str, bar: Bar) -> "Candle":
        return cls(
            instrument_id=instrument_id,
            timeframe=timeframe,
            timestamp=bar.timestamp,
            open=bar.open,
            high=bar.high,
            low=bar.low,
            close=bar.close,
            volume=bar.volume,
        )

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Candle":
        return cls(
            instrument_id=int(_require(row, "instrument_id", "Candle")),
            timeframe=str(_require(row, "timeframe", "Candle")),
            timestamp=parse_timestamp(_require(row, "timestamp", "Candle")),
            open=_float(row, "open", "Candle"),
            high=_float(row, "high", "Candle"),
            low=_float(row, "low", "Candle"),
            close=_float(row, "close", "Candle"),
            volume=float(row.get("volume") or 0.0),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "instrument_id": self.instrument_id,
            "timeframe": self.timeframe,
            "timestamp": to_iso(self.timestamp),
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


@dataclass(frozen=True)
class Signal:
    instrument_id: int
    indicator_id: int
    timeframe: str
    timestamp: datetime
    value: float

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Signal":
        return cls(
            instrument_id=int(_require(row, "instrument_id", "Signal")),
            indicator_id=int(_require(row, "indicator_id", "Signal")),
            timeframe=str(_require(row, "timeframe", "Signal")),
            timestamp=parse_timestamp(_require(row, "timestamp", "Signal")),
            value=_float(row, "value", "Signal"),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "instrument_id": self.instrument_id,
            "indicator_id": self.indicator_id,
            "timeframe": self.timeframe,
            "timestamp": to_iso(self.timestamp),
            "value": self.value,
        }


@dataclass(frozen=True)
class TrendRecord:
    instrument_id: int
    timeframe: str
    timestamp: datetime
    short_ema: float
    long_ema: float
    trend: str
    crossover: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "TrendRecord":
        return cls(
            instrument_id=int(_require(row, "instrument_id", "TrendRecord")),
            timeframe=str(_require(row, "timeframe", "TrendRecord")),
            timestamp=parse_timestamp(_require(row, "timestamp", "TrendRecord")),
            short_ema=_float(row, "short_ema", "TrendRecord"),
            long_ema=_float(row, "long_ema", "TrendRecord"),
            trend=str(_require(row, "trend", "TrendRecord")),
            crossover=row.get("crossover"),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "instrument_id": self.instrument_id,
            "timeframe": self.timeframe,
            "timestamp": to_iso(self.timestamp),
            "short_ema": self.short_ema,
            "long_ema": self.long_ema,
            "trend": self.trend,
            "crossover": self.crossover,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Checkpoints
# ═══════════════════════════════════════════════════════════════════════════


class CheckpointStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Checkpoint:
    stage: str
    instrument_id: int
    timeframe: str
    last_processed_timestamp: Optional[datetime]
    last_run_at: Optional[datetime]
    status: CheckpointStatus

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Checkpoint":
        raw_status = row.get("status") or CheckpointStatus.COMPLETED.value
        try:
            status = CheckpointStatus(raw_status)
        except ValueError:
            raise DataValidationError(f"Checkpoint.status invalid: {raw_status!r}")
        return cls(
            stage=str(_require(row, "stage", "Checkpoint")),
            instrument_id=int(_require(row, "instrument_id", "Checkpoint")),
            timeframe=str(_require(row, "timeframe", "Checkpoint")),
            last_processed_timestamp=_optional_ts(row.get("last_processed_timestamp")),
            last_run_at=_optional_ts(row.get("last_run_at")),
            status=status,
        )


# ═══════════════════════════════════════════════════════════════════════════
# Snapshot
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class TimeframeState:
    trend: Optional[str] = None
    crossover_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trend": self.trend,
            "crossover_at": to_iso(self.crossover_at) if self.crossover_at else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TimeframeState":
        return cls(
            trend=data.get("trend"),
            crossover_at=_optional_ts(data.get("crossover_at")),
        )


@dataclass(frozen=True)
class SnapshotRow:
    instrument_id: int
    symbol: str
    cmp: float
    cmp_timestamp: datetime
    prcnt_change: Optional[float]
    timeframes: Dict[str, TimeframeState] = field(default_factory=dict)
    last_updated: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SnapshotRow":
        raw_tfs = row.get("timeframes") or {}
        if isinstance(raw_tfs, str):
            raw_tfs = json.loads(raw_tfs)
        prcnt = row.get("prcnt_change")
        return cls(
            instrument_id=int(_require(row, "instrument_id", "SnapshotRow")),
            symbol=str(_require(row, "symbol", "SnapshotRow")),
            cmp=_float(row, "cmp", "SnapshotRow"),
            cmp_timestamp=parse_timestamp(_require(row, "cmp_timestamp", "SnapshotRow")),
            prcnt_change=float(prcnt) if prcnt is not None else None,
            timeframes={tf: TimeframeState.from_dict(v) for tf, v in raw_tfs.items()},
            last_updated=_optional_ts(row.get("last_updated")),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "instrument_id": self.instrument_id,
            "symbol": self.symbol,
            "cmp": self.cmp,
            "cmp_timestamp": to_iso(self.cmp_timestamp),
            "prcnt_change": self.prcnt_change,
            "timeframes": {tf: state.to_dict() for tf, state in self.timeframes.items()},
            "last_updated": to_iso(self.last_updated) if self.last_updated else None,
        }
