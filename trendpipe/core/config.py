"""
trendpipe Configuration Loader
==============================

Loads YAML configuration files and resolves them into frozen dataclasses
that are injected into every stage, repository and client.  Nothing in
the pipeline reads the environment after this point.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from .errors import ConfigError

logger = logging.getLogger("trendpipe.config")

_STORE_BACKENDS = ("sqlite", "rest")


# ═══════════════════════════════════════════════════════════════════════════
# Config dataclasses
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class StoreConfig:
    backend: str = "sqlite"  # "sqlite" or "rest"
    db_path: str = "data/trendpipe.db"
    url: Optional[str] = None
    api_key: Optional[str] = None
    timeout_seconds: float = 30.0
    chunk_size: int = 100


@dataclass(frozen=True)
class ProviderConfig:
    base_url: str = "https://api.dhan.co/v2"
    client_id: Optional[str] = None
    access_token: Optional[str] = None
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class SessionConfig:
    """Trading session window, in the exchange's local time zone."""
    timezone: str = "Asia/Kolkata"
    open_time: time = time(9, 15)
    close_time: time = time(15, 30)
    holidays: Tuple[date, ...] = ()
    weekend_days: Tuple[int, ...] = (5, 6)  # Saturday, Sunday


@dataclass(frozen=True)
class RetentionConfig:
    candles: int = 210
    signals: int = 50
    trends: int = 50


@dataclass(frozen=True)
class ConcurrencyConfig:
    ingestion_batch_size: int = 5
    ingestion_pacing_seconds: float = 1.1
    compute_batch_size: int = 10


@dataclass(frozen=True)
class TrendConfig:
    short_period: int = 9
    long_period: int = 30


@dataclass(frozen=True)
class ApiConfig:
    host: str = "127.0.0.1"
    port: int = 8787


@dataclass(frozen=True)
class PipelineConfig:
    timeframes: Tuple[str, ...] = ("5", "60")
    store: StoreConfig = field(default_factory=StoreConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)
    trend: TrendConfig = field(default_factory=TrendConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    log_level: str = "INFO"


# ═══════════════════════════════════════════════════════════════════════════
# File helpers
# ═══════════════════════════════════════════════════════════════════════════


def load_yaml(path: str) -> Dict[str, Any]:
    """Load a YAML file."""
    with open(path, 'r', encoding='utf-8') as f:
        return yaml.safe_load(f) or {}


def find_repo_root(start: Optional[Path] = None) -> Path:
    """Locate the repo root by walking upward for known anchors."""
    start_path = (start or Path.cwd()).resolve()
    for current in [start_path, *start_path.parents]:
        if (current / ".git").exists() or (current / "config" / "config.yaml").exists():
            return current
    return start_path


def _resolve_path(path: str) -> Path:
    candidate = Path(path)
    if candidate.is_absolute():
        return candidate
    return find_repo_root() / candidate


def load_secrets(secrets_path: str = "config/secrets.yaml") -> Dict[str, Any]:
    """
    Load the secrets file.

    A missing file is not fatal: local runs against SQLite need no store
    key, and ingestion reports missing provider credentials itself.
    """
    override_path = os.getenv("TRENDPIPE_SECRETS")
    if override_path:
        secrets_path = override_path

    path = _resolve_path(secrets_path)
    if not path.exists():
        logger.warning(
            "Secrets file not found: %s (copy config/secrets.template.yaml "
            "to config/secrets.yaml and add your keys)", secrets_path)
        return {}
    return load_yaml(str(path))


# ═══════════════════════════════════════════════════════════════════════════
# Parsing
# ═══════════════════════════════════════════════════════════════════════════


def _positive_int(raw: Any, key: str) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer, got {raw!r}")
    if value <= 0:
        raise ConfigError(f"{key} must be > 0, got {value}")
    return value


def _non_negative_float(raw: Any, key: str) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be a number, got {raw!r}")
    if value < 0:
        raise ConfigError(f"{key} must be >= 0, got {value}")
    return value


def _parse_clock(raw: Any, key: str) -> time:
    if isinstance(raw, time):
        return raw
    try:
        return datetime.strptime(str(raw), "%H:%M").time()
    except ValueError:
        raise ConfigError(f"{key} must be HH:MM, got {raw!r}")


def _parse_holidays(raw: Any) -> Tuple[date, ...]:
    holidays = []
    for item in raw or []:
        if isinstance(item, date):
            holidays.append(item)
            continue
        try:
            holidays.append(datetime.strptime(str(item), "%Y-%m-%d").date())
        except ValueError:
            raise ConfigError(f"session.holidays entries must be YYYY-MM-DD, got {item!r}")
    return tuple(sorted(set(holidays)))


def _parse_timeframes(raw: Any) -> Tuple[str, ...]:
    if not raw:
        raise ConfigError("pipeline.timeframes must be a non-empty list")
    timeframes = []
    for tf in raw:
        minutes = _positive_int(tf, "pipeline.timeframes[]")
        timeframes.append(str(minutes))
    # finest first
    return tuple(sorted(set(timeframes), key=int))


def build_pipeline_config(
    raw: Dict[str, Any],
    secrets: Optional[Dict[str, Any]] = None,
) -> PipelineConfig:
    """Resolve raw YAML dicts into a validated :class:`PipelineConfig`."""
    secrets = secrets or {}
    pipeline_raw = raw.get("pipeline", {}) or {}

    # ── Store ──────────────────────────────────────────────────────────
    store_raw = raw.get("store", {}) or {}
    backend = store_raw.get("backend", "sqlite")
    if backend not in _STORE_BACKENDS:
        raise ConfigError(
            f"store.backend must be one of {_STORE_BACKENDS}, got '{backend}'"
        )
    store_url = store_raw.get("url")
    if backend == "rest" and not store_url:
        raise ConfigError("store.url is required when store.backend is 'rest'")
    db_path = store_raw.get("db_path", "data/trendpipe.db")
    if db_path != ":memory:":
        db_path = str(_resolve_path(db_path))
    store = StoreConfig(
        backend=backend,
        db_path=db_path,
        url=store_url,
        api_key=(secrets.get("store") or {}).get("api_key"),
        timeout_seconds=_non_negative_float(
            store_raw.get("timeout_seconds", 30.0), "store.timeout_seconds"),
        chunk_size=_positive_int(store_raw.get("chunk_size", 100), "store.chunk_size"),
    )

    # ── Provider ───────────────────────────────────────────────────────
    provider_raw = raw.get("provider", {}) or {}
    provider_secrets = secrets.get("dhan") or {}
    provider = ProviderConfig(
        base_url=provider_raw.get("base_url", ProviderConfig.base_url),
        client_id=provider_secrets.get("client_id"),
        access_token=provider_secrets.get("access_token"),
        timeout_seconds=_non_negative_float(
            provider_raw.get("timeout_seconds", 30.0), "provider.timeout_seconds"),
    )

    # ── Session ────────────────────────────────────────────────────────
    session_raw = raw.get("session", {}) or {}
    open_time = _parse_clock(session_raw.get("open", "09:15"), "session.open")
    close_time = _parse_clock(session_raw.get("close", "15:30"), "session.close")
    if close_time <= open_time:
        raise ConfigError("session.close must be after session.open")
    session = SessionConfig(
        timezone=session_raw.get("timezone", SessionConfig.timezone),
        open_time=open_time,
        close_time=close_time,
        holidays=_parse_holidays(session_raw.get("holidays")),
        weekend_days=tuple(int(d) for d in session_raw.get("weekend_days", (5, 6))),
    )

    # ── Retention ──────────────────────────────────────────────────────
    retention_raw = raw.get("retention", {}) or {}
    retention = RetentionConfig(
        candles=_positive_int(retention_raw.get("candles", 210), "retention.candles"),
        signals=_positive_int(retention_raw.get("signals", 50), "retention.signals"),
        trends=_positive_int(retention_raw.get("trends", 50), "retention.trends"),
    )

    # ── Concurrency ────────────────────────────────────────────────────
    conc_raw = raw.get("concurrency", {}) or {}
    concurrency = ConcurrencyConfig(
        ingestion_batch_size=_positive_int(
            conc_raw.get("ingestion_batch_size", 5), "concurrency.ingestion_batch_size"),
        ingestion_pacing_seconds=_non_negative_float(
            conc_raw.get("ingestion_pacing_seconds", 1.1),
            "concurrency.ingestion_pacing_seconds"),
        compute_batch_size=_positive_int(
            conc_raw.get("compute_batch_size", 10), "concurrency.compute_batch_size"),
    )

    # ── Trend ──────────────────────────────────────────────────────────
    trend_raw = raw.get("trend", {}) or {}
    trend = TrendConfig(
        short_period=_positive_int(trend_raw.get("short_period", 9), "trend.short_period"),
        long_period=_positive_int(trend_raw.get("long_period", 30), "trend.long_period"),
    )
    if trend.short_period >= trend.long_period:
        raise ConfigError("trend.short_period must be smaller than trend.long_period")

    # ── API / system ───────────────────────────────────────────────────
    api_raw = raw.get("api", {}) or {}
    api = ApiConfig(
        host=api_raw.get("host", ApiConfig.host),
        port=_positive_int(api_raw.get("port", ApiConfig.port), "api.port"),
    )
    system_raw = raw.get("system", {}) or {}

    return PipelineConfig(
        timeframes=_parse_timeframes(pipeline_raw.get("timeframes", ["5", "60"])),
        store=store,
        provider=provider,
        session=session,
        retention=retention,
        concurrency=concurrency,
        trend=trend,
        api=api,
        log_level=str(system_raw.get("log_level", "INFO")).upper(),
    )


def load_pipeline_config(
    config_path: str = "config/config.yaml",
    secrets_path: str = "config/secrets.yaml",
) -> PipelineConfig:
    """
    Load and validate the main configuration file plus secrets.

    Args:
        config_path: Path to config.yaml
        secrets_path: Path to secrets.yaml (``TRENDPIPE_SECRETS`` overrides)

    Returns:
        Resolved PipelineConfig
    """
    path = _resolve_path(config_path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    return build_pipeline_config(load_yaml(str(path)), load_secrets(secrets_path))
