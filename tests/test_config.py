"""
Tests for configuration loading and validation.
"""

from datetime import date, time

import pytest
import yaml

from trendpipe.core.config import (
    PipelineConfig,
    build_pipeline_config,
    load_pipeline_config,
    load_secrets,
)
from trendpipe.core.errors import ConfigError


class TestDefaults:

    def test_empty_config_uses_defaults(self):
        config = build_pipeline_config({})
        assert config.timeframes == ("5", "60")
        assert config.retention.candles == 210
        assert config.retention.signals == 50
        assert config.retention.trends == 50
        assert config.concurrency.ingestion_batch_size == 5
        assert config.concurrency.ingestion_pacing_seconds == 1.1
        assert config.concurrency.compute_batch_size == 10
        assert config.session.timezone == "Asia/Kolkata"
        assert config.session.open_time == time(9, 15)
        assert config.session.close_time == time(15, 30)
        assert config.trend.short_period == 9
        assert config.trend.long_period == 30
        assert config.store.backend == "sqlite"

    def test_dataclass_is_frozen(self):
        config = PipelineConfig()
        with pytest.raises(Exception):
            config.log_level = "DEBUG"


class TestParsing:

    def test_timeframes_sorted_finest_first(self):
        config = build_pipeline_config({"pipeline": {"timeframes": ["60", "5", 15]}})
        assert config.timeframes == ("5", "15", "60")

    def test_holidays_accept_strings_and_dates(self):
        config = build_pipeline_config({
            "session": {"holidays": ["2026-01-26", date(2026, 3, 3)]},
        })
        assert config.session.holidays == (date(2026, 1, 26), date(2026, 3, 3))

    def test_secrets_are_mapped(self):
        secrets = {
            "dhan": {"client_id": "100", "access_token": "tok"},
            "store": {"api_key": "svc"},
        }
        config = build_pipeline_config(
            {"store": {"backend": "rest", "url": "https://example.supabase.co"}}, secrets,
        )
        assert config.provider.client_id == "100"
        assert config.provider.access_token == "tok"
        assert config.store.api_key == "svc"
        assert config.store.url == "https://example.supabase.co"

    def test_memory_db_path_is_kept(self):
        config = build_pipeline_config({"store": {"db_path": ":memory:"}})
        assert config.store.db_path == ":memory:"

    def test_log_level_upper_cased(self):
        config = build_pipeline_config({"system": {"log_level": "debug"}})
        assert config.log_level == "DEBUG"


class TestValidation:

    def test_unknown_backend(self):
        with pytest.raises(ConfigError, match="store.backend"):
            build_pipeline_config({"store": {"backend": "mongo"}})

    def test_rest_backend_requires_url(self):
        with pytest.raises(ConfigError, match="store.url"):
            build_pipeline_config({"store": {"backend": "rest"}})

    def test_close_must_follow_open(self):
        with pytest.raises(ConfigError, match="session.close"):
            build_pipeline_config({"session": {"open": "15:30", "close": "09:15"}})

    def test_bad_clock_format(self):
        with pytest.raises(ConfigError, match="session.open"):
            build_pipeline_config({"session": {"open": "9am"}})

    def test_short_period_must_be_smaller(self):
        with pytest.raises(ConfigError, match="trend.short_period"):
            build_pipeline_config({"trend": {"short_period": 30, "long_period": 9}})

    def test_non_positive_retention(self):
        with pytest.raises(ConfigError, match="retention.candles"):
            build_pipeline_config({"retention": {"candles": 0}})

    def test_negative_pacing(self):
        with pytest.raises(ConfigError, match="ingestion_pacing_seconds"):
            build_pipeline_config({"concurrency": {"ingestion_pacing_seconds": -1}})

    def test_empty_timeframes(self):
        with pytest.raises(ConfigError, match="pipeline.timeframes"):
            build_pipeline_config({"pipeline": {"timeframes": []}})

    def test_bad_holiday(self):
        with pytest.raises(ConfigError, match="session.holidays"):
            build_pipeline_config({"session": {"holidays": ["26/01/2026"]}})


class TestFiles:

    def test_load_from_files(self, tmp_path, monkeypatch):
        monkeypatch.delenv("TRENDPIPE_SECRETS", raising=False)
        config_path = tmp_path / "config.yaml"
        secrets_path = tmp_path / "secrets.yaml"
        config_path.write_text(yaml.safe_dump({
            "pipeline": {"timeframes": ["5"]},
            "store": {"db_path": ":memory:"},
            "retention": {"candles": 100},
        }))
        secrets_path.write_text(yaml.safe_dump({"dhan": {"client_id": "1", "access_token": "t"}}))

        config = load_pipeline_config(str(config_path), str(secrets_path))

        assert config.timeframes == ("5",)
        assert config.retention.candles == 100
        assert config.provider.access_token == "t"

    def test_missing_config_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_pipeline_config(str(tmp_path / "nope.yaml"))

    def test_missing_secrets_is_not_fatal(self, tmp_path, monkeypatch):
        monkeypatch.delenv("TRENDPIPE_SECRETS", raising=False)
        assert load_secrets(str(tmp_path / "secrets.yaml")) == {}

    def test_secrets_env_override(self, tmp_path, monkeypatch):
        override = tmp_path / "other.yaml"
        override.write_text(yaml.safe_dump({"store": {"api_key": "from-env"}}))
        monkeypatch.setenv("TRENDPIPE_SECRETS", str(override))
        assert load_secrets("config/secrets.yaml") == {"store": {"api_key": "from-env"}}
