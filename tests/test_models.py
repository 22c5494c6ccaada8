"""
Tests for entity DTOs and timestamp handling.
"""

from datetime import datetime, timedelta, timezone

import pytest

from trendpipe.core.errors import DataValidationError
from trendpipe.core.models import (
    Candle,
    Checkpoint,
    CheckpointStatus,
    IndicatorConfig,
    Instrument,
    SnapshotRow,
    TimeframeState,
    parse_timestamp,
    to_iso,
)

UTC_TS = datetime(2026, 1, 5, 3, 45, tzinfo=timezone.utc)


class TestTimestamps:

    @pytest.mark.parametrize("raw", [
        "2026-01-05T03:45:00+00:00",
        "2026-01-05T03:45:00Z",
        "2026-01-05 03:45:00",
        "2026-01-05T09:15:00+05:30",
        1767584700,
    ])
    def test_parse_normalises_to_utc(self, raw):
        assert parse_timestamp(raw) == UTC_TS
        assert parse_timestamp(raw).tzinfo == timezone.utc

    def test_naive_datetime_is_utc(self):
        assert parse_timestamp(datetime(2026, 1, 5, 3, 45)) == UTC_TS

    @pytest.mark.parametrize("raw", ["", "yesterday", None, True])
    def test_unparseable(self, raw):
        with pytest.raises(DataValidationError):
            parse_timestamp(raw)

    def test_to_iso_is_canonical(self):
        ist = timezone(timedelta(hours=5, minutes=30))
        assert to_iso(UTC_TS.astimezone(ist)) == "2026-01-05T03:45:00+00:00"


class TestReferenceRows:

    def test_instrument_routing(self):
        routed = Instrument.from_row({
            "id": 7, "symbol": "TCS", "security_id": 11536,
            "exchange_segment": "NSE_EQ", "instrument": "EQUITY",
        })
        assert routed.security_id == "11536"
        assert routed.instrument_type == "EQUITY"
        assert routed.has_routing

        bare = Instrument.from_row({"id": 8, "symbol": "X"})
        assert not bare.has_routing

    def test_instrument_requires_id(self):
        with pytest.raises(DataValidationError, match="id"):
            Instrument.from_row({"symbol": "TCS"})

    def test_indicator_period_from_params(self):
        config = IndicatorConfig.from_row({"id": 1, "type": "EMA", "params": '{"period": 9}'})
        assert config.type == "ema"
        assert config.period == 9

    def test_indicator_without_period(self):
        config = IndicatorConfig.from_row({"id": 2, "type": "ema", "params": {}})
        assert config.period == 0


class TestSeriesRows:

    def test_candle_row_round_trip(self):
        row = {
            "instrument_id": 1, "timeframe": "5", "timestamp": "2026-01-05T03:45:00+00:00",
            "open": "10", "high": 11, "low": 9, "close": 10.5, "volume": None,
        }
        candle = Candle.from_row(row)
        assert candle.close == 10.5
        assert candle.volume == 0.0
        assert candle.to_row()["timestamp"] == "2026-01-05T03:45:00+00:00"

    def test_candle_missing_close(self):
        with pytest.raises(DataValidationError, match="close"):
            Candle.from_row({
                "instrument_id": 1, "timeframe": "5", "timestamp": UTC_TS,
                "open": 1, "high": 1, "low": 1,
            })

    def test_candle_non_numeric(self):
        with pytest.raises(DataValidationError, match="not numeric"):
            Candle.from_row({
                "instrument_id": 1, "timeframe": "5", "timestamp": UTC_TS,
                "open": 1, "high": 1, "low": 1, "close": "abc",
            })

    def test_checkpoint_status(self):
        cp = Checkpoint.from_row({
            "stage": "ingestion", "instrument_id": 1, "timeframe": "5",
            "last_processed_timestamp": None, "status": "processing",
        })
        assert cp.status == CheckpointStatus.PROCESSING
        assert cp.last_processed_timestamp is None

        with pytest.raises(DataValidationError):
            Checkpoint.from_row({
                "stage": "ingestion", "instrument_id": 1, "timeframe": "5", "status": "done",
            })


class TestSnapshotRow:

    def test_timeframes_document(self):
        row = SnapshotRow(
            instrument_id=1,
            symbol="RELIANCE",
            cmp=110.0,
            cmp_timestamp=UTC_TS,
            prcnt_change=10.0,
            timeframes={
                "5": TimeframeState("Bullish", UTC_TS),
                "60": TimeframeState(None, None),
            },
        )
        data = row.to_row()
        assert data["timeframes"] == {
            "5": {"trend": "Bullish", "crossover_at": "2026-01-05T03:45:00+00:00"},
            "60": {"trend": None, "crossover_at": None},
        }
        assert SnapshotRow.from_row(data) == row
