"""
Tests for the HTTP API over a mocked orchestrator.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp import test_utils

from trendpipe.core.errors import ConfigError, StoreError
from trendpipe.core.models import SnapshotRow, TimeframeState
from trendpipe.dashboard.web import PipelineApiServer
from trendpipe.pipeline import StageResult

from factories import MONDAY, ist


def _orchestrator():
    orchestrator = MagicMock()
    orchestrator.is_running = False
    orchestrator.run = AsyncMock(return_value={"success": True, "error": None, "steps": [
        {"name": "ingestion", "ok": True, "status": 200, "detail": {}},
    ]})
    orchestrator.run_stage = AsyncMock(return_value=StageResult(stage="trend", processed_pairs=2))
    orchestrator.status = AsyncMock(return_value={
        "last_run_at": "2026-01-05T10:05:00+00:00", "status": "completed", "is_running": False,
    })
    orchestrator.snapshot_rows = AsyncMock(return_value=[
        SnapshotRow(
            instrument_id=1, symbol="RELIANCE", cmp=110.0,
            cmp_timestamp=ist(MONDAY, 15, 25), prcnt_change=10.0,
            timeframes={"5": TimeframeState("Bullish", ist(MONDAY, 11, 0))},
        ),
    ])
    return orchestrator


class _Api:
    """Async context manager yielding a test client for the API."""

    def __init__(self, orchestrator):
        self.server = PipelineApiServer(orchestrator)
        self.client = test_utils.TestClient(test_utils.TestServer(self.server.app))

    async def __aenter__(self):
        await self.client.start_server()
        return self.client

    async def __aexit__(self, *exc):
        await self.client.close()


class TestPipelineApi:

    @pytest.mark.asyncio
    async def test_run_success(self):
        orchestrator = _orchestrator()
        async with _Api(orchestrator) as client:
            resp = await client.post("/api/pipeline/run")
            body = await resp.json()
        assert resp.status == 200
        assert body["success"] is True
        orchestrator.run.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_failure_is_500(self):
        orchestrator = _orchestrator()
        orchestrator.run.return_value = {
            "success": False, "error": "trend failed: boom", "steps": [
                {"name": "trend", "ok": False, "status": 500, "detail": {}},
            ],
        }
        async with _Api(orchestrator) as client:
            resp = await client.post("/api/pipeline/run")
            body = await resp.json()
        assert resp.status == 500
        assert body["error"] == "trend failed: boom"

    @pytest.mark.asyncio
    async def test_run_while_running_is_409(self):
        orchestrator = _orchestrator()
        orchestrator.is_running = True
        orchestrator.run.return_value = {
            "success": False, "error": "Pipeline is already running", "steps": [],
        }
        async with _Api(orchestrator) as client:
            resp = await client.post("/api/pipeline/run")
        assert resp.status == 409

    @pytest.mark.asyncio
    async def test_single_stage(self):
        orchestrator = _orchestrator()
        async with _Api(orchestrator) as client:
            resp = await client.post("/api/stages/trend")
            body = await resp.json()
        assert resp.status == 200
        assert body["processed_pairs"] == 2
        orchestrator.run_stage.assert_awaited_once_with("trend")

    @pytest.mark.asyncio
    async def test_stage_status_is_propagated(self):
        orchestrator = _orchestrator()
        orchestrator.run_stage.return_value = StageResult(
            stage="indicator", ok=False, status=404, message="No active EMA indicators found",
        )
        async with _Api(orchestrator) as client:
            resp = await client.post("/api/stages/indicator")
            body = await resp.json()
        assert resp.status == 404
        assert body["message"] == "No active EMA indicators found"

    @pytest.mark.asyncio
    async def test_unknown_stage_is_404(self):
        orchestrator = _orchestrator()
        orchestrator.run_stage.side_effect = ConfigError("Unknown stage: backfill")
        async with _Api(orchestrator) as client:
            resp = await client.post("/api/stages/backfill")
            body = await resp.json()
        assert resp.status == 404
        assert "backfill" in body["error"]

    @pytest.mark.asyncio
    async def test_status(self):
        async with _Api(_orchestrator()) as client:
            resp = await client.get("/api/pipeline/status")
            body = await resp.json()
        assert resp.status == 200
        assert body == {
            "last_run_at": "2026-01-05T10:05:00+00:00", "status": "completed", "is_running": False,
        }

    @pytest.mark.asyncio
    async def test_status_store_error(self):
        orchestrator = _orchestrator()
        orchestrator.status.side_effect = StoreError("GET processing_state returned HTTP 503")
        async with _Api(orchestrator) as client:
            resp = await client.get("/api/pipeline/status")
        assert resp.status == 500

    @pytest.mark.asyncio
    async def test_snapshot(self):
        async with _Api(_orchestrator()) as client:
            resp = await client.get("/api/snapshot")
            body = await resp.json()
        assert resp.status == 200
        assert body["count"] == 1
        row = body["rows"][0]
        assert row["symbol"] == "RELIANCE"
        assert row["timeframes"]["5"] == {
            "trend": "Bullish", "crossover_at": "2026-01-05T05:30:00+00:00",
        }
