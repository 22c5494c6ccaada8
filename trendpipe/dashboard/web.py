"""
trendpipe HTTP API
==================

Small aiohttp server exposing the pipeline to external schedulers and
the read-only dashboard:

* ``POST /api/pipeline/run``     run all stages, returns ``{success, error, steps}``
* ``POST /api/stages/{name}``    run one stage, returns its summary
* ``GET  /api/pipeline/status``  ``{last_run_at, status, is_running}``
* ``GET  /api/snapshot``         snapshot rows, newest crossover first
"""

import logging
import time
from typing import Any, Dict

from aiohttp import web

from ..core.errors import ConfigError, StoreError
from ..orchestrator import PipelineOrchestrator

logger = logging.getLogger('trendpipe.dashboard')


class PipelineApiServer:
    """HTTP front-end over a :class:`PipelineOrchestrator`."""

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        host: str = '127.0.0.1',
        port: int = 8787,
    ):
        self.orchestrator = orchestrator
        self.host = host
        self.port = port
        self._app = web.Application()
        self._runner = None

        self._app.router.add_post('/api/pipeline/run', self._handle_run)
        self._app.router.add_post('/api/stages/{name}', self._handle_stage)
        self._app.router.add_get('/api/pipeline/status', self._handle_status)
        self._app.router.add_get('/api/snapshot', self._handle_snapshot)

    @property
    def app(self) -> web.Application:
        return self._app

    async def start(self):
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("API running at http://%s:%s", self.host, self.port)

    async def stop(self):
        if self._runner:
            await self._runner.cleanup()

    async def _handle_run(self, request):
        start = time.perf_counter()
        result = await self.orchestrator.run()
        status_code = 200 if result['success'] else 500
        if not result['steps'] and self.orchestrator.is_running:
            status_code = 409
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info("/api/pipeline/run %d in %.1fms", status_code, duration_ms)
        return web.json_response(result, status=status_code)

    async def _handle_stage(self, request):
        name = request.match_info['name']
        try:
            result = await self.orchestrator.run_stage(name)
        except ConfigError as e:
            return web.json_response({'error': str(e)}, status=404)
        logger.info("/api/stages/%s %d", name, result.status)
        return web.json_response(result.to_dict(), status=result.status)

    async def _handle_status(self, request):
        try:
            payload = await self.orchestrator.status()
        except StoreError as e:
            logger.error("/api/pipeline/status error: %s", e)
            return web.json_response({'error': str(e)}, status=500)
        return web.json_response(payload)

    async def _handle_snapshot(self, request):
        try:
            rows = await self.orchestrator.snapshot_rows()
        except StoreError as e:
            logger.error("/api/snapshot error: %s", e)
            return web.json_response({'error': str(e)}, status=500)
        payload: Dict[str, Any] = {
            'count': len(rows),
            'rows': [r.to_row() for r in rows],
        }
        return web.json_response(payload)
