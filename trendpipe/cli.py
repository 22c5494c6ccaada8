"""
trendpipe command line
======================

Subcommands:

* ``run``     one pipeline invocation, prints the JSON result
* ``serve``   HTTP API (see :mod:`trendpipe.dashboard.web`)
* ``seed``    load instruments/indicators from a YAML file into the store
* ``status``  print the last pipeline run state
"""

import argparse
import asyncio
import json
import os
import sys
from typing import List, Optional

from .core.config import PipelineConfig, load_pipeline_config, load_yaml
from .core.errors import ConfigError, PipelineError
from .core.logger import setup_logger
from .core.models import IndicatorConfig, Instrument
from .orchestrator import build_orchestrator
from .storage import IndicatorRepository, InstrumentRepository


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="trendpipe", description="Incremental EMA trend pipeline")
    p.add_argument("--config", default="config/config.yaml", help="Path to config.yaml")
    p.add_argument("--secrets", default=None, help="Path to secrets.yaml (TRENDPIPE_SECRETS overrides)")
    p.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        metavar="LEVEL",
        help="Set log level. Default from config.",
    )
    sub = p.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Run every stage once and print the result")
    serve = sub.add_parser("serve", help="Serve the HTTP API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    seed = sub.add_parser("seed", help="Load reference data from YAML")
    seed.add_argument("path", help="YAML file with 'instruments' and 'indicators' lists")
    sub.add_parser("status", help="Print the last pipeline run state")
    return p.parse_args(argv)


async def _run(config: PipelineConfig) -> int:
    orchestrator = await build_orchestrator(config)
    try:
        result = await orchestrator.run()
    finally:
        await orchestrator.close()
    print(json.dumps(result, indent=2, default=str))
    return 0 if result["success"] else 1


async def _serve(config: PipelineConfig, host: Optional[str], port: Optional[int]) -> int:
    from .dashboard.web import PipelineApiServer

    orchestrator = await build_orchestrator(config)
    server = PipelineApiServer(
        orchestrator,
        host=host or config.api.host,
        port=port or config.api.port,
    )
    try:
        await server.start()
        await asyncio.Event().wait()
    finally:
        await server.stop()
        await orchestrator.close()
    return 0


async def _seed(config: PipelineConfig, path: str) -> int:
    try:
        raw = load_yaml(path)
    except OSError as e:
        raise ConfigError(f"Cannot read seed file {path}: {e}")
    instruments = [Instrument.from_row(row) for row in raw.get("instruments") or []]
    indicators = [IndicatorConfig.from_row(row) for row in raw.get("indicators") or []]
    orchestrator = await build_orchestrator(config)
    try:
        store = orchestrator.store
        written = await InstrumentRepository(store).upsert(instruments)
        written += await IndicatorRepository(store).upsert(indicators)
    finally:
        await orchestrator.close()
    print(f"Seeded {len(instruments)} instruments and {len(indicators)} indicators ({written} rows written)")
    return 0


async def _status(config: PipelineConfig) -> int:
    orchestrator = await build_orchestrator(config)
    try:
        status = await orchestrator.status()
    finally:
        await orchestrator.close()
    print(json.dumps(status, indent=2))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    if args.log_level:
        os.environ["TRENDPIPE_LOG_LEVEL"] = args.log_level
    secrets = args.secrets or "config/secrets.yaml"
    try:
        config = load_pipeline_config(args.config, secrets)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    setup_logger("trendpipe", level=args.log_level or config.log_level)

    try:
        if args.command == "run":
            return asyncio.run(_run(config))
        if args.command == "serve":
            return asyncio.run(_serve(config, args.host, args.port))
        if args.command == "seed":
            return asyncio.run(_seed(config, args.path))
        return asyncio.run(_status(config))
    except PipelineError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\ntrendpipe stopped by user")
        return 130
