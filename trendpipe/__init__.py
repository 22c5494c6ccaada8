"""
trendpipe - Incremental EMA Trend Pipeline
==========================================

Scheduled, checkpoint-driven pipeline that ingests intraday candles,
derives EMA indicators, detects short/long EMA crossovers and publishes
a per-instrument latest-state snapshot.
"""

__version__ = "0.1.0"
__author__ = "trendpipe"

__all__ = ["PipelineOrchestrator", "build_orchestrator"]


def __getattr__(name: str):
    if name in __all__:
        from .orchestrator import PipelineOrchestrator, build_orchestrator
        return {
            "PipelineOrchestrator": PipelineOrchestrator,
            "build_orchestrator": build_orchestrator,
        }[name]
    raise AttributeError(f"module 'trendpipe' has no attribute {name}")
