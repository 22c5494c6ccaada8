"""Pipeline stages: ingestion -> indicator -> trend -> aggregation."""
from .aggregation import AggregationStage
from .base import PairOutcome, PipelineStage, StageResult, run_in_batches
from .indicator import IndicatorStage
from .ingestion import IngestionStage
from .trend import TrendStage

__all__ = [
    'AggregationStage',
    'IndicatorStage',
    'IngestionStage',
    'PairOutcome',
    'PipelineStage',
    'StageResult',
    'TrendStage',
    'run_in_batches',
]
