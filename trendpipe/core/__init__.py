"""Core module - config, logging, errors, sessions, indicators, models."""
from .config import PipelineConfig, load_pipeline_config
from .errors import ConfigError, DataValidationError, PipelineError, ProviderError, StoreError
from .logger import get_logger, setup_logger

__all__ = [
    'PipelineConfig', 'load_pipeline_config',
    'ConfigError', 'DataValidationError', 'PipelineError', 'ProviderError', 'StoreError',
    'get_logger', 'setup_logger',
]
