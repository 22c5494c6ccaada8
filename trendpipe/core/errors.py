"""
Pipeline error taxonomy.

``ProviderError`` and ``StoreError`` are isolated per (instrument,
timeframe) pair.  ``ConfigError`` fails a whole stage, which the
orchestrator records before moving on to the next one.
"""


class PipelineError(Exception):
    """Base class for all pipeline errors."""
    pass


class ProviderError(PipelineError):
    """Upstream market-data fetch failed or returned a malformed payload."""
    pass


class StoreError(PipelineError):
    """A query, upsert, update or delete against the series store failed."""
    pass


class DataValidationError(StoreError):
    """A stored row is missing a required field or holds a bad value."""
    pass


class ConfigError(PipelineError):
    """Configuration is invalid or the stage has nothing it can run on."""
    pass
