"""
Crawl engine core components.

Only the leaf modules are re-exported here; import the engine, downloaders
and middleware from their own modules.
"""

from .models import Request, Response, Item, GenericItem, AttemptContext
from .exceptions import (
    CrawlEngineError, ConfigurationError, EngineStateError, DownloadError,
    RetryExhaustedError, PipelineError, RetryRequest
)

__all__ = [
    'Request', 'Response', 'Item', 'GenericItem', 'AttemptContext',
    'CrawlEngineError', 'ConfigurationError', 'EngineStateError', 'DownloadError',
    'RetryExhaustedError', 'PipelineError', 'RetryRequest'
]
