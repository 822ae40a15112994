"""
Exception hierarchy for the crawl engine.
"""

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Request


class CrawlEngineError(Exception):
    """Base class for all crawl engine errors."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message} (caused by {type(self.cause).__name__}: {self.cause})"
        return self.message


class ConfigurationError(CrawlEngineError):
    """Invalid or inconsistent configuration."""


class EngineStateError(CrawlEngineError):
    """An engine operation was called from a state that does not allow it."""


class DownloadError(CrawlEngineError):
    """A single HTTP exchange failed (timeout, transport error or anything else)."""

    def __init__(self, message: str, url: Optional[str] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message, cause)
        self.url = url


class UnsupportedMethodError(CrawlEngineError):
    """The downloader does not know how to issue the requested HTTP method."""

    def __init__(self, method: str):
        super().__init__(f"Unsupported HTTP method: {method}")
        self.method = method


class RetryExhaustedError(DownloadError):
    """All retry attempts for a download were used up."""

    def __init__(self, url: str, max_retries: int, attempts: int,
                 cause: Optional[BaseException] = None):
        super().__init__(
            f"Retries exhausted for {url} after {attempts} attempts (max retries {max_retries})",
            url=url,
            cause=cause
        )
        self.max_retries = max_retries
        self.attempts = attempts


class RateLimitError(CrawlEngineError):
    """Informational signal that a remote side asked us to slow down."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class PipelineError(CrawlEngineError):
    """An item pipeline failed while opening, processing or closing."""

    def __init__(self, message: str, pipeline_name: Optional[str] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message, cause)
        self.pipeline_name = pipeline_name


class ItemValidationError(PipelineError):
    """An item is missing required fields."""


class SpiderError(CrawlEngineError):
    """The spider failed while opening or closing."""


class RetryRequest(Exception):
    """
    Signal raised by the middleware chain to re-issue a request.

    Not an error: the engine catches it and schedules ``request`` again.
    """

    def __init__(self, request: 'Request', reason: str = ""):
        super().__init__(reason or f"Retry requested for {request.url}")
        self.request = request
        self.reason = reason
