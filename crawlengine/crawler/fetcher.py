"""
Downloaders: an aiohttp transport plus retry and rate-limiting decorators.
"""

import asyncio
import aiohttp
import logging
import random
import re
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Dict, Optional
from aiohttp import ClientSession, ClientTimeout, ClientError

from .exceptions import DownloadError, RetryExhaustedError, UnsupportedMethodError
from .models import Request, Response, SUPPORTED_METHODS
from ..utils.config import EngineConfig, DEFAULT_USER_AGENT

_CHARSET_RE = re.compile(r'charset=([^;]+)', re.IGNORECASE)


def extract_charset(content_type: Optional[str]) -> Optional[str]:
    """Pull the declared charset out of a Content-Type header."""
    if not content_type:
        return None
    match = _CHARSET_RE.search(content_type)
    if not match:
        return None
    return match.group(1).strip().strip('"\'').lower() or None


class Downloader(ABC):
    """Performs HTTP exchanges for requests."""

    @abstractmethod
    async def download(self, request: Request) -> Response:
        """
        Download a single request.

        Raises:
            DownloadError: on timeout, transport failure or any other error
        """

    @abstractmethod
    async def close(self):
        """Release resources."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class HttpDownloader(Downloader):
    """
    Downloads requests with a shared aiohttp session.

    One call is one HTTP exchange. Non-2xx statuses are returned as
    responses, not raised.
    """

    def __init__(self, user_agent: str = DEFAULT_USER_AGENT, timeout: float = 30.0,
                 default_headers: Optional[Dict[str, str]] = None,
                 max_connections: int = 100, session: Optional[ClientSession] = None):
        self.user_agent = user_agent
        self.timeout = timeout
        self.default_headers = dict(default_headers or {})
        self.max_connections = max_connections
        self.logger = logging.getLogger(__name__)

        self.session: Optional[ClientSession] = session
        self._owns_session = session is None

        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'total_bytes_downloaded': 0
        }

    async def start(self):
        """Initialize the downloader session."""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=ClientTimeout(total=self.timeout),
                connector=aiohttp.TCPConnector(
                    limit=self.max_connections,
                    ttl_dns_cache=300,
                    use_dns_cache=True
                )
            )
            self._owns_session = True
            self.logger.info("HttpDownloader session started")

    async def __aenter__(self):
        await self.start()
        return self

    async def close(self):
        """Close the downloader session."""
        if self.session and self._owns_session:
            await self.session.close()
            self.logger.info("HttpDownloader session closed")
        self.session = None

    def _build_headers(self, request: Request) -> Dict[str, str]:
        headers = dict(self.default_headers)
        headers.update(request.headers)

        if not any(name.lower() == 'user-agent' for name in headers):
            headers['User-Agent'] = self.user_agent

        if request.cookies:
            headers['Cookie'] = '; '.join(f"{k}={v}" for k, v in request.cookies.items())

        return headers

    @staticmethod
    def _body_kwargs(request: Request) -> Dict:
        body = request.body
        if body is None or request.method in ('GET', 'HEAD', 'DELETE'):
            return {}
        if isinstance(body, (str, bytes)):
            return {'data': body}
        if isinstance(body, Mapping):
            return {'data': {str(k): str(v) for k, v in body.items()}}
        return {'json': body}

    async def download(self, request: Request) -> Response:
        """
        Download a single request.

        Args:
            request: The request to send

        Returns:
            Response with the raw body and declared encoding
        """
        if request.method not in SUPPORTED_METHODS:
            raise DownloadError(
                f"Download failed: {request.url}",
                url=request.url,
                cause=UnsupportedMethodError(request.method)
            )

        await self.start()
        self.stats['total_requests'] += 1

        try:
            async with self.session.request(
                request.method,
                request.url,
                headers=self._build_headers(request),
                proxy=request.meta.get('proxy'),
                timeout=ClientTimeout(total=self.timeout),
                **self._body_kwargs(request)
            ) as http_response:
                body = await http_response.read()
                headers = dict(http_response.headers)
                response = Response(
                    request=request,
                    status=http_response.status,
                    reason=http_response.reason or '',
                    headers=headers,
                    body=body,
                    encoding=extract_charset(http_response.headers.get('Content-Type')),
                    url=str(http_response.url),
                    meta=dict(request.meta)
                )

        except asyncio.TimeoutError as e:
            self.stats['failed_requests'] += 1
            raise DownloadError(f"Request timeout: {request.url}", url=request.url, cause=e) from e
        except ClientError as e:
            self.stats['failed_requests'] += 1
            raise DownloadError(f"HTTP client error: {e}", url=request.url, cause=e) from e
        except Exception as e:
            self.stats['failed_requests'] += 1
            raise DownloadError(f"Download failed: {request.url}", url=request.url, cause=e) from e

        self.stats['successful_requests'] += 1
        self.stats['total_bytes_downloaded'] += len(body)
        self.logger.debug(f"Downloaded {request.url}: {response.status} ({len(body)} bytes)")
        return response

    def get_stats(self) -> Dict[str, int]:
        return self.stats.copy()


class RetryDownloader(Downloader):
    """Retries failed downloads with exponentially growing delays."""

    def __init__(self, downloader: Downloader, max_retries: int = 3, retry_delay: float = 1.0):
        self.downloader = downloader
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.logger = logging.getLogger(__name__)

    async def download(self, request: Request) -> Response:
        attempt = 0
        while True:
            try:
                return await self.downloader.download(request)
            except Exception as e:
                if attempt >= self.max_retries:
                    raise RetryExhaustedError(
                        request.url, self.max_retries, attempt + 1, cause=e
                    ) from e
                delay = self.retry_delay * (2 ** attempt)
                attempt += 1
                self.logger.debug(
                    f"Download of {request.url} failed ({e}), retry {attempt}/{self.max_retries} in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

    async def close(self):
        await self.downloader.close()


class RateLimitedDownloader(Downloader):
    """
    Serializes downloads and keeps a minimum gap between them.

    The gap runs from the end of one download to the start of the next and
    applies to all hosts.
    """

    def __init__(self, downloader: Downloader, min_interval: float):
        if min_interval < 0:
            raise ValueError("min_interval must be non-negative")
        self.downloader = downloader
        self.min_interval = min_interval
        self._lock: Optional[asyncio.Lock] = None
        self._last_finished: Optional[float] = None

    def _next_interval(self) -> float:
        return self.min_interval

    async def download(self, request: Request) -> Response:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if self._last_finished is not None:
                wait = self._next_interval() - (time.monotonic() - self._last_finished)
                if wait > 0:
                    await asyncio.sleep(wait)
            try:
                return await self.downloader.download(request)
            finally:
                self._last_finished = time.monotonic()

    async def close(self):
        await self.downloader.close()


class RandomRateDownloader(RateLimitedDownloader):
    """Like RateLimitedDownloader, with the gap drawn uniformly from [min, max] per call."""

    def __init__(self, downloader: Downloader, min_delay: float, max_delay: float):
        if min_delay > max_delay:
            raise ValueError("min_delay must be less than or equal to max_delay")
        super().__init__(downloader, min_delay)
        self.min_delay = min_delay
        self.max_delay = max_delay

    def _next_interval(self) -> float:
        return random.uniform(self.min_delay, self.max_delay)


def create_downloader(config: EngineConfig) -> Downloader:
    """Compose the downloader stack described by an engine configuration."""
    downloader: Downloader = HttpDownloader(
        user_agent=config.user_agent,
        timeout=config.download_timeout,
        default_headers=config.default_headers,
        max_connections=max(config.max_concurrent_requests * 2, 10)
    )

    if config.download_retries > 0:
        downloader = RetryDownloader(
            downloader,
            max_retries=config.download_retries,
            retry_delay=config.download_retry_delay
        )

    if config.download_interval_max is not None:
        downloader = RandomRateDownloader(
            downloader, config.download_interval, config.download_interval_max
        )
    elif config.download_interval > 0:
        downloader = RateLimitedDownloader(downloader, config.download_interval)

    return downloader
