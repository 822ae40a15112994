"""
Download and spider middleware chains.
"""

import asyncio
import logging
import random
from typing import Iterable, List, Optional, Sequence

from .exceptions import RateLimitError, RetryRequest
from .models import Request, Response, SpiderOutput

DEFAULT_USER_AGENTS = [
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 Version/15.1 Safari/605.1.15',
    'Mozilla/5.0 (Linux; Android 10; SM-G975F) AppleWebKit/537.36 Chrome/120.0.0.0 Mobile Safari/537.36',
    'Mozilla/5.0 (Windows NT 6.1; WOW64; rv:40.0) Gecko/20100101 Firefox/40.1',
    'Mozilla/5.0 (iPhone; CPU iPhone OS 14_0 like Mac OS X) AppleWebKit/605.1.15 Version/14.0 Mobile/15A372 Safari/604.1',
    'Mozilla/5.0 (Linux; U; Android 4.2.2; en-us; GT-I9505 Build/JDQ39) AppleWebKit/534.30 Chrome/30.0.0.0 Mobile Safari/534.30',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:89.0) Gecko/20100101 Firefox/89.0',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_14_6) AppleWebKit/537.36 Chrome/76.0.3809.132 Safari/537.36',
    'Mozilla/5.0 (Linux; Android 9; SM-G960F) AppleWebKit/537.36 Chrome/74.0.3729.157 Mobile Safari/537.36',
    'Mozilla/5.0 (Windows NT 6.1; Win64; x64) AppleWebKit/537.36 Chrome/41.0.2228.0 Safari/537.36',
]

RETRY_HTTP_CODES = (500, 502, 503, 504, 408, 429)

# Longest Retry-After wait honored before re-issuing
MAX_RETRY_AFTER = 60.0


class Middleware:
    """Common base: a name, a priority (lower runs first) and a close hook."""
    priority: int = 100

    @property
    def name(self) -> str:
        return self.__class__.__name__

    async def close(self):
        pass


class DownloadMiddleware(Middleware):
    """Hooks around every download. Defaults pass everything through."""

    async def process_request(self, request: Request) -> Request:
        return request

    async def process_response(self, response: Response) -> Response:
        return response

    async def process_exception(self, exception: Exception, request: Request) -> Optional[Request]:
        """
        Offer a failure to this middleware.

        Returns:
            A request to schedule instead, or None to let the failure propagate
        """
        return None


class SpiderMiddleware(Middleware):
    """Hooks around the spider's response handler."""

    async def process_spider_input(self, response: Response) -> Response:
        return response

    async def process_spider_output(self, response: Response,
                                    results: List[SpiderOutput]) -> List[SpiderOutput]:
        return results


class MiddlewareManager:
    """Keeps both chains sorted by ascending priority and runs them."""

    def __init__(self, download_middlewares: Optional[Iterable[DownloadMiddleware]] = None,
                 spider_middlewares: Optional[Iterable[SpiderMiddleware]] = None):
        self.logger = logging.getLogger(__name__)
        self.download_middlewares: List[DownloadMiddleware] = []
        self.spider_middlewares: List[SpiderMiddleware] = []
        for middleware in download_middlewares or []:
            self.add_download_middleware(middleware)
        for middleware in spider_middlewares or []:
            self.add_spider_middleware(middleware)

    def add_download_middleware(self, middleware: DownloadMiddleware):
        self.download_middlewares.append(middleware)
        self.download_middlewares.sort(key=lambda m: m.priority)

    def add_spider_middleware(self, middleware: SpiderMiddleware):
        self.spider_middlewares.append(middleware)
        self.spider_middlewares.sort(key=lambda m: m.priority)

    async def _translate(self, middleware: DownloadMiddleware, error: Exception, request: Request):
        retry = await middleware.process_exception(error, request)
        if retry is not None:
            raise RetryRequest(retry, f"{middleware.name}: {error}") from error

    async def process_request(self, request: Request) -> Request:
        current = request
        for middleware in self.download_middlewares:
            try:
                current = await middleware.process_request(current)
            except RetryRequest:
                raise
            except Exception as e:
                await self._translate(middleware, e, current)
                raise
        return current

    async def process_response(self, response: Response) -> Response:
        current = response
        for middleware in self.download_middlewares:
            try:
                current = await middleware.process_response(current)
            except RetryRequest:
                raise
            except Exception as e:
                await self._translate(middleware, e, current.request)
                raise
        return current

    async def process_exception(self, exception: Exception, request: Request) -> Optional[Request]:
        """Offer a download failure to each middleware until one returns a request."""
        for middleware in self.download_middlewares:
            retry = await middleware.process_exception(exception, request)
            if retry is not None:
                self.logger.debug(f"{middleware.name} re-issued {request.url} after: {exception}")
                return retry
        return None

    async def process_spider_input(self, response: Response) -> Response:
        current = response
        for middleware in self.spider_middlewares:
            current = await middleware.process_spider_input(current)
        return current

    async def process_spider_output(self, response: Response,
                                    results: List[SpiderOutput]) -> List[SpiderOutput]:
        current = results
        for middleware in self.spider_middlewares:
            current = list(await middleware.process_spider_output(response, current))
        return current

    async def close(self):
        """Close all middlewares."""
        for middleware in [*self.download_middlewares, *self.spider_middlewares]:
            try:
                await middleware.close()
            except Exception as e:
                self.logger.error(f"Error closing middleware {middleware.name}: {e}")


class UserAgentMiddleware(DownloadMiddleware):
    """Sets a User-Agent header on requests that do not carry one."""
    priority = 10

    def __init__(self, user_agent: str):
        self.user_agent = user_agent

    async def process_request(self, request: Request) -> Request:
        if any(name.lower() == 'user-agent' for name in request.headers):
            return request
        return request.replace(headers={**request.headers, 'User-Agent': self.user_agent})


class RetryMiddleware(DownloadMiddleware):
    """Re-issues requests that failed or came back with a retryable status."""
    priority = 20

    def __init__(self, max_retries: int = 3, retry_http_codes: Optional[Sequence[int]] = None,
                 retry_delay: float = 1.0):
        self.max_retries = max_retries
        self.retry_http_codes = set(retry_http_codes if retry_http_codes is not None else RETRY_HTTP_CODES)
        self.retry_delay = retry_delay
        self.logger = logging.getLogger(__name__)

    async def _backoff(self, request: Request):
        delay = self.retry_delay * (2 ** request.attempt.count)
        if delay > 0:
            await asyncio.sleep(delay)

    @staticmethod
    def _retry_after(response: Response) -> Optional[float]:
        """Seconds from a numeric Retry-After header, if the response has one."""
        for key, value in response.headers.items():
            if key.lower() == 'retry-after':
                try:
                    return max(float(value), 0.0)
                except (TypeError, ValueError):
                    return None
        return None

    async def process_response(self, response: Response) -> Response:
        request = response.request
        if response.status not in self.retry_http_codes or request.attempt.count >= self.max_retries:
            return response

        reason = f"HTTP {response.status}"
        retry_after = self._retry_after(response) if response.status == 429 else None
        if retry_after is None:
            self.logger.debug(f"Retrying {request.url} ({reason}), attempt {request.attempt.count + 1}")
            await self._backoff(request)
            raise RetryRequest(request.retry(reason), reason)

        limited = RateLimitError(f"Rate limited by {request.url}, retry after {retry_after:.1f}s", retry_after)
        self.logger.warning(str(limited))
        if retry_after > 0:
            await asyncio.sleep(min(retry_after, MAX_RETRY_AFTER))
        raise RetryRequest(request.retry(reason), reason) from limited

    async def process_exception(self, exception: Exception, request: Request) -> Optional[Request]:
        if isinstance(exception, RetryRequest) or request.attempt.count >= self.max_retries:
            return None
        await self._backoff(request)
        return request.retry(str(exception))


class RandomUserAgentMiddleware(DownloadMiddleware):
    """Picks a random User-Agent for each request."""
    priority = 8

    def __init__(self, user_agents: Optional[Sequence[str]] = None):
        self.user_agents = list(user_agents) if user_agents else list(DEFAULT_USER_AGENTS)

    async def process_request(self, request: Request) -> Request:
        if not self.user_agents:
            return request
        return request.replace(headers={**request.headers, 'User-Agent': random.choice(self.user_agents)})


class RandomProxyMiddleware(DownloadMiddleware):
    """Routes each request through a random proxy via ``meta['proxy']``."""
    priority = 5

    def __init__(self, proxies: Sequence[str]):
        self.proxies = list(proxies)

    async def process_request(self, request: Request) -> Request:
        if not self.proxies:
            return request
        return request.replace(meta={**request.meta, 'proxy': random.choice(self.proxies)})
