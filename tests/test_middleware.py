"""Middleware chain and built-in middleware tests."""

import pytest

from conftest import download_error, make_response
from crawlengine.crawler.exceptions import RateLimitError, RetryRequest
from crawlengine.crawler.middleware import (
    DEFAULT_USER_AGENTS,
    DownloadMiddleware,
    MiddlewareManager,
    RandomProxyMiddleware,
    RandomUserAgentMiddleware,
    RetryMiddleware,
    SpiderMiddleware,
    UserAgentMiddleware,
)
from crawlengine.crawler.models import Request, Response

# ==================== Helpers ====================


class TagMiddleware(DownloadMiddleware):
    """Appends its tag to a header so ordering is observable."""

    def __init__(self, tag, priority):
        self.tag = tag
        self.priority = priority
        self.closed = False

    async def process_request(self, request):
        order = request.headers.get("X-Order", "")
        return request.replace(headers={**request.headers, "X-Order": order + self.tag})

    async def close(self):
        self.closed = True


class FailingMiddleware(DownloadMiddleware):
    def __init__(self, recover=False):
        self.recover = recover
        self.seen = []

    async def process_request(self, request):
        raise ValueError("bad request")

    async def process_exception(self, exception, request):
        self.seen.append(exception)
        return request.retry(str(exception)) if self.recover else None


class DropEvenSpiderMiddleware(SpiderMiddleware):
    async def process_spider_output(self, response, results):
        return [r for i, r in enumerate(results) if i % 2 == 0]


# ==================== MiddlewareManager ====================


@pytest.mark.asyncio
async def test_request_chain_runs_by_ascending_priority():
    manager = MiddlewareManager([TagMiddleware("b", 50), TagMiddleware("a", 10), TagMiddleware("c", 90)])

    request = await manager.process_request(Request.get("https://example.com/"))

    assert request.headers["X-Order"] == "abc"


@pytest.mark.asyncio
async def test_failing_middleware_propagates_without_recovery():
    failing = FailingMiddleware()
    manager = MiddlewareManager([failing])

    with pytest.raises(ValueError):
        await manager.process_request(Request.get("https://example.com/"))

    assert len(failing.seen) == 1


@pytest.mark.asyncio
async def test_failing_middleware_recovery_becomes_retry():
    manager = MiddlewareManager([FailingMiddleware(recover=True)])

    with pytest.raises(RetryRequest) as exc_info:
        await manager.process_request(Request.get("https://example.com/"))

    assert exc_info.value.request.retry_count == 1
    assert exc_info.value.request.dont_filter


@pytest.mark.asyncio
async def test_process_exception_first_request_wins():
    manager = MiddlewareManager([DownloadMiddleware(), RetryMiddleware(max_retries=1, retry_delay=0)])
    request = Request.get("https://example.com/")

    retry = await manager.process_exception(download_error(), request)

    assert retry is not None
    assert retry.retry_count == 1
    assert await manager.process_exception(download_error(), retry) is None


@pytest.mark.asyncio
async def test_spider_output_chain():
    manager = MiddlewareManager(spider_middlewares=[DropEvenSpiderMiddleware()])
    request = Request.get("https://example.com/")
    response = make_response(request)

    assert await manager.process_spider_input(response) is response
    assert await manager.process_spider_output(response, [1, 2, 3]) == [1, 3]


@pytest.mark.asyncio
async def test_close_closes_all():
    first, second = TagMiddleware("a", 1), TagMiddleware("b", 2)
    manager = MiddlewareManager([first, second])

    await manager.close()

    assert first.closed and second.closed


# ==================== Built-in middlewares ====================


@pytest.mark.asyncio
async def test_user_agent_middleware():
    middleware = UserAgentMiddleware("CrawlEngine/0.1.0")

    plain = await middleware.process_request(Request.get("https://example.com/"))
    custom = await middleware.process_request(Request.get("https://example.com/", headers={"user-agent": "Mine"}))

    assert plain.headers["User-Agent"] == "CrawlEngine/0.1.0"
    assert custom.headers == {"user-agent": "Mine"}


@pytest.mark.asyncio
async def test_retry_middleware_on_status():
    middleware = RetryMiddleware(max_retries=2, retry_delay=0)
    request = Request.get("https://example.com/")

    with pytest.raises(RetryRequest) as exc_info:
        await middleware.process_response(make_response(request, 503))

    retried = exc_info.value.request
    assert retried.retry_count == 1
    assert retried.attempt.last_failure == "HTTP 503"


@pytest.mark.asyncio
async def test_retry_middleware_honors_retry_after(monkeypatch):
    """A 429 with Retry-After waits the advertised time and chains a RateLimitError"""
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    monkeypatch.setattr("crawlengine.crawler.middleware.asyncio.sleep", fake_sleep)
    middleware = RetryMiddleware(max_retries=2, retry_delay=0)
    request = Request.get("https://example.com/")
    response = Response(request=request, status=429, headers={"Retry-After": "7"})

    with pytest.raises(RetryRequest) as exc_info:
        await middleware.process_response(response)

    assert sleeps == [7.0]
    assert exc_info.value.request.retry_count == 1
    cause = exc_info.value.__cause__
    assert isinstance(cause, RateLimitError)
    assert cause.retry_after == 7.0


@pytest.mark.asyncio
async def test_retry_middleware_429_without_retry_after_uses_backoff(monkeypatch):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    monkeypatch.setattr("crawlengine.crawler.middleware.asyncio.sleep", fake_sleep)
    middleware = RetryMiddleware(max_retries=2, retry_delay=0.5)
    request = Request.get("https://example.com/")

    with pytest.raises(RetryRequest) as exc_info:
        await middleware.process_response(Response(request=request, status=429, headers={"Retry-After": "soon"}))

    assert sleeps == [0.5]
    assert exc_info.value.__cause__ is None


@pytest.mark.asyncio
async def test_retry_middleware_gives_up_after_max():
    middleware = RetryMiddleware(max_retries=1, retry_delay=0)
    request = Request.get("https://example.com/").retry("HTTP 503")
    response = make_response(request, 503)

    assert await middleware.process_response(response) is response
    assert await middleware.process_response(make_response(Request.get("https://example.com/"), 404)).status == 404


@pytest.mark.asyncio
async def test_retry_middleware_through_manager():
    manager = MiddlewareManager([RetryMiddleware(max_retries=3, retry_delay=0)])
    request = Request.get("https://example.com/")

    with pytest.raises(RetryRequest):
        await manager.process_response(make_response(request, 500))


@pytest.mark.asyncio
async def test_random_user_agent_middleware():
    middleware = RandomUserAgentMiddleware()

    request = await middleware.process_request(Request.get("https://example.com/"))

    assert request.headers["User-Agent"] in DEFAULT_USER_AGENTS


@pytest.mark.asyncio
async def test_random_proxy_middleware():
    middleware = RandomProxyMiddleware(["http://proxy-a:8080", "http://proxy-b:8080"])

    request = await middleware.process_request(Request.get("https://example.com/", meta={"depth": 1}))

    assert request.meta["proxy"] in middleware.proxies
    assert request.meta["depth"] == 1
    assert middleware.priority < UserAgentMiddleware.priority
