"""Pytest configuration and shared fixtures."""
# ruff: noqa: E402

import sys
from pathlib import Path

# Add the project root to sys.path so `from crawlengine...` works without installing
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from typing import Callable, Dict, List, Optional, Union

import pytest

from crawlengine.crawler.exceptions import DownloadError
from crawlengine.crawler.fetcher import Downloader
from crawlengine.crawler.models import Request, Response
from crawlengine.crawler.spider import Spider
from crawlengine.utils.config import EngineConfig

# ==================== Stub downloader ====================

StubResult = Union[Response, Exception, Callable[[Request], Response]]


class StubDownloader(Downloader):
    """Downloader returning canned results per URL, recording every call."""

    def __init__(self, routes: Optional[Dict[str, Union[StubResult, List[StubResult]]]] = None,
                 default_status: int = 200):
        self.routes = dict(routes or {})
        self.default_status = default_status
        self.calls: List[Request] = []
        self.closed = False

    async def download(self, request: Request) -> Response:
        self.calls.append(request)
        route = self.routes.get(request.url)

        if isinstance(route, list):
            result = route.pop(0) if len(route) > 1 else route[0]
        else:
            result = route

        if result is None:
            return Response(request=request, status=self.default_status, body=b"<html></html>")
        if isinstance(result, Exception):
            raise result
        if isinstance(result, Response):
            return result
        return result(request)

    async def close(self):
        self.closed = True


def make_response(request: Request, status: int = 200, body: bytes = b"",
                  encoding: Optional[str] = None) -> Response:
    return Response(request=request, status=status, body=body, encoding=encoding)


def download_error(url: str = "http://example.com/") -> DownloadError:
    return DownloadError(f"Download failed: {url}", url=url, cause=ConnectionError("boom"))


# ==================== Test spiders ====================


class CallbackSpider(Spider):
    """Spider whose response handler is supplied by the test."""

    name = "test"

    def __init__(self, start_urls, handler=None, **settings):
        super().__init__()
        self.start_urls = list(start_urls)
        self._handler = handler
        for key, value in settings.items():
            setattr(self, key, value)
        self.responses: List[Response] = []
        self.errors: List[Exception] = []
        self.opened = False
        self.closed_reason: Optional[str] = None

    async def open(self):
        self.opened = True

    def handle_response(self, response):
        self.responses.append(response)
        if self._handler is None:
            return []
        return self._handler(response)

    async def on_error(self, error, request):
        self.errors.append(error)

    async def close(self, reason="finished"):
        self.closed_reason = reason


# ==================== Fixtures ====================


@pytest.fixture
def stub_downloader():
    """A downloader that answers 200 with an empty page for every URL."""
    return StubDownloader()


@pytest.fixture
def engine_config():
    """Engine configuration without robots, dedup or retry delays."""
    return EngineConfig(
        max_concurrent_requests=4,
        obey_robots_txt=False,
        enable_deduplication=False,
        retry_delay=0.0,
        max_retries=2
    )
