"""
Spider base class: the user-supplied crawl definition.
"""

import logging
from typing import Any, AsyncIterator, Awaitable, Dict, Iterable, List, Optional, Union
from urllib.parse import urlsplit

from .models import Request, Response, SpiderOutput
from ..utils.config import DuplicateFilterConfig, RedisConfig

HandlerResult = Union[
    None,
    Iterable[SpiderOutput],
    Awaitable[Optional[Iterable[SpiderOutput]]],
    AsyncIterator[SpiderOutput]
]


class Spider:
    """
    Base class for crawl definitions.

    Subclasses set ``name`` and ``start_urls`` and implement
    ``handle_response``. Settings left as None fall back to the engine
    configuration.
    """
    name: str = 'spider'
    start_urls: List[str] = []
    allowed_domains: List[str] = []

    concurrent_requests: Optional[int] = None
    download_delay: Optional[float] = None
    obey_robots_txt: Optional[bool] = None
    enable_deduplication: Optional[bool] = None
    duplicate_filter: Optional[DuplicateFilterConfig] = None
    redis_config: Optional[RedisConfig] = None

    def __init__(self):
        self.logger = logging.getLogger(f"{__name__}.{self.name}")

    def start_requests(self) -> Iterable[Request]:
        for url in self.start_urls:
            yield Request.get(url)

    def is_url_allowed(self, url: str) -> bool:
        """Check the URL's host against ``allowed_domains`` (subdomains included)."""
        if not self.allowed_domains:
            return True
        try:
            host = (urlsplit(url).hostname or '').lower()
        except ValueError:
            return False
        if not host:
            return False
        for domain in self.allowed_domains:
            domain = domain.lower()
            if host == domain or host.endswith('.' + domain):
                return True
        return False

    async def open(self):
        """Called once before the first request is scheduled."""

    def handle_response(self, response: Response) -> HandlerResult:
        """
        Process a downloaded response.

        May return an iterable, a coroutine resolving to one, or be an async
        generator. Yield Items, mappings (wrapped as GenericItem) or Requests.
        """
        raise NotImplementedError(f"{self.__class__.__name__}.handle_response is not implemented")

    async def on_error(self, error: Exception, request: Request):
        """Called when a request fails for good."""

    async def close(self, reason: str = 'finished'):
        """Called once when the crawl ends."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"

    def get_settings(self) -> Dict[str, Any]:
        settings: Dict[str, Any] = {
            'name': self.name,
            'start_urls': list(self.start_urls),
            'allowed_domains': list(self.allowed_domains)
        }
        for key in ('concurrent_requests', 'download_delay', 'obey_robots_txt', 'enable_deduplication'):
            value = getattr(self, key)
            if value is not None:
                settings[key] = value
        return settings
