"""
robots.txt fetching, parsing and compliance checks.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Pattern, TYPE_CHECKING
from urllib.parse import urlsplit

from .models import Request

if TYPE_CHECKING:
    from .fetcher import Downloader

DEFAULT_CACHE_TTL = 24 * 3600
DEFAULT_FAILURE_TTL = 3600


@dataclass
class RobotsGroup:
    """Rules declared under one or more consecutive User-agent lines."""
    user_agents: List[str] = field(default_factory=list)
    allow: List[str] = field(default_factory=list)
    disallow: List[str] = field(default_factory=list)

    def applies_to(self, user_agent: str) -> bool:
        agent = user_agent.lower()
        for token in self.user_agents:
            token = token.lower()
            if token == '*' or (token and token in agent):
                return True
        return False


@dataclass
class RobotsRules:
    """Parsed robots.txt document."""
    groups: List[RobotsGroup] = field(default_factory=list)

    def is_allowed(self, path: str, user_agent: str) -> bool:
        groups = [g for g in self.groups if g.applies_to(user_agent)]
        if not groups:
            return True

        for group in groups:
            if any(_matches(path, pattern) for pattern in group.allow):
                return True

        for group in groups:
            if any(_matches(path, pattern) for pattern in group.disallow):
                return False

        return True


_pattern_cache: Dict[str, Pattern] = {}


def _matches(path: str, pattern: str) -> bool:
    """Match a path against a robots pattern (``*`` wildcard, ``$`` end anchor)."""
    if '*' not in pattern and not pattern.endswith('$'):
        return path.startswith(pattern)

    regex = _pattern_cache.get(pattern)
    if regex is None:
        anchored = pattern.endswith('$')
        body = pattern[:-1] if anchored else pattern
        expression = '.*'.join(re.escape(part) for part in body.split('*'))
        regex = re.compile(expression + ('$' if anchored else ''))
        _pattern_cache[pattern] = regex
    return regex.match(path) is not None


def parse_robots_txt(content: str) -> RobotsRules:
    """
    Parse a robots.txt document into groups.

    Consecutive User-agent lines share one group. Allow/Disallow lines before
    any User-agent line are ignored, as are empty values.
    """
    rules = RobotsRules()
    current: Optional[RobotsGroup] = None
    last_was_agent = False

    for raw_line in content.splitlines():
        line = raw_line.split('#', 1)[0].strip()
        if not line or ':' not in line:
            continue

        key, value = line.split(':', 1)
        key = key.strip().lower()
        value = value.strip()

        if key == 'user-agent':
            if current is None or not last_was_agent:
                current = RobotsGroup()
                rules.groups.append(current)
            current.user_agents.append(value)
            last_was_agent = True
            continue

        last_was_agent = False
        if current is None or not value:
            continue
        if key == 'allow':
            current.allow.append(value)
        elif key == 'disallow':
            current.disallow.append(value)

    return rules


@dataclass
class _CacheEntry:
    rules: RobotsRules
    expires_at: float


class RobotsChecker:
    """
    Answers allow/deny for URLs according to each host's robots.txt.

    Documents are fetched lazily through a Downloader and cached per robots
    URL. Fetch failures and non-200 responses mean "no restrictions".
    """

    def __init__(self, user_agent: str, downloader: Optional['Downloader'] = None,
                 cache_ttl: float = DEFAULT_CACHE_TTL, failure_ttl: float = DEFAULT_FAILURE_TTL):
        self.user_agent = user_agent
        self.cache_ttl = cache_ttl
        self.failure_ttl = failure_ttl
        self.logger = logging.getLogger(__name__)

        self._downloader = downloader
        self._owns_downloader = downloader is None
        self._cache: Dict[str, _CacheEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

        self.stats = {
            'robots_fetched': 0,
            'robots_fetch_failures': 0,
            'urls_allowed': 0,
            'urls_blocked': 0
        }

    def _get_downloader(self) -> 'Downloader':
        if self._downloader is None:
            from .fetcher import HttpDownloader
            self._downloader = HttpDownloader(user_agent=self.user_agent, timeout=10)
        return self._downloader

    @staticmethod
    def robots_url_for(url: str) -> str:
        parsed = urlsplit(url)
        return f"{parsed.scheme}://{parsed.netloc}/robots.txt"

    async def is_allowed(self, url: str, user_agent: Optional[str] = None) -> bool:
        """Check if URL can be fetched according to robots.txt."""
        agent = user_agent or self.user_agent
        try:
            parsed = urlsplit(url)
            if parsed.scheme not in ('http', 'https') or not parsed.netloc:
                return True

            rules = await self._get_rules(self.robots_url_for(url))
            path = parsed.path or '/'
            if parsed.query:
                path = f"{path}?{parsed.query}"

            allowed = rules.is_allowed(path, agent)
        except Exception as e:
            self.logger.warning(f"Error checking robots.txt for {url}: {e}")
            return True

        self.stats['urls_allowed' if allowed else 'urls_blocked'] += 1
        if not allowed:
            self.logger.debug(f"robots.txt blocks access to: {url}")
        return allowed

    async def _get_rules(self, robots_url: str) -> RobotsRules:
        entry = self._cache.get(robots_url)
        if entry and entry.expires_at > time.time():
            return entry.rules

        lock = self._locks.setdefault(robots_url, asyncio.Lock())
        async with lock:
            entry = self._cache.get(robots_url)
            if entry and entry.expires_at > time.time():
                return entry.rules

            rules, ttl = await self._fetch(robots_url)
            self._cache[robots_url] = _CacheEntry(rules=rules, expires_at=time.time() + ttl)
            return rules

    async def _fetch(self, robots_url: str):
        try:
            response = await self._get_downloader().download(
                Request.get(robots_url, headers={'User-Agent': self.user_agent}, dont_filter=True)
            )
        except Exception as e:
            self.stats['robots_fetch_failures'] += 1
            self.logger.warning(f"Could not fetch robots.txt from {robots_url}: {e}")
            return RobotsRules(), self.failure_ttl

        self.stats['robots_fetched'] += 1
        if response.status == 200:
            return parse_robots_txt(response.text), self.cache_ttl
        if response.status == 404:
            self.logger.debug(f"No robots.txt at {robots_url}, allowing all")
            return RobotsRules(), self.cache_ttl

        self.logger.warning(f"Unexpected status {response.status} for {robots_url}, allowing all")
        return RobotsRules(), self.failure_ttl

    def clear_cache(self):
        self._cache.clear()
        self._locks.clear()

    def get_stats(self) -> Dict[str, int]:
        return {**self.stats, 'cached_hosts': len(self._cache)}

    async def close(self):
        """Drop cached documents and close the downloader if we created it."""
        self.clear_cache()
        if self._owns_downloader and self._downloader is not None:
            await self._downloader.close()
            self._downloader = None
