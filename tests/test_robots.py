"""robots.txt parsing and RobotsChecker tests."""

import pytest

from conftest import StubDownloader, download_error
from crawlengine.crawler.models import Response
from crawlengine.crawler.robots import RobotsChecker, parse_robots_txt

ROBOTS = b"""
# sample robots
User-agent: BadBot
Disallow: /

User-agent: *
Disallow: /private
Allow: /private/public
Disallow: /*.pdf$
Disallow: /search?q=
"""

# ==================== Parsing ====================


def test_parse_groups():
    rules = parse_robots_txt(ROBOTS.decode())

    assert len(rules.groups) == 2
    assert rules.groups[0].user_agents == ["BadBot"]
    assert rules.groups[1].disallow == ["/private", "/*.pdf$", "/search?q="]
    assert rules.groups[1].allow == ["/private/public"]


def test_consecutive_user_agents_share_group():
    rules = parse_robots_txt("User-agent: a\nUser-agent: b\nDisallow: /x\n")

    assert len(rules.groups) == 1
    assert rules.groups[0].user_agents == ["a", "b"]


def test_rules_before_user_agent_are_ignored():
    rules = parse_robots_txt("Disallow: /\nUser-agent: *\nDisallow:\n")

    assert rules.is_allowed("/anything", "CrawlEngine")


def test_allow_overrides_disallow():
    rules = parse_robots_txt(ROBOTS.decode())

    assert not rules.is_allowed("/private/data", "CrawlEngine")
    assert rules.is_allowed("/private/public/page", "CrawlEngine")
    assert rules.is_allowed("/about", "CrawlEngine")


def test_wildcard_and_anchor():
    rules = parse_robots_txt(ROBOTS.decode())

    assert not rules.is_allowed("/docs/file.pdf", "CrawlEngine")
    assert rules.is_allowed("/docs/file.pdf?download=1", "CrawlEngine")
    assert not rules.is_allowed("/search?q=test", "CrawlEngine")


def test_user_agent_token_match():
    """Agent tokens match case-insensitively as substrings"""
    rules = parse_robots_txt(ROBOTS.decode())

    assert not rules.is_allowed("/about", "Mozilla/5.0 (compatible; badbot/1.0)")


# ==================== Checker ====================


def robots_route(status=200, body=ROBOTS):
    return lambda request: Response(request=request, status=status, body=body)


@pytest.mark.asyncio
async def test_checker_applies_fetched_rules():
    downloader = StubDownloader({"https://example.com/robots.txt": robots_route()})
    checker = RobotsChecker("CrawlEngine/0.1.0", downloader=downloader)

    assert await checker.is_allowed("https://example.com/about")
    assert not await checker.is_allowed("https://example.com/private/x")
    assert await checker.is_allowed("https://example.com/private/public")
    assert not await checker.is_allowed("https://example.com/search?q=cats")


@pytest.mark.asyncio
async def test_checker_caches_per_host():
    """robots.txt is fetched once per host"""
    downloader = StubDownloader({"https://example.com/robots.txt": robots_route()})
    checker = RobotsChecker("CrawlEngine/0.1.0", downloader=downloader)

    for path in ("/a", "/b", "/private/c"):
        await checker.is_allowed(f"https://example.com{path}")
    await checker.is_allowed("https://other.com/a")

    fetched = [r.url for r in downloader.calls]
    assert fetched == ["https://example.com/robots.txt", "https://other.com/robots.txt"]
    assert checker.get_stats()["cached_hosts"] == 2
    assert checker.get_stats()["urls_blocked"] == 1


@pytest.mark.asyncio
async def test_checker_404_allows_all():
    downloader = StubDownloader({"https://example.com/robots.txt": robots_route(status=404, body=b"")})
    checker = RobotsChecker("CrawlEngine/0.1.0", downloader=downloader)

    assert await checker.is_allowed("https://example.com/private/x")


@pytest.mark.asyncio
async def test_checker_fetch_failure_allows_all():
    downloader = StubDownloader({"https://example.com/robots.txt": download_error("https://example.com/robots.txt")})
    checker = RobotsChecker("CrawlEngine/0.1.0", downloader=downloader)

    assert await checker.is_allowed("https://example.com/private/x")
    assert checker.get_stats()["robots_fetch_failures"] == 1


@pytest.mark.asyncio
async def test_checker_server_error_allows_all():
    downloader = StubDownloader({"https://example.com/robots.txt": robots_route(status=503, body=b"")})
    checker = RobotsChecker("CrawlEngine/0.1.0", downloader=downloader)

    assert await checker.is_allowed("https://example.com/private/x")


@pytest.mark.asyncio
async def test_checker_per_call_user_agent():
    downloader = StubDownloader({"https://example.com/robots.txt": robots_route()})
    checker = RobotsChecker("CrawlEngine/0.1.0", downloader=downloader)

    assert await checker.is_allowed("https://example.com/about")
    assert not await checker.is_allowed("https://example.com/about", user_agent="BadBot")


@pytest.mark.asyncio
async def test_checker_ignores_non_http_urls():
    downloader = StubDownloader()
    checker = RobotsChecker("CrawlEngine/0.1.0", downloader=downloader)

    assert await checker.is_allowed("ftp://example.com/file")
    assert downloader.calls == []


@pytest.mark.asyncio
async def test_checker_sends_user_agent_and_keeps_port():
    downloader = StubDownloader()
    checker = RobotsChecker("CrawlEngine/0.1.0", downloader=downloader)

    await checker.is_allowed("http://example.com:8080/page")

    request = downloader.calls[0]
    assert request.url == "http://example.com:8080/robots.txt"
    assert request.headers["User-Agent"] == "CrawlEngine/0.1.0"


@pytest.mark.asyncio
async def test_checker_close_keeps_injected_downloader():
    downloader = StubDownloader()
    checker = RobotsChecker("CrawlEngine/0.1.0", downloader=downloader)
    await checker.is_allowed("https://example.com/")

    await checker.close()

    assert not downloader.closed
    assert checker.get_stats()["cached_hosts"] == 0


def test_robots_url_for():
    assert RobotsChecker.robots_url_for("https://example.com/a/b?c=1") == "https://example.com/robots.txt"
