import asyncio

import pytest

from pipelines.policy import RateLimiter, RobotsPolicy, get_robots_txt_url
from pipelines.sitemaps import fetch_sitemap_urls, parse_robots_sitemaps, parse_sitemap
from tests.conftest import FakeFetcher

SITEMAP_INDEX = """<?xml version="1.0" encoding="UTF-8"?>
<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <sitemap><loc>https://example.com/sitemap-pages.xml</loc></sitemap>
</sitemapindex>
"""

PAGES_SITEMAP = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>https://example.com/a/</loc></url>
  <url><loc>https://example.com/b?utm_source=news</loc></url>
  <url><loc>https://example.com/a</loc></url>
  <url><loc>https://other.org/c</loc></url>
  <url><loc>https://example.com/files/guide.pdf</loc></url>
</urlset>
"""


def test_parse_robots_sitemaps():
    robots = "User-agent: *\nDisallow: /tmp\nSitemap: https://example.com/custom.xml\nsitemap:   \n"
    assert parse_robots_sitemaps(robots) == ["https://example.com/custom.xml"]


def test_parse_sitemap_splits_indexes_and_pages():
    children, pages = parse_sitemap(SITEMAP_INDEX)
    assert children == ["https://example.com/sitemap-pages.xml"]
    assert pages == []

    children, pages = parse_sitemap(PAGES_SITEMAP)
    assert children == []
    assert len(pages) == 5


@pytest.mark.asyncio
async def test_fetch_sitemap_urls_follows_index_and_filters():
    fetcher = FakeFetcher()
    fetcher.add("https://example.com/robots.txt", text="Sitemap: https://example.com/index.xml\n")
    fetcher.add("https://example.com/index.xml", text=SITEMAP_INDEX, content_type="application/xml")
    fetcher.add("https://example.com/sitemap-pages.xml", text=PAGES_SITEMAP, content_type="application/xml")

    urls = await fetch_sitemap_urls(fetcher, "https://example.com/", "example.com")

    assert urls == ["https://example.com/a", "https://example.com/b"]


@pytest.mark.asyncio
async def test_fetch_sitemap_urls_disabled_makes_no_requests():
    fetcher = FakeFetcher()
    assert await fetch_sitemap_urls(fetcher, "https://example.com/", "example.com", enabled=False) == []
    assert fetcher.requests == []


@pytest.mark.asyncio
async def test_fetch_sitemap_urls_survives_fetch_errors():
    fetcher = FakeFetcher()
    fetcher.responses["https://example.com/robots.txt"] = ConnectionError("boom")
    fetcher.add("https://example.com/sitemap.xml", text=PAGES_SITEMAP, content_type="application/xml")

    urls = await fetch_sitemap_urls(fetcher, "https://example.com/", "example.com")

    assert urls == ["https://example.com/a", "https://example.com/b"]


@pytest.mark.asyncio
async def test_fetch_sitemap_urls_reads_robots_from_policy():
    fetcher = FakeFetcher()
    fetcher.add("https://example.com/robots.txt", text="Sitemap: https://example.com/index.xml\n")
    fetcher.add("https://example.com/index.xml", text=SITEMAP_INDEX, content_type="application/xml")
    fetcher.add("https://example.com/sitemap-pages.xml", text=PAGES_SITEMAP, content_type="application/xml")
    policy = RobotsPolicy(fetcher, "TestBot/1.0")

    assert await policy.can_fetch("https://example.com/a")
    urls = await fetch_sitemap_urls(fetcher, "https://example.com/", "example.com", robots=policy)

    assert urls == ["https://example.com/a", "https://example.com/b"]
    assert fetcher.requests.count("https://example.com/robots.txt") == 1


def test_get_robots_txt_url():
    assert get_robots_txt_url("https://example.com/a/b?c=1") == "https://example.com/robots.txt"


@pytest.mark.asyncio
async def test_robots_policy_rules_and_cache():
    fetcher = FakeFetcher()
    fetcher.add("https://example.com/robots.txt",
                text="User-agent: *\nDisallow: /private\nCrawl-delay: 2\n")
    policy = RobotsPolicy(fetcher, "TestBot/1.0")

    assert await policy.can_fetch("https://example.com/public")
    assert not await policy.can_fetch("https://example.com/private/page")
    assert await policy.crawl_delay("https://example.com/") == 2.0
    assert fetcher.requests == ["https://example.com/robots.txt"]


@pytest.mark.asyncio
@pytest.mark.parametrize("status,allowed", [(404, True), (500, True), (401, False), (403, False)])
async def test_robots_policy_status_handling(status, allowed):
    fetcher = FakeFetcher()
    fetcher.add("https://example.com/robots.txt", status=status)
    policy = RobotsPolicy(fetcher, "TestBot/1.0")
    assert await policy.can_fetch("https://example.com/page") is allowed


@pytest.mark.asyncio
async def test_robots_policy_allows_when_unreachable():
    fetcher = FakeFetcher()
    fetcher.responses["https://example.com/robots.txt"] = ConnectionError("unreachable")
    policy = RobotsPolicy(fetcher, "TestBot/1.0")
    assert await policy.can_fetch("https://example.com/page")


@pytest.mark.asyncio
async def test_rate_limiter_disabled_never_sleeps(monkeypatch):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    limiter = RateLimiter(0)
    assert not limiter.enabled
    await limiter.wait("https://example.com/a")
    await limiter.wait("https://example.com/b")
    assert sleeps == []


@pytest.mark.asyncio
async def test_rate_limiter_spaces_requests_per_host(monkeypatch):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    limiter = RateLimiter(2)
    assert limiter.interval == 0.5

    await limiter.wait("https://example.com/a")
    await limiter.wait("https://example.com/b")
    await limiter.wait("https://other.org/a")

    assert len(sleeps) == 1
    assert 0 < sleeps[0] <= 0.5
