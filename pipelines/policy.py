"""Crawl politeness: robots.txt compliance and per-host rate limiting."""

import asyncio
import logging
import time
import urllib.robotparser
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional
from urllib.parse import urljoin, urlparse

logger = logging.getLogger(__name__)


@dataclass
class RobotsCache:
    """Cache entry for robots.txt data."""
    robots_parser: urllib.robotparser.RobotFileParser
    fetched_at: datetime
    ttl_hours: int = 24
    robots_txt: Optional[str] = None

    def is_expired(self) -> bool:
        """Check if the cache entry has expired."""
        return datetime.now() - self.fetched_at > timedelta(hours=self.ttl_hours)


def get_origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def get_robots_txt_url(url: str) -> str:
    """Get the robots.txt URL for a given URL."""
    return urljoin(get_origin(url), '/robots.txt')


class RobotsPolicy:
    """Answers whether the crawler may fetch a URL according to robots.txt.

    robots.txt is fetched once per origin through the crawler's fetcher.
    The body is kept so sitemap discovery reads the same copy.
    A missing or unreadable file allows everything; 401/403 disallow the
    whole site, mirroring ``RobotFileParser.read``.
    """

    def __init__(self, fetcher, user_agent: str):
        self.fetcher = fetcher
        self.user_agent = user_agent
        self.robots_cache: Dict[str, RobotsCache] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def _load(self, url: str) -> urllib.robotparser.RobotFileParser:
        origin = get_origin(url)
        cache_entry = self.robots_cache.get(origin)
        if cache_entry and not cache_entry.is_expired():
            return cache_entry.robots_parser

        lock = self._locks.setdefault(origin, asyncio.Lock())
        async with lock:
            cache_entry = self.robots_cache.get(origin)
            if cache_entry and not cache_entry.is_expired():
                return cache_entry.robots_parser

            robots_url = get_robots_txt_url(url)
            rp = urllib.robotparser.RobotFileParser()
            rp.set_url(robots_url)
            body = None
            try:
                logger.info(f"Fetching robots.txt from {robots_url}")
                response = await self.fetcher.fetch(robots_url)
                if response.status in (401, 403):
                    rp.disallow_all = True
                elif response.ok:
                    body = response.text
                    rp.parse(body.splitlines())
                else:
                    rp.allow_all = True
            except Exception as e:
                logger.warning(f"Could not read robots.txt {robots_url}: {e}")
                rp.allow_all = True

            self.robots_cache[origin] = RobotsCache(robots_parser=rp, fetched_at=datetime.now(),
                                                    robots_txt=body)
            return rp

    async def robots_txt(self, url: str) -> Optional[str]:
        """The cached robots.txt body for ``url``'s origin, None when it was not readable."""
        await self._load(url)
        return self.robots_cache[get_origin(url)].robots_txt

    async def can_fetch(self, url: str) -> bool:
        rp = await self._load(url)
        allowed = rp.can_fetch(self.user_agent, url)
        if not allowed:
            logger.info(f"robots.txt disallows {url}")
        return allowed

    async def crawl_delay(self, url: str) -> Optional[float]:
        rp = await self._load(url)
        delay = rp.crawl_delay(self.user_agent)
        return float(delay) if delay is not None else None


class RateLimiter:
    """Minimum interval between requests to the same host.

    An interval of 0 disables rate limiting.
    """

    def __init__(self, max_requests_per_second: float = 0.0):
        self.interval = 1.0 / max_requests_per_second if max_requests_per_second > 0 else 0.0
        self.last_request_time: Dict[str, float] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def enabled(self) -> bool:
        return self.interval > 0

    async def wait(self, url: str, min_interval: Optional[float] = None):
        """Sleep until a request to ``url``'s host is allowed."""
        interval = max(self.interval, min_interval or 0.0)
        if interval <= 0:
            return

        host = urlparse(url).netloc
        lock = self._locks.setdefault(host, asyncio.Lock())
        async with lock:
            last = self.last_request_time.get(host)
            if last is not None:
                elapsed = time.monotonic() - last
                if elapsed < interval:
                    sleep_time = interval - elapsed
                    logger.debug(f"Rate limiting {host}: sleeping {sleep_time:.2f}s")
                    await asyncio.sleep(sleep_time)
            self.last_request_time[host] = time.monotonic()
