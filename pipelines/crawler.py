"""Web crawler pipeline.

Crawls a single host breadth-first with a bounded pool of asyncio workers,
honouring robots.txt, per-host rate limits, depth and page budgets. Pages are
handed to a callback which stores them and reports how many chunks it wrote.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

import aiohttp

from config.settings import CrawlConfig
from observability.prometheus_metrics import record_crawl_page
from .html_ingest import ParsedPage, parse_html_to_text
from .policy import RateLimiter, RobotsPolicy
from .sitemaps import fetch_sitemap_urls
from .urls import (
    extract_domain,
    is_same_host,
    normalize_domain_to_start_url,
    normalize_url_for_dedup,
    should_skip_crawl_url,
)

logger = logging.getLogger(__name__)

PageCallback = Callable[[ParsedPage], Awaitable[int]]
TotalsCallback = Callable[[int], Awaitable[None]]
ProgressCallback = Callable[[int, int, int], Awaitable[None]]

TOTALS_MIN_INTERVAL_SECONDS = 1.0
TOTALS_MIN_GROWTH = 5


class CrawlError(Exception):
    """Raised when a crawl cannot run at all (for example the start URL is unreachable)."""


@dataclass
class FetchResponse:
    """Result of fetching a single URL."""
    url: str
    status: int
    text: str = ""
    content_type: str = ""
    final_url: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def is_html(self) -> bool:
        content_type = self.content_type.lower()
        return not content_type or "html" in content_type


@dataclass
class CrawlStats:
    """Statistics for a crawl session."""
    domain: str = ""
    start_url: str = ""
    pages_visited: int = 0
    pages_stored: int = 0
    chunks_stored: int = 0
    pages_failed: int = 0
    pages_skipped: int = 0
    total_pages_estimated: int = 0
    discovered: int = 0
    pages: List[ParsedPage] = field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def __post_init__(self):
        if self.start_time is None:
            self.start_time = datetime.now(timezone.utc)

    @property
    def duration(self) -> Optional[timedelta]:
        if self.end_time and self.start_time:
            return self.end_time - self.start_time
        return None

    def finish(self):
        """Mark crawl as finished."""
        self.end_time = datetime.now(timezone.utc)


class HttpFetcher:
    """aiohttp based fetcher with retry and exponential backoff."""

    def __init__(self,
                 user_agent: str,
                 request_timeout: int = 30,
                 max_concurrent: int = 10,
                 max_retries: int = 2,
                 retry_delay: float = 1.0,
                 max_retry_delay: float = 30.0):
        """Initialize fetcher.

        Args:
            user_agent: User agent string sent with every request
            request_timeout: Request timeout in seconds
            max_concurrent: Maximum concurrent connections
            max_retries: Maximum number of retry attempts
            retry_delay: Base delay between retries (seconds)
            max_retry_delay: Maximum delay between retries (seconds)
        """
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_concurrent = max_concurrent
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self._get_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            connector = aiohttp.TCPConnector(limit=self.max_concurrent * 2)
            timeout = aiohttp.ClientTimeout(total=self.request_timeout)
            self.session = aiohttp.ClientSession(
                connector=connector,
                timeout=timeout,
                headers={'User-Agent': self.user_agent}
            )
        return self.session

    async def close(self):
        """Close the HTTP session."""
        if self.session:
            await self.session.close()
            self.session = None

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Calculate exponential backoff delay with jitter."""
        base_delay = self.retry_delay * (2 ** attempt)
        jitter = random.uniform(0.1, 0.3) * base_delay
        return min(base_delay + jitter, self.max_retry_delay)

    def _is_retryable_error(self, exception: Optional[Exception], status_code: Optional[int] = None) -> bool:
        """Determine if an error is retryable."""
        retryable_status_codes = {408, 429, 500, 502, 503, 504}

        if status_code and status_code in retryable_status_codes:
            return True

        if isinstance(exception, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
            return True

        if isinstance(exception, aiohttp.ClientError):
            # Retry on connection errors, but not on client errors like 404
            return isinstance(exception, (aiohttp.ClientConnectionError,
                                          aiohttp.ServerDisconnectedError))

        return False

    async def fetch(self, url: str) -> FetchResponse:
        """Fetch ``url``, retrying transient failures.

        Returns the last response for HTTP errors; raises the last exception
        when every attempt failed at the connection level.
        """
        session = await self._get_session()
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            try:
                logger.debug(f"Fetching {url} (attempt {attempt + 1}/{self.max_retries + 1})")
                async with session.get(url, allow_redirects=True) as response:
                    if self._is_retryable_error(None, response.status) and attempt < self.max_retries:
                        logger.warning(f"Retryable status {response.status} for {url}, "
                                       f"attempt {attempt + 1}/{self.max_retries + 1}")
                        await asyncio.sleep(self._calculate_retry_delay(attempt))
                        continue

                    content_type = response.headers.get('content-type', '')
                    text = await response.text(errors='replace')
                    return FetchResponse(
                        url=url,
                        status=response.status,
                        text=text,
                        content_type=content_type,
                        final_url=str(response.url),
                    )

            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                last_exception = e
                if attempt < self.max_retries and self._is_retryable_error(e):
                    delay = self._calculate_retry_delay(attempt)
                    logger.warning(f"Error fetching {url}: {e!r}, retrying in {delay:.2f}s")
                    await asyncio.sleep(delay)
                    continue
                raise

        if last_exception:
            raise last_exception
        raise CrawlError(f"No response for {url}")


class _TotalsReporter:
    """Throttled, monotonic reporting of the estimated page total."""

    def __init__(self, max_pages: int, callback: Optional[TotalsCallback]):
        self.max_pages = max_pages
        self.callback = callback
        self.last_reported = 0
        self.last_discovered = 0
        self.last_report_time = 0.0

    async def report(self, discovered: int, force: bool = False) -> int:
        total = min(self.max_pages, discovered)
        if total < self.last_reported:
            return self.last_reported

        now = time.monotonic()
        if not force:
            grew_enough = discovered - self.last_discovered >= TOTALS_MIN_GROWTH
            waited_enough = now - self.last_report_time >= TOTALS_MIN_INTERVAL_SECONDS
            if total == self.last_reported or not (grew_enough or waited_enough):
                return self.last_reported

        self.last_reported = total
        self.last_discovered = discovered
        self.last_report_time = now
        if self.callback:
            try:
                await self.callback(total)
            except Exception as e:
                logger.warning(f"Failed to report crawl totals: {e}")
        return total


class _CrawlRun:
    """State of a single ``WebCrawler.crawl`` call."""

    def __init__(self, crawler: 'WebCrawler', start_url: str, domain: str,
                 on_page: Optional[PageCallback], on_progress: Optional[ProgressCallback],
                 totals: _TotalsReporter, seed_pages: Dict[str, ParsedPage],
                 collect_pages: bool):
        self.crawler = crawler
        self.config = crawler.config
        self.start_url = start_url
        self.domain = domain
        self.on_page = on_page
        self.on_progress = on_progress
        self.totals = totals
        self.seed_pages = seed_pages
        self.collect_pages = collect_pages

        self.stats = CrawlStats(domain=domain, start_url=start_url)
        self.queue: asyncio.Queue = asyncio.Queue()
        self.discovered: Set[str] = set()
        self.requests_started = 0
        self.start_error: Optional[Exception] = None
        self.report_lock = asyncio.Lock()

    def enqueue(self, url: str, depth: int) -> bool:
        normalized = normalize_url_for_dedup(url)
        if not normalized or normalized in self.discovered:
            return False
        if not is_same_host(normalized, self.domain) or should_skip_crawl_url(normalized):
            return False
        self.discovered.add(normalized)
        self.queue.put_nowait((normalized, depth))
        return True

    async def worker(self):
        while True:
            url, depth = await self.queue.get()
            try:
                await self.process(url, depth)
            except Exception as e:
                self.stats.pages_failed += 1
                record_crawl_page('failed')
                logger.error(f"Unexpected error processing {url}: {e}")
            finally:
                self.queue.task_done()

    async def _load_page(self, url: str) -> Optional[ParsedPage]:
        seeded = self.seed_pages.get(url)
        if seeded is not None:
            return seeded

        await self.crawler.rate_limiter.wait(url, await self.crawler.robots_delay(url))
        try:
            response = await self.crawler.fetcher.fetch(url)
        except Exception as e:
            if url == self.start_url:
                self.start_error = e
            self.stats.pages_failed += 1
            record_crawl_page('failed')
            logger.warning(f"Failed to fetch {url}: {e!r}")
            return None

        if not response.ok:
            self.stats.pages_failed += 1
            record_crawl_page('failed')
            logger.info(f"Skipping {url}: HTTP {response.status}")
            return None

        final_url = response.final_url or url
        if not is_same_host(final_url, self.domain):
            self.stats.pages_skipped += 1
            record_crawl_page('skipped')
            logger.info(f"Skipping {url}: redirected off-site to {final_url}")
            return None

        if not response.is_html:
            self.stats.pages_visited += 1
            self.stats.pages_skipped += 1
            record_crawl_page('skipped')
            logger.debug(f"Skipping non-HTML content at {url}: {response.content_type}")
            return None

        return parse_html_to_text(response.text, final_url, self.domain,
                                  content_selector=self.config.content_wait_selector)

    async def process(self, url: str, depth: int):
        if depth > self.config.max_depth:
            return
        if self.requests_started >= self.crawler.fetch_limit:
            return
        self.requests_started += 1

        if self.config.respect_robots_txt and url not in self.seed_pages:
            if not await self.crawler.robots.can_fetch(url):
                self.stats.pages_skipped += 1
                record_crawl_page('blocked')
                return

        page = await self._load_page(url)
        if page is None:
            await self.report_progress()
            return

        self.stats.pages_visited += 1
        if self.collect_pages:
            self.stats.pages.append(page)

        if len(page.cleaned_text) < self.config.min_chars:
            logger.debug(f"Skipping short page {url} ({len(page.cleaned_text)} chars)")
            record_crawl_page('short')
        elif self.on_page is not None:
            try:
                chunks = await self.on_page(page)
            except Exception as e:
                self.stats.pages_failed += 1
                record_crawl_page('failed')
                logger.error(f"Failed to store {url}: {e}")
            else:
                if chunks > 0:
                    self.stats.pages_stored += 1
                    self.stats.chunks_stored += chunks
                    record_crawl_page('stored')
                else:
                    record_crawl_page('empty')
        else:
            record_crawl_page('visited')

        if depth < self.config.max_depth:
            for link in page.links:
                if len(self.discovered) >= self.crawler.max_pages:
                    break
                self.enqueue(link, depth + 1)

        async with self.report_lock:
            await self.totals.report(len(self.discovered))
        await self.report_progress()

    async def report_progress(self):
        if self.on_progress is None:
            return
        async with self.report_lock:
            try:
                await self.on_progress(self.stats.pages_visited, self.stats.pages_stored,
                                       self.stats.chunks_stored)
            except Exception as e:
                logger.warning(f"Failed to report crawl progress: {e}")


class WebCrawler:
    """Asynchronous single-host crawler.

    The fetcher is injectable; by default an :class:`HttpFetcher` built from
    the crawl configuration is used and closed with the crawler.
    """

    def __init__(self, config: CrawlConfig, fetcher=None, fetch_limit: Optional[int] = None):
        self.config = config
        self.max_pages = max(1, config.max_pages)
        # Estimates sample fewer pages than a full crawl would fetch
        self.fetch_limit = min(self.max_pages, fetch_limit) if fetch_limit else self.max_pages
        self._owns_fetcher = fetcher is None
        self.fetcher = fetcher or HttpFetcher(
            user_agent=config.user_agent,
            request_timeout=config.request_timeout,
            max_concurrent=config.concurrency,
        )
        self.robots = RobotsPolicy(self.fetcher, config.user_agent)
        self.rate_limiter = RateLimiter(config.max_requests_per_second)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self._owns_fetcher:
            await self.fetcher.close()

    async def robots_delay(self, url: str) -> Optional[float]:
        if not self.config.respect_robots_txt or not self.rate_limiter.enabled:
            return None
        return await self.robots.crawl_delay(url)

    async def crawl(self,
                    domain_input: str,
                    on_page: Optional[PageCallback] = None,
                    on_totals_known: Optional[TotalsCallback] = None,
                    on_progress: Optional[ProgressCallback] = None,
                    seed_pages: Optional[List[ParsedPage]] = None,
                    initial_total: Optional[int] = None,
                    collect_pages: bool = False) -> CrawlStats:
        """Crawl ``domain_input`` and return the crawl statistics.

        Args:
            domain_input: Bare domain or any URL on the site
            on_page: Stores a page and returns the number of chunks written
            on_totals_known: Receives the (monotonic) estimated page total
            on_progress: Receives (pages_visited, pages_stored, chunks_stored)
            seed_pages: Previously fetched pages served without refetching
            initial_total: Lower bound for the reported page total
            collect_pages: Keep every visited page on ``CrawlStats.pages``

        Raises:
            ValueError: if no host can be derived from ``domain_input``
            CrawlError: if the start URL could not be fetched and nothing was visited
        """
        start_url = normalize_domain_to_start_url(domain_input)
        domain = extract_domain(start_url)
        max_pages = self.max_pages

        seeds: Dict[str, ParsedPage] = {}
        for page in seed_pages or []:
            normalized = normalize_url_for_dedup(page.url)
            if normalized:
                seeds[normalized] = page

        totals = _TotalsReporter(max_pages, on_totals_known)
        if initial_total:
            totals.last_reported = min(max_pages, initial_total)
        run = _CrawlRun(self, normalize_url_for_dedup(start_url), domain, on_page, on_progress,
                        totals, seeds, collect_pages)

        logger.info(f"Starting crawl of {start_url} (max_pages={max_pages}, fetch_limit={self.fetch_limit}, "
                    f"max_depth={self.config.max_depth}, seeded={len(seeds)})")

        run.enqueue(start_url, 0)
        sitemap_urls = await fetch_sitemap_urls(self.fetcher, start_url, domain,
                                                self.config.enable_sitemap, robots=self.robots)
        for url in sitemap_urls:
            run.enqueue(url, 0)
        run.stats.total_pages_estimated = await totals.report(len(run.discovered), force=True)

        workers = [asyncio.create_task(run.worker()) for _ in range(max(1, self.config.concurrency))]
        try:
            await run.queue.join()
        finally:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        run.stats.discovered = len(run.discovered)
        run.stats.total_pages_estimated = await totals.report(len(run.discovered), force=True)
        await run.report_progress()
        run.stats.finish()

        if run.stats.pages_visited == 0 and run.start_error is not None:
            raise CrawlError(f"Could not fetch {start_url}: {run.start_error}")

        logger.info(f"Crawl of {domain} finished: visited={run.stats.pages_visited} "
                    f"stored={run.stats.pages_stored} chunks={run.stats.chunks_stored} "
                    f"failed={run.stats.pages_failed} duration={run.stats.duration}")
        return run.stats
