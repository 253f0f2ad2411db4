"""Sitemap discovery for the crawler.

Sitemaps are read from the ``Sitemap:`` lines of robots.txt and from the
usual well-known locations. Sitemap indexes are followed up to ``MAX_SITEMAP_FILES``
files. Any failure is logged and discovery continues with what was found.
"""

import logging
from typing import List, Set
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from .urls import is_same_host, normalize_url_for_dedup, should_skip_crawl_url

logger = logging.getLogger(__name__)

MAX_SITEMAP_FILES = 50
DEFAULT_SITEMAP_PATHS = (
    "/sitemap.xml",
    "/sitemap_index.xml",
    "/wp-sitemap.xml",
    "/index.php/sitemap_index.xml",
)


def parse_robots_sitemaps(robots_txt: str) -> List[str]:
    """``Sitemap:`` URLs declared in a robots.txt body."""
    sitemaps = []
    for line in (robots_txt or "").splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip().lower() == "sitemap" and value.strip():
            sitemaps.append(value.strip())
    return sitemaps


def parse_sitemap(xml: str):
    """Split a sitemap document into (child sitemap URLs, page URLs)."""
    soup = BeautifulSoup(xml or "", "html.parser")

    children = []
    for sitemap in soup.find_all("sitemap"):
        loc = sitemap.find("loc")
        if loc and loc.get_text(strip=True):
            children.append(loc.get_text(strip=True))

    pages = []
    for url in soup.find_all("url"):
        loc = url.find("loc")
        if loc and loc.get_text(strip=True):
            pages.append(loc.get_text(strip=True))

    return children, pages


async def _fetch_text(fetcher, url: str):
    try:
        response = await fetcher.fetch(url)
    except Exception as e:
        logger.debug(f"Sitemap fetch failed for {url}: {e}")
        return None
    if not response.ok:
        return None
    return response.text


async def fetch_sitemap_urls(fetcher, start_url: str, domain: str, enabled: bool = True,
                            robots=None) -> List[str]:
    """Normalised same-host page URLs listed in the site's sitemaps.

    With a ``robots`` policy the robots.txt body comes from its cache
    instead of a second request.
    """
    if not enabled:
        return []

    to_visit: List[str] = []
    if robots is not None:
        robots_txt = await robots.robots_txt(start_url)
    else:
        robots_txt = await _fetch_text(fetcher, urljoin(start_url, "/robots.txt"))
    if robots_txt:
        to_visit.extend(url for url in parse_robots_sitemaps(robots_txt) if is_same_host(url, domain))
    to_visit.extend(urljoin(start_url, path) for path in DEFAULT_SITEMAP_PATHS)

    seen_files: Set[str] = set()
    seen_pages: Set[str] = set()
    pages: List[str] = []

    while to_visit and len(seen_files) < MAX_SITEMAP_FILES:
        sitemap_url = to_visit.pop(0)
        if sitemap_url in seen_files:
            continue
        seen_files.add(sitemap_url)

        xml = await _fetch_text(fetcher, sitemap_url)
        if not xml:
            continue

        try:
            children, locs = parse_sitemap(xml)
        except Exception as e:
            logger.warning(f"Could not parse sitemap {sitemap_url}: {e}")
            continue

        to_visit.extend(child for child in children if child not in seen_files)
        for loc in locs:
            normalized = normalize_url_for_dedup(loc)
            if not normalized or not is_same_host(normalized, domain):
                continue
            if should_skip_crawl_url(normalized) or normalized in seen_pages:
                continue
            seen_pages.add(normalized)
            pages.append(normalized)

    if pages:
        logger.info(f"Discovered {len(pages)} URLs from {len(seen_files)} sitemap file(s) for {domain}")
    return pages
