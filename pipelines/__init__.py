"""Pipelines package for the knowledge engine.

Provides crawling, robots and rate policy, sitemap discovery, HTML and
document text extraction, and ingestion of text into the chunk store.
"""

from .crawler import WebCrawler, HttpFetcher, FetchResponse, CrawlStats, CrawlError
from .policy import RobotsCache, RobotsPolicy, RateLimiter
from .sitemaps import fetch_sitemap_urls, parse_sitemap
from .html_ingest import ParsedPage, parse_html_to_text, clean_text
from .extract import (
    UnsupportedDocumentError,
    DocumentExtractionError,
    extract_text_from_bytes,
    extract_clean_text
)
from .ingest import IngestResult, ingest_text_for_client

__all__ = [
    # Crawler
    'WebCrawler',
    'HttpFetcher',
    'FetchResponse',
    'CrawlStats',
    'CrawlError',

    # Policy
    'RobotsCache',
    'RobotsPolicy',
    'RateLimiter',

    # Sitemaps
    'fetch_sitemap_urls',
    'parse_sitemap',

    # Extraction
    'ParsedPage',
    'parse_html_to_text',
    'clean_text',
    'UnsupportedDocumentError',
    'DocumentExtractionError',
    'extract_text_from_bytes',
    'extract_clean_text',

    # Ingestion
    'IngestResult',
    'ingest_text_for_client'
]
