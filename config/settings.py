"""Runtime settings for the knowledge engine.

All values are read from environment variables. Every group exposes a
``from_env`` constructor so components can be configured independently in
tests.
"""

import os
import logging
from typing import Optional
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

TRUE_VALUES = {"1", "true", "yes", "y", "on"}
DEFAULT_USER_AGENT = "KnowledgeEngineBot/1.0"


def int_env(name: str, default: int) -> int:
    """Read an integer variable, falling back to ``default`` when malformed."""
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning(f"Invalid integer for {name}, using default {default}")
        return default


def float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        logger.warning(f"Invalid number for {name}, using default {default}")
        return default


def bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if not raw:
        return default
    return raw.strip().lower() in TRUE_VALUES


class CrawlConfig(BaseModel):
    """Crawler limits and politeness settings."""
    max_pages: int = Field(default=100, description="Maximum pages fetched per crawl")
    max_depth: int = Field(default=3, description="Maximum link depth from the start URL")
    concurrency: int = Field(default=5, description="Number of concurrent fetch workers")
    content_wait_selector: Optional[str] = Field(default=None, description="CSS selector marking loaded content")
    min_chars: int = Field(default=500, description="Minimum cleaned text length for a page to be stored")
    enable_sitemap: bool = Field(default=True, description="Discover URLs from sitemaps")
    respect_robots_txt: bool = Field(default=True, description="Honour robots.txt rules")
    max_requests_per_second: float = Field(default=0.0, description="Per-host request rate, 0 disables")
    request_timeout: int = Field(default=30, description="Page fetch timeout in seconds")
    user_agent: str = Field(default=DEFAULT_USER_AGENT, description="User agent sent with every request")

    @classmethod
    def from_env(cls) -> 'CrawlConfig':
        return cls(
            max_pages=int_env('CRAWL_MAX_PAGES', 100),
            max_depth=int_env('CRAWL_MAX_DEPTH', 3),
            concurrency=max(1, int_env('CRAWL_CONCURRENCY', 5)),
            content_wait_selector=os.getenv('CRAWL_CONTENT_WAIT_SELECTOR') or None,
            min_chars=int_env('CRAWL_MIN_CHARS', 500),
            enable_sitemap=bool_env('ENABLE_SITEMAP', True),
            respect_robots_txt=bool_env('CRAWL_RESPECT_ROBOTS', True),
            max_requests_per_second=float_env('CRAWL_MAX_REQUESTS_PER_SECOND', 0.0),
            request_timeout=int_env('CRAWL_REQUEST_TIMEOUT_SECONDS', 30),
            user_agent=os.getenv('CRAWL_USER_AGENT') or DEFAULT_USER_AGENT,
        )


class ChunkingConfig(BaseModel):
    """Token budget for chunks."""
    chunk_size_tokens: int = 900
    chunk_overlap_tokens: int = 150

    @classmethod
    def from_env(cls) -> 'ChunkingConfig':
        return cls(
            chunk_size_tokens=int_env('CHUNK_SIZE_TOKENS', 900),
            chunk_overlap_tokens=int_env('CHUNK_OVERLAP_TOKENS', 150),
        )


class EmbeddingsConfig(BaseModel):
    """Embedding API access and retry policy."""
    api_key: str = ""
    api_base: str = "https://api.openai.com/v1"
    max_retries: int = 5
    initial_backoff_ms: int = 1000
    batch_size: int = 96
    request_timeout: int = 60

    @classmethod
    def from_env(cls) -> 'EmbeddingsConfig':
        api_key = os.getenv('OPENAI_API_KEY', '')
        if not api_key:
            logger.warning("OPENAI_API_KEY is not set; embedding calls will be rejected upstream")
        return cls(
            api_key=api_key,
            api_base=(os.getenv('EMBEDDINGS_API_BASE') or "https://api.openai.com/v1").rstrip('/'),
            max_retries=int_env('EMBEDDINGS_MAX_RETRIES', 5),
            initial_backoff_ms=int_env('EMBEDDINGS_INITIAL_BACKOFF_MS', 1000),
            batch_size=max(1, int_env('EMBEDDINGS_BATCH_SIZE', 96)),
            request_timeout=int_env('EMBEDDINGS_REQUEST_TIMEOUT_SECONDS', 60),
        )


class CacheSettings(BaseModel):
    """Estimate cache configuration."""
    redis_url: Optional[str] = None
    estimate_ttl_seconds: int = 1800
    memory_fallback: bool = True
    max_memory_entries: int = 256
    estimate_sample_pages: int = 20

    @property
    def effective_ttl(self) -> int:
        return max(60, self.estimate_ttl_seconds)

    @classmethod
    def from_env(cls) -> 'CacheSettings':
        return cls(
            redis_url=os.getenv('REDIS_URL') or None,
            estimate_ttl_seconds=int_env('ESTIMATE_CACHE_TTL_SECONDS', 1800),
            memory_fallback=bool_env('ESTIMATE_CACHE_MEMORY_FALLBACK', True),
            estimate_sample_pages=max(1, int_env('ESTIMATE_SAMPLE_PAGES', 20)),
        )


class ServerSettings(BaseModel):
    """HTTP server and logging settings."""
    internal_token: Optional[str] = None
    port: int = 3001
    max_upload_bytes: int = 20 * 1024 * 1024
    log_level: str = "INFO"
    log_json: bool = False
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'ServerSettings':
        return cls(
            internal_token=os.getenv('KNOWLEDGE_INTERNAL_TOKEN') or None,
            port=int_env('PORT', 3001),
            log_level=os.getenv('LOG_LEVEL', 'INFO'),
            log_json=bool_env('LOG_JSON', False),
            log_file=os.getenv('LOG_FILE') or None,
        )


class KnowledgeSettings(BaseModel):
    """Top level settings container."""
    crawl: CrawlConfig = Field(default_factory=CrawlConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    embeddings: EmbeddingsConfig = Field(default_factory=EmbeddingsConfig)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    @classmethod
    def from_env(cls) -> 'KnowledgeSettings':
        """Create configuration from environment variables."""
        return cls(
            crawl=CrawlConfig.from_env(),
            chunking=ChunkingConfig.from_env(),
            embeddings=EmbeddingsConfig.from_env(),
            cache=CacheSettings.from_env(),
            server=ServerSettings.from_env(),
        )


_settings: Optional[KnowledgeSettings] = None


def get_settings() -> KnowledgeSettings:
    """Return the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = KnowledgeSettings.from_env()
    return _settings


def set_settings(settings: Optional[KnowledgeSettings]) -> None:
    """Replace the process-wide settings (``None`` reloads from the environment)."""
    global _settings
    _settings = settings
