"""Cache for crawl estimates.

An estimate stores the pages visited while sampling a site so that a crawl
started from that estimate can reuse them without fetching again. Entries are
addressed by id and by a signature of the domain and every setting that
influences the estimate.

Redis (``redis.asyncio``) is used when ``REDIS_URL`` is set, otherwise an
in-process TTL cache. Every backend failure is logged and treated as a miss.
"""

import base64
import gzip
import hashlib
import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as aioredis

from config.settings import CacheSettings, KnowledgeSettings
from observability.prometheus_metrics import record_cache_lookup

logger = logging.getLogger(__name__)

CACHE_SCHEMA_VERSION = 1
ESTIMATE_KEY_PREFIX = "estimate"
ESTIMATE_STATUS_KEY_PREFIX = "estimate_status"


def estimate_key(estimate_id: str) -> str:
    return f"{ESTIMATE_KEY_PREFIX}:{estimate_id}"


def signature_key(signature: str) -> str:
    return f"{ESTIMATE_KEY_PREFIX}:sig:{signature}"


def estimate_status_key(estimate_id: str) -> str:
    return f"{ESTIMATE_STATUS_KEY_PREFIX}:{estimate_id}"


def build_signature_input(domain: str, settings: KnowledgeSettings) -> Dict[str, Any]:
    crawl = settings.crawl
    chunking = settings.chunking
    return {
        "schemaVersion": CACHE_SCHEMA_VERSION,
        "domain": domain.lower(),
        "crawl": {
            "maxPages": crawl.max_pages,
            "maxDepth": crawl.max_depth,
            "concurrency": crawl.concurrency,
            "contentWaitSelector": crawl.content_wait_selector or "",
            "minChars": crawl.min_chars,
            "enableSitemap": crawl.enable_sitemap,
            "respectRobotsTxt": crawl.respect_robots_txt,
        },
        "chunking": {
            "chunkSizeTokens": chunking.chunk_size_tokens,
            "chunkOverlapTokens": chunking.chunk_overlap_tokens,
        },
    }


def build_signature(domain: str, settings: KnowledgeSettings) -> str:
    """SHA-256 over the canonical JSON of the estimate inputs."""
    canonical = json.dumps(build_signature_input(domain, settings),
                           sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def encode_pages(pages: List[Dict[str, Any]]) -> str:
    data = json.dumps(pages, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(gzip.compress(data)).decode("ascii")


def decode_pages(encoded: str) -> List[Dict[str, Any]]:
    return json.loads(gzip.decompress(base64.b64decode(encoded)).decode("utf-8"))


class MemoryCache:
    """In-memory LRU cache with per-entry expiry."""

    def __init__(self, max_size: int = 256):
        self.max_size = max_size
        self.cache: Dict[str, Tuple[Any, float]] = {}  # key -> (value, expiry)
        self.access_order: List[str] = []

    def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        entry = self.cache.get(key)
        if entry is None:
            return None
        value, expiry_time = entry
        if expiry_time < time.time():
            self.delete(key)
            return None
        # Move to end (most recently used)
        self.access_order.remove(key)
        self.access_order.append(key)
        return value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Set value in cache."""
        expiry_time = time.time() + ttl if ttl else float('inf')

        if key in self.cache:
            self.access_order.remove(key)
        elif len(self.cache) >= self.max_size:
            lru_key = self.access_order.pop(0)
            del self.cache[lru_key]

        self.cache[key] = (value, expiry_time)
        self.access_order.append(key)

    def delete(self, key: str) -> bool:
        """Delete key from cache."""
        if key in self.cache:
            del self.cache[key]
            self.access_order.remove(key)
            return True
        return False

    def clear(self) -> None:
        self.cache.clear()
        self.access_order.clear()

    def size(self) -> int:
        return len(self.cache)


class MemoryBackend:
    """Async facade over :class:`MemoryCache` with the Redis backend's interface."""

    name = "memory"

    def __init__(self, max_size: int = 256):
        self.cache = MemoryCache(max_size)

    async def get(self, key: str) -> Optional[str]:
        return self.cache.get(key)

    async def set_many(self, items: Dict[str, str], ttl: int) -> None:
        for key, value in items.items():
            self.cache.set(key, value, ttl)

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self.cache.delete(key)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self.cache.clear()


class RedisBackend:
    """``redis.asyncio`` backend; multi-key writes go through one MULTI/EXEC."""

    name = "redis"

    def __init__(self, client: aioredis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, redis_url: str) -> 'RedisBackend':
        client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        return cls(client)

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set_many(self, items: Dict[str, str], ttl: int) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            for key, value in items.items():
                pipe.set(key, value, ex=ttl)
            await pipe.execute()

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        async with self.client.pipeline(transaction=True) as pipe:
            for key in keys:
                pipe.delete(key)
            await pipe.execute()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()


class EstimateCache:
    """Estimate payload and status storage.

    A cache without a backend is disabled: reads miss and writes do nothing.
    """

    def __init__(self, settings: CacheSettings, backend=None):
        self.settings = settings
        self.backend = backend

    @classmethod
    def from_settings(cls, settings: CacheSettings) -> 'EstimateCache':
        backend = None
        if settings.redis_url:
            logger.info("Estimate cache using Redis")
            backend = RedisBackend.from_url(settings.redis_url)
        elif settings.memory_fallback:
            logger.info("REDIS_URL not set; estimate cache using in-process memory")
            backend = MemoryBackend(settings.max_memory_entries)
        else:
            logger.info("Estimate cache disabled")
        return cls(settings, backend)

    @property
    def enabled(self) -> bool:
        return self.backend is not None

    @property
    def backend_name(self) -> str:
        return self.backend.name if self.backend else "disabled"

    @property
    def ttl(self) -> int:
        return self.settings.effective_ttl

    async def ping(self) -> bool:
        if not self.backend:
            return False
        try:
            return await self.backend.ping()
        except Exception as e:
            logger.warning(f"Estimate cache health check failed: {e}")
            return False

    async def close(self) -> None:
        if self.backend:
            try:
                await self.backend.close()
            except Exception as e:
                logger.warning(f"Failed to close estimate cache: {e}")

    async def set(self, payload: Dict[str, Any]) -> bool:
        """Store ``{meta, pages}`` under its id and signature."""
        if not self.backend:
            return False
        meta = payload["meta"]
        body = json.dumps({"meta": meta, "pagesGzip": encode_pages(payload.get("pages") or [])})
        try:
            await self.backend.set_many({
                estimate_key(meta["estimateId"]): body,
                signature_key(meta["signature"]): meta["estimateId"],
            }, self.ttl)
            return True
        except Exception as e:
            logger.warning(f"Failed to write estimate cache: {e}")
            return False

    async def get_by_id(self, estimate_id: str) -> Optional[Dict[str, Any]]:
        if not self.backend or not estimate_id:
            return None
        try:
            raw = await self.backend.get(estimate_key(estimate_id))
            if not raw:
                return None
            parsed = json.loads(raw)
            return {"meta": parsed["meta"], "pages": decode_pages(parsed["pagesGzip"])}
        except Exception as e:
            logger.warning(f"Failed to read estimate cache by id: {e}")
            return None

    async def get_by_signature(self, signature: str) -> Optional[Dict[str, Any]]:
        if not self.backend:
            return None
        try:
            estimate_id = await self.backend.get(signature_key(signature))
        except Exception as e:
            logger.warning(f"Failed to read estimate cache by signature: {e}")
            return None
        cached = await self.get_by_id(estimate_id) if estimate_id else None
        record_cache_lookup(cached is not None)
        return cached

    async def delete_by_id(self, estimate_id: str, signature: Optional[str] = None) -> None:
        if not self.backend:
            return
        keys = [estimate_key(estimate_id)]
        if signature:
            keys.append(signature_key(signature))
        try:
            await self.backend.delete(*keys)
        except Exception as e:
            logger.warning(f"Failed to delete estimate cache: {e}")

    async def consume_by_id(self, estimate_id: str) -> Optional[Dict[str, Any]]:
        """Read an estimate and remove it so it is used at most once."""
        cached = await self.get_by_id(estimate_id)
        if cached is None:
            return None
        await self.delete_by_id(estimate_id, cached["meta"].get("signature"))
        return cached

    async def set_status(self, status: Dict[str, Any]) -> None:
        if not self.backend:
            return
        try:
            await self.backend.set_many(
                {estimate_status_key(status["estimateId"]): json.dumps(status)}, self.ttl
            )
        except Exception as e:
            logger.warning(f"Failed to write estimate job status: {e}")

    async def get_status(self, estimate_id: str) -> Optional[Dict[str, Any]]:
        if not self.backend:
            return None
        try:
            raw = await self.backend.get(estimate_status_key(estimate_id))
            return json.loads(raw) if raw else None
        except Exception as e:
            logger.warning(f"Failed to read estimate job status: {e}")
            return None

    async def clear_status(self, estimate_id: str) -> None:
        if not self.backend:
            return
        try:
            await self.backend.delete(estimate_status_key(estimate_id))
        except Exception as e:
            logger.warning(f"Failed to clear estimate job status: {e}")
