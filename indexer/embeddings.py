"""Embedding API client.

Calls an OpenAI-compatible ``/embeddings`` endpoint in batches, validates the
dimensionality of every returned vector against the tenant's model and retries
rate-limit and server errors with exponential backoff.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from config.settings import EmbeddingsConfig
from observability.prometheus_metrics import record_embedding_request, record_embedding_retry

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"

EMBEDDING_MODEL_DIMENSIONS: Dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
}


class UnsupportedModelError(ValueError):
    """Raised for an embedding model without a known dimensionality."""


class EmbeddingDimensionError(ValueError):
    """Raised when the API returns vectors of the wrong size or count."""


class EmbeddingAPIError(Exception):
    """Error response (or transport failure) from the embedding API."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @property
    def retryable(self) -> bool:
        # status None means the request never got a response (timeout, reset)
        if self.status is None:
            return True
        return self.status == 429 or 500 <= self.status < 600


def get_model_dimensions(model: str) -> int:
    try:
        return EMBEDDING_MODEL_DIMENSIONS[model]
    except KeyError:
        raise UnsupportedModelError(f"Unsupported embedding model: {model}") from None


def is_supported_model(model: str) -> bool:
    return model in EMBEDDING_MODEL_DIMENSIONS


@dataclass
class EmbeddingBatch:
    """Vectors for one ``embed_batch`` call plus the tokens it consumed."""
    vectors: List[List[float]] = field(default_factory=list)
    prompt_tokens: int = 0
    total_tokens: int = 0


class EmbeddingClient:
    """Batched embedding client with per-model dimension checks."""

    def __init__(self,
                 config: EmbeddingsConfig,
                 session: Optional[aiohttp.ClientSession] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        """Initialize the client.

        Args:
            config: API endpoint, credentials and retry policy
            session: Optional shared aiohttp session
            sleep: Coroutine used to wait between retries
        """
        self.config = config
        self.session = session
        self._owns_session = session is None
        self._sleep = sleep

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.request_timeout)
            self.session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self.session

    async def _post_embeddings(self, texts: List[str], model: str) -> Dict[str, Any]:
        """Send one request and return the decoded JSON body."""
        session = self._get_session()
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with session.post(
                f"{self.config.api_base}/embeddings",
                json={"model": model, "input": texts},
                headers=headers,
            ) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise EmbeddingAPIError(
                        f"Embedding API returned {response.status}: {body[:500]}",
                        status=response.status,
                    )
                return await response.json()
        except (asyncio.TimeoutError, aiohttp.ClientConnectionError) as e:
            raise EmbeddingAPIError(f"Embedding API request failed: {e!r}") from e

    def _parse_response(self, payload: Dict[str, Any], expected_count: int,
                        model: str) -> EmbeddingBatch:
        expected_dims = get_model_dimensions(model)
        rows = sorted(payload.get("data") or [], key=lambda row: row.get("index", 0))
        vectors = [row["embedding"] for row in rows]

        if len(vectors) != expected_count:
            raise EmbeddingDimensionError(
                f"Embedding API returned {len(vectors)} vectors for {expected_count} inputs"
            )
        for vector in vectors:
            if len(vector) != expected_dims:
                raise EmbeddingDimensionError(
                    f"Embedding API returned dimension {len(vector)}, expected "
                    f"{expected_dims} for model \"{model}\""
                )

        usage = payload.get("usage") or {}
        return EmbeddingBatch(
            vectors=vectors,
            prompt_tokens=int(usage.get("prompt_tokens") or 0),
            total_tokens=int(usage.get("total_tokens") or 0),
        )

    async def _embed_with_retry(self, texts: List[str], model: str) -> EmbeddingBatch:
        attempt = 0
        backoff = self.config.initial_backoff_ms / 1000.0

        while True:
            start = time.time()
            try:
                payload = await self._post_embeddings(texts, model)
                batch = self._parse_response(payload, len(texts), model)
                record_embedding_request(model, "success", time.time() - start)
                return batch
            except EmbeddingAPIError as e:
                attempt += 1
                if not e.retryable or attempt > self.config.max_retries:
                    record_embedding_request(model, "error", time.time() - start)
                    logger.error(
                        f"Embedding API failed (attempt {attempt}, status {e.status}). Giving up."
                    )
                    raise

                record_embedding_retry(model)
                logger.warning(
                    f"Embedding API rate-limited or server error (status {e.status}). "
                    f"Retrying in {backoff:.2f}s (attempt {attempt}/{self.config.max_retries})"
                )
                await self._sleep(backoff)
                backoff *= 2

    async def embed_batch_with_usage(self, texts: List[str], model: str) -> EmbeddingBatch:
        """Embed ``texts`` and report token usage.

        Inputs are split into sub-batches of ``config.batch_size``; every
        sub-batch gets its own retry budget.
        """
        get_model_dimensions(model)
        if not texts:
            return EmbeddingBatch()

        result = EmbeddingBatch()
        size = self.config.batch_size
        for offset in range(0, len(texts), size):
            batch = await self._embed_with_retry(texts[offset:offset + size], model)
            result.vectors.extend(batch.vectors)
            result.prompt_tokens += batch.prompt_tokens
            result.total_tokens += batch.total_tokens

        logger.debug(f"Embedded {len(texts)} texts with {model} ({result.total_tokens} tokens)")
        return result

    async def embed_batch(self, texts: List[str], model: str) -> List[List[float]]:
        batch = await self.embed_batch_with_usage(texts, model)
        return batch.vectors

    async def embed(self, text: str, model: str) -> List[float]:
        vectors = await self.embed_batch([text], model)
        return vectors[0]
