"""Unit tests for the embedding API client.

Tests cover:
- Dimension lookup per supported model
- Retry with doubling backoff on rate limits and server errors
- Immediate failure on non-retryable errors
- Batching and usage accounting
"""

import pytest
from unittest.mock import AsyncMock, patch

from config.settings import EmbeddingsConfig
from indexer.embeddings import (
    EmbeddingAPIError,
    EmbeddingClient,
    EmbeddingDimensionError,
    UnsupportedModelError,
    get_model_dimensions,
    is_supported_model,
)

SMALL = "text-embedding-3-small"
LARGE = "text-embedding-3-large"


def payload(count: int, dimensions: int, tokens: int = 5):
    return {
        "data": [{"index": i, "embedding": [float(i)] * dimensions} for i in range(count)],
        "usage": {"prompt_tokens": tokens, "total_tokens": tokens},
    }


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def client(sleeper):
    config = EmbeddingsConfig(api_key="k", max_retries=5, initial_backoff_ms=1000, batch_size=2)
    return EmbeddingClient(config, sleep=sleeper)


class TestModelDimensions:
    def test_known_models(self):
        assert get_model_dimensions(SMALL) == 1536
        assert get_model_dimensions(LARGE) == 3072
        assert is_supported_model(SMALL)

    def test_unknown_model(self):
        assert not is_supported_model("text-embedding-ada-002")
        with pytest.raises(UnsupportedModelError):
            get_model_dimensions("text-embedding-ada-002")


class TestEmbeddingClient:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("model", [SMALL, LARGE])
    async def test_vectors_match_model_dimensions(self, client, model):
        dims = get_model_dimensions(model)
        with patch.object(client, "_post_embeddings", AsyncMock(return_value=payload(1, dims))):
            vectors = await client.embed_batch(["hello"], model)
        assert len(vectors) == 1
        assert len(vectors[0]) == dims

    @pytest.mark.asyncio
    async def test_retries_rate_limit_with_doubling_backoff(self, client, sleeper):
        """Two 429 responses, then success: exactly two retries, delays 1s then 2s."""
        post = AsyncMock(side_effect=[
            EmbeddingAPIError("rate limited", status=429),
            EmbeddingAPIError("rate limited", status=429),
            payload(2, 1536),
        ])
        with patch.object(client, "_post_embeddings", post):
            vectors = await client.embed_batch(["a", "b"], SMALL)

        assert post.await_count == 3
        assert sleeper.delays == [1.0, 2.0]
        assert [v[0] for v in vectors] == [0.0, 1.0]

    @pytest.mark.asyncio
    async def test_server_errors_exhaust_retries(self, client, sleeper):
        post = AsyncMock(side_effect=EmbeddingAPIError("unavailable", status=503))
        with patch.object(client, "_post_embeddings", post):
            with pytest.raises(EmbeddingAPIError) as exc_info:
                await client.embed_batch(["a"], SMALL)

        assert exc_info.value.status == 503
        assert post.await_count == 6
        assert sleeper.delays == [1.0, 2.0, 4.0, 8.0, 16.0]

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, client, sleeper):
        post = AsyncMock(side_effect=EmbeddingAPIError("bad request", status=400))
        with patch.object(client, "_post_embeddings", post):
            with pytest.raises(EmbeddingAPIError):
                await client.embed_batch(["a"], SMALL)

        assert post.await_count == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_wrong_dimension_is_a_hard_error(self, client):
        with patch.object(client, "_post_embeddings", AsyncMock(return_value=payload(1, 3072))):
            with pytest.raises(EmbeddingDimensionError):
                await client.embed_batch(["a"], SMALL)

    @pytest.mark.asyncio
    async def test_wrong_vector_count_is_a_hard_error(self, client):
        with patch.object(client, "_post_embeddings", AsyncMock(return_value=payload(1, 1536))):
            with pytest.raises(EmbeddingDimensionError):
                await client.embed_batch(["a", "b"], SMALL)

    @pytest.mark.asyncio
    async def test_batches_are_split_and_usage_summed(self, client):
        post = AsyncMock(side_effect=[payload(2, 1536, tokens=4), payload(1, 1536, tokens=3)])
        with patch.object(client, "_post_embeddings", post):
            batch = await client.embed_batch_with_usage(["a", "b", "c"], SMALL)

        assert post.await_count == 2
        assert post.await_args_list[0].args == (["a", "b"], SMALL)
        assert post.await_args_list[1].args == (["c"], SMALL)
        assert len(batch.vectors) == 3
        assert batch.prompt_tokens == 7
        assert batch.total_tokens == 7

    @pytest.mark.asyncio
    async def test_empty_input_makes_no_request(self, client):
        post = AsyncMock()
        with patch.object(client, "_post_embeddings", post):
            batch = await client.embed_batch_with_usage([], SMALL)
        assert batch.vectors == []
        post.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unsupported_model_fails_before_request(self, client):
        post = AsyncMock()
        with patch.object(client, "_post_embeddings", post):
            with pytest.raises(UnsupportedModelError):
                await client.embed_batch(["a"], "unknown-model")
        post.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_embed_single_text(self, client):
        with patch.object(client, "_post_embeddings", AsyncMock(return_value=payload(1, 1536))):
            vector = await client.embed("hello", SMALL)
        assert len(vector) == 1536


def test_retryable_classification():
    assert EmbeddingAPIError("x", status=429).retryable
    assert EmbeddingAPIError("x", status=500).retryable
    assert EmbeddingAPIError("x").retryable
    assert not EmbeddingAPIError("x", status=401).retryable
