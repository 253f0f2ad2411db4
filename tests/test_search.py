import pytest

from indexer.embeddings import EmbeddingAPIError
from server.search_service import search_client_content
from tests.conftest import FakeEmbeddings, add_chunk


@pytest.mark.asyncio
async def test_search_without_content_returns_empty(store, embeddings, client_record):
    assert await search_client_content(store, embeddings, client_record, "anything") == []


@pytest.mark.asyncio
async def test_search_ranks_closest_chunks_first(store, embeddings, client_record):
    await add_chunk(store, client_record, "opening hours are monday to friday")
    await add_chunk(store, client_record, "pricing plans start at ten euros", index=1)

    results = await search_client_content(store, embeddings, client_record, "pricing plans start at ten euros")

    assert results[0]["text"] == "pricing plans start at ten euros"
    assert results[0]["score"] == pytest.approx(1.0)
    assert results[0]["clientId"] == client_record["id"]
    assert results[0]["chunkIndex"] == 1
    assert isinstance(results[0]["createdAt"], str)
    assert results[0]["score"] >= results[1]["score"]


@pytest.mark.asyncio
async def test_search_filters_by_domain_and_limit(store, embeddings, client_record):
    for i in range(5):
        await add_chunk(store, client_record, f"product number {i}", index=i)
    await add_chunk(store, client_record, "product on the blog", url="https://blog.example.com/",
                    domain="blog.example.com")

    scoped = await search_client_content(store, embeddings, client_record, "product",
                                         domain="blog.example.com")
    limited = await search_client_content(store, embeddings, client_record, "product", limit=2)

    assert [row["domain"] for row in scoped] == ["blog.example.com"]
    assert len(limited) == 2


@pytest.mark.asyncio
async def test_search_records_usage(store, embeddings, client_record):
    await search_client_content(store, embeddings, client_record, "three word query")

    summary = await store.get_usage_summary(client_record["id"])
    assert summary["byOperation"] == [
        {"operation": "embeddings_search", "promptTokens": 3, "totalTokens": 3},
    ]
    assert embeddings.calls == [["three word query"]]


@pytest.mark.asyncio
async def test_search_embedding_failure_propagates(store, client_record):
    failing = FakeEmbeddings(fail_with=EmbeddingAPIError("unavailable", status=503))
    with pytest.raises(EmbeddingAPIError):
        await search_client_content(store, failing, client_record, "query")
    assert (await store.get_usage_summary(client_record["id"]))["totalTokens"] == 0
