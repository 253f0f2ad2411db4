from functools import partial

import pytest

from indexer.chunker import estimate_tokens_for_text
from pipelines.crawler import WebCrawler
from server.estimates import EstimateService, UploadedDocument, token_range
from tests.conftest import FakeFetcher, RecordingDispatcher, WordTokenizer, paragraph


@pytest.fixture
def service(settings, estimate_cache, site):
    return EstimateService(settings, estimate_cache,
                           crawler_factory=partial(WebCrawler, fetcher=site),
                           dispatcher=RecordingDispatcher(),
                           tokenizer=WordTokenizer())


def test_token_range():
    assert token_range(1000) == {"tokensLow": 800, "tokensHigh": 1250}
    assert token_range(7) == {"tokensLow": 5, "tokensHigh": 9}
    assert token_range(0) == {"tokensLow": 0, "tokensHigh": 0}


class TestCrawlEstimate:
    @pytest.mark.asyncio
    async def test_estimate_extrapolates_sample(self, service):
        estimate = await service.estimate_crawl("example.com")

        assert estimate["domain"] == "example.com"
        assert estimate["cached"] is False
        assert estimate["samplePages"] == 3
        assert estimate["pagesEstimated"] == 4
        assert estimate["avgEmbeddingTokensPerPage"] > 0
        assert estimate["tokensEstimated"] == estimate["avgEmbeddingTokensPerPage"] * 4
        assert estimate["tokensLow"] <= estimate["tokensEstimated"] <= estimate["tokensHigh"]

    @pytest.mark.asyncio
    async def test_second_estimate_is_served_from_cache(self, service, site):
        first = await service.estimate_crawl("example.com")
        requests_after_first = len(site.requests)

        second = await service.estimate_crawl("https://example.com/pricing")

        assert len(site.requests) == requests_after_first
        assert second["cached"] is True
        assert second["tokensEstimated"] == first["tokensEstimated"]
        assert second["estimateId"] == first["estimateId"]

    @pytest.mark.asyncio
    async def test_changed_settings_miss_the_cache(self, service, settings, site):
        first = await service.estimate_crawl("example.com")
        settings.chunking.chunk_size_tokens = 40

        second = await service.estimate_crawl("example.com")

        assert second["cached"] is False
        assert second["estimateId"] != first["estimateId"]

    @pytest.mark.asyncio
    async def test_sample_is_bounded(self, settings, estimate_cache, site):
        settings.cache.estimate_sample_pages = 1
        service = EstimateService(settings, estimate_cache,
                                  crawler_factory=partial(WebCrawler, fetcher=site),
                                  tokenizer=WordTokenizer())

        estimate = await service.estimate_crawl("example.com")

        assert site.page_requests() == ["https://example.com/"]
        assert estimate["samplePages"] == 1
        assert estimate["pagesEstimated"] == 4

    @pytest.mark.asyncio
    async def test_cached_pages_are_stored_for_crawls(self, service, estimate_cache):
        estimate = await service.estimate_crawl("example.com")

        cached = await estimate_cache.get_by_id(estimate["estimateId"])

        assert {page["url"] for page in cached["pages"]} == {
            "https://example.com/", "https://example.com/about", "https://example.com/pricing",
        }

    @pytest.mark.asyncio
    async def test_invalid_domain(self, service):
        with pytest.raises(ValueError):
            await service.estimate_crawl("")


class TestAsyncEstimate:
    @pytest.mark.asyncio
    async def test_background_estimate_completes(self, service):
        estimate_id = await service.start_crawl_estimate("example.com")

        running = await service.get_crawl_estimate_status(estimate_id)
        assert running["status"] == "running"
        assert "estimate" not in running

        await service.dispatcher.run_all()
        status = await service.get_crawl_estimate_status(estimate_id)

        assert status["status"] == "completed"
        assert status["estimate"]["estimateId"] == estimate_id
        assert status["estimate"]["pagesEstimated"] == 4

    @pytest.mark.asyncio
    async def test_background_estimate_reuses_cached_estimate(self, service, site):
        first = await service.estimate_crawl("example.com")
        requests_after_first = len(site.requests)

        estimate_id = await service.start_crawl_estimate("example.com")
        await service.dispatcher.run_all()
        status = await service.get_crawl_estimate_status(estimate_id)

        assert len(site.requests) == requests_after_first
        assert status["status"] == "completed"
        assert status["resultEstimateId"] == first["estimateId"]
        assert status["estimate"]["estimateId"] == first["estimateId"]
        assert status["estimate"]["tokensEstimated"] == first["tokensEstimated"]

    @pytest.mark.asyncio
    async def test_background_estimate_failure_is_recorded(self, settings, estimate_cache):
        fetcher = FakeFetcher()
        fetcher.responses["https://down.example/"] = ConnectionError("unreachable")
        service = EstimateService(settings, estimate_cache,
                                  crawler_factory=partial(WebCrawler, fetcher=fetcher),
                                  dispatcher=RecordingDispatcher())

        estimate_id = await service.start_crawl_estimate("down.example")
        await service.dispatcher.run_all()
        status = await service.get_crawl_estimate_status(estimate_id)

        assert status["status"] == "failed"
        assert "unreachable" in status["error"]

    @pytest.mark.asyncio
    async def test_unknown_estimate(self, service):
        assert await service.get_crawl_estimate_status("missing") is None


def test_document_estimate(service, settings):
    text = "\n\n".join(paragraph(f"topic{n}", words=40) for n in range(3))
    expected_chunks, expected_tokens = estimate_tokens_for_text(text, settings.chunking,
                                                                tokenizer=WordTokenizer())

    result = service.estimate_documents([
        UploadedDocument("guide.md", text.encode("utf-8")),
        UploadedDocument("tiny.txt", b"hello"),
        UploadedDocument("archive.zip", b"PK"),
    ])

    guide, tiny, archive = result["files"]
    assert guide["chunks"] == expected_chunks
    assert guide["tokensEstimated"] == expected_tokens
    assert tiny["skipped"] is True
    assert "too short" in tiny["reason"]
    assert archive["skipped"] is True
    assert result["totalTokensEstimated"] == expected_tokens
