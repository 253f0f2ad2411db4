"""Crawl job orchestration: queued crawls, document ingestion and job views."""

import asyncio
from functools import partial

import pytest

from indexer.embeddings import EmbeddingAPIError
from pipelines.crawler import WebCrawler
from server.estimate_cache import build_signature
from server.estimates import UploadedDocument
from server.search_service import search_client_content
from server.jobs import (
    CrawlJobOrchestrator,
    JobDispatcher,
    document_url,
    job_origin,
    job_percent,
    job_type_for,
)
from tests.conftest import FakeEmbeddings, FakeFetcher, RecordingDispatcher, WordTokenizer, paragraph


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def orchestrator(store, embeddings, settings, estimate_cache, dispatcher, site):
    return CrawlJobOrchestrator(store, embeddings, settings, estimate_cache, dispatcher,
                                crawler_factory=partial(WebCrawler, fetcher=site),
                                tokenizer=WordTokenizer())


def long_document(topic: str = "guide") -> bytes:
    return ("\n\n".join(paragraph(f"{topic}{n}", words=40) for n in range(4))).encode("utf-8")


class TriggeringFetcher:
    """Runs ``on_trigger`` right before ``trigger_url`` is fetched."""

    def __init__(self, inner, trigger_url):
        self.inner = inner
        self.trigger_url = trigger_url
        self.on_trigger = None

    async def fetch(self, url):
        if url == self.trigger_url and self.on_trigger is not None:
            await self.on_trigger()
        return await self.inner.fetch(url)

    async def close(self):
        pass


class TriggeringEmbeddings(FakeEmbeddings):
    """Runs ``on_trigger`` before embedding any text containing ``trigger_word``."""

    def __init__(self, trigger_word):
        super().__init__()
        self.trigger_word = trigger_word
        self.on_trigger = None

    async def embed_batch_with_usage(self, texts, model):
        if self.on_trigger is not None and any(self.trigger_word in text for text in texts):
            await self.on_trigger()
        return await super().embed_batch_with_usage(texts, model)


class TestHelpers:
    def test_job_type_and_origin(self):
        url = document_url("example.com", "Price List (2024).md")
        docs_job = {"start_url": url, "domain": "example.com"}
        domain_job = {"start_url": "https://example.com/", "domain": "example.com"}

        assert url == "file://example.com/Price%20List%20(2024).md"
        assert job_type_for(docs_job) == "docs"
        assert job_origin(docs_job) == "Price List (2024).md"
        assert job_type_for(domain_job) == "domain"
        assert job_origin(domain_job) == "example.com"

    @pytest.mark.parametrize("visited,total,expected", [
        (3, 4, 75),
        (0, 10, 0),
        (12, 10, 100),
        (5, None, None),
        (5, 0, None),
    ])
    def test_percent(self, visited, total, expected):
        assert job_percent({"pages_visited": visited, "total_pages_estimated": total}) == expected


class TestCrawlJobs:
    @pytest.mark.asyncio
    async def test_crawl_runs_to_completion(self, orchestrator, dispatcher, store, client_record):
        job = await orchestrator.start_crawl(client_record, "https://Example.com/about")

        assert job["status"] == "queued"
        assert job["domain"] == "example.com"
        assert job["start_url"] == "https://example.com/"
        assert dispatcher.calls[0][2] == f"crawl-{job['id']}"

        await dispatcher.run_all()

        done = await store.get_crawl_job(job["id"])
        assert done["status"] == "completed"
        assert done["pages_visited"] == 3
        assert done["pages_stored"] == 3
        assert done["chunks_stored"] >= 3
        assert done["total_pages_estimated"] == 4
        assert done["finished_at"] >= done["started_at"]

    @pytest.mark.asyncio
    async def test_invalid_domain_is_rejected_before_queueing(self, orchestrator, dispatcher, client_record):
        with pytest.raises(ValueError):
            await orchestrator.start_crawl(client_record, "   ")
        assert dispatcher.calls == []

    @pytest.mark.asyncio
    async def test_public_view(self, orchestrator, dispatcher, store, client_record):
        job = await orchestrator.start_crawl(client_record, "example.com")
        queued_view = await orchestrator.build_public_view(await store.get_crawl_job(job["id"]))
        assert queued_view["tokensUsed"] is None
        assert queued_view["percent"] is None

        await dispatcher.run_all()
        view = await orchestrator.build_public_view(await store.get_crawl_job(job["id"]))
        summary = await store.get_usage_summary(client_record["id"])

        assert view["jobType"] == "domain"
        assert view["origin"] == "example.com"
        assert view["status"] == "completed"
        assert view["percent"] == 75
        assert view["isActive"] is True
        assert view["tokensUsed"] == summary["totalTokens"] > 0
        assert view["finishedAt"] is not None

    @pytest.mark.asyncio
    async def test_unreachable_site_fails_the_job(self, store, embeddings, settings, estimate_cache,
                                                  dispatcher, client_record):
        fetcher = FakeFetcher()
        fetcher.responses["https://down.example/"] = ConnectionError("connection refused")
        orchestrator = CrawlJobOrchestrator(store, embeddings, settings, estimate_cache, dispatcher,
                                            crawler_factory=partial(WebCrawler, fetcher=fetcher))

        job = await orchestrator.start_crawl(client_record, "down.example")
        await dispatcher.run_all()

        failed = await store.get_crawl_job(job["id"])
        assert failed["status"] == "failed"
        assert "connection refused" in failed["error_message"]

    @pytest.mark.asyncio
    async def test_embedding_failures_do_not_fail_the_crawl(self, store, settings, estimate_cache,
                                                            dispatcher, site, client_record):
        embeddings = FakeEmbeddings(fail_with=EmbeddingAPIError("bad request", status=400))
        orchestrator = CrawlJobOrchestrator(store, embeddings, settings, estimate_cache, dispatcher,
                                            crawler_factory=partial(WebCrawler, fetcher=site),
                                            tokenizer=WordTokenizer())

        job = await orchestrator.start_crawl(client_record, "example.com")
        await dispatcher.run_all()

        done = await store.get_crawl_job(job["id"])
        assert done["status"] == "completed"
        assert done["pages_visited"] == 3
        assert done["pages_stored"] == 0

    @pytest.mark.asyncio
    async def test_crawl_reuses_estimated_pages(self, orchestrator, dispatcher, store, settings,
                                                estimate_cache, site, client_record):
        await estimate_cache.set({
            "meta": {
                "estimateId": "est-1",
                "signature": build_signature("example.com", settings),
                "domain": "example.com",
                "pagesEstimated": 10,
            },
            "pages": [{
                "url": "https://example.com/",
                "domain": "example.com",
                "cleanedText": paragraph("cached"),
                "links": ["https://example.com/about"],
            }],
        })

        job = await orchestrator.start_crawl(client_record, "example.com", estimate_id="est-1")
        await dispatcher.run_all()

        done = await store.get_crawl_job(job["id"])
        assert "https://example.com/" not in site.page_requests()
        assert done["status"] == "completed"
        assert done["total_pages_estimated"] == 10
        assert done["pages_visited"] == 2
        assert await estimate_cache.get_by_id("est-1") is None

    @pytest.mark.asyncio
    async def test_estimate_for_other_domain_is_ignored(self, orchestrator, dispatcher, store,
                                                        estimate_cache, site, client_record):
        await estimate_cache.set({
            "meta": {"estimateId": "est-2", "signature": "s", "domain": "other.org", "pagesEstimated": 9},
            "pages": [],
        })

        job = await orchestrator.start_crawl(client_record, "example.com", estimate_id="est-2")
        await dispatcher.run_all()

        done = await store.get_crawl_job(job["id"])
        assert "https://example.com/" in site.page_requests()
        assert done["total_pages_estimated"] == 4

    @pytest.mark.asyncio
    async def test_deactivate_job_hides_chunks(self, orchestrator, dispatcher, store, embeddings,
                                               client_record):
        job = await orchestrator.start_crawl(client_record, "example.com")
        await dispatcher.run_all()
        job = await store.get_crawl_job(job["id"])

        count = await orchestrator.deactivate_job(client_record, job)

        assert count == job["chunks_stored"]
        chunks = await orchestrator.list_job_chunks(client_record, job)
        assert len(chunks) == count
        assert not any(chunk["is_active"] for chunk in chunks)
        assert (await store.get_crawl_job(job["id"]))["is_active"] is False

    @pytest.mark.asyncio
    async def test_pages_stored_after_deactivation_stay_hidden(self, store, embeddings, settings,
                                                               estimate_cache, dispatcher, site,
                                                               client_record):
        settings.crawl.concurrency = 1
        fetcher = TriggeringFetcher(site, "https://example.com/pricing")
        orchestrator = CrawlJobOrchestrator(store, embeddings, settings, estimate_cache, dispatcher,
                                            crawler_factory=partial(WebCrawler, fetcher=fetcher),
                                            tokenizer=WordTokenizer())
        job = await orchestrator.start_crawl(client_record, "example.com")
        fetcher.on_trigger = partial(orchestrator.deactivate_job, client_record, job)

        await dispatcher.run_all()

        done = await store.get_crawl_job(job["id"])
        assert done["status"] == "completed"
        assert done["is_active"] is False
        assert done["pages_stored"] == 3
        results = await search_client_content(store, embeddings, client_record, "pricing0 pricing1",
                                              domain="example.com")
        assert results == []
        chunks = await orchestrator.list_job_chunks(client_record, done)
        pricing = [chunk for chunk in chunks if chunk["url"] == "https://example.com/pricing"]
        assert pricing
        assert not any(chunk["is_active"] for chunk in pricing)

    @pytest.mark.asyncio
    async def test_deactivation_during_embedding_hides_the_page(self, store, settings, estimate_cache,
                                                                dispatcher, site, client_record):
        settings.crawl.concurrency = 1
        embeddings = TriggeringEmbeddings("pricing0")
        orchestrator = CrawlJobOrchestrator(store, embeddings, settings, estimate_cache, dispatcher,
                                            crawler_factory=partial(WebCrawler, fetcher=site),
                                            tokenizer=WordTokenizer())
        job = await orchestrator.start_crawl(client_record, "example.com")
        embeddings.on_trigger = partial(orchestrator.deactivate_job, client_record, job)

        await dispatcher.run_all()
        embeddings.on_trigger = None

        chunks = await orchestrator.list_job_chunks(client_record, job)
        assert any(chunk["url"] == "https://example.com/pricing" for chunk in chunks)
        assert not any(chunk["is_active"] for chunk in chunks)
        assert await search_client_content(store, embeddings, client_record, "pricing0") == []


class TestDocumentIngestion:
    @pytest.mark.asyncio
    async def test_document_is_ingested(self, orchestrator, store, client_record):
        result = await orchestrator.ingest_documents(
            client_record, [UploadedDocument("Guide Book.md", long_document())]
        )

        assert result["domain"] == "example.com"
        entry = result["files"][0]
        assert entry["status"] == "ok"
        assert entry["chunksStored"] == entry["chunksCreated"] > 0

        job = await store.get_crawl_job(entry["jobId"])
        assert job["status"] == "completed"
        assert job["start_url"] == "file://example.com/Guide%20Book.md"
        assert (job["pages_visited"], job["pages_stored"]) == (1, 1)
        view = await orchestrator.build_public_view(job)
        assert view["jobType"] == "docs"
        assert view["origin"] == "Guide Book.md"
        assert view["percent"] == 100

    @pytest.mark.asyncio
    async def test_too_short_document_is_skipped_not_failed(self, orchestrator, store, client_record):
        result = await orchestrator.ingest_documents(
            client_record, [UploadedDocument("empty.txt", b"   ")], domain="docs.example.com"
        )

        entry = result["files"][0]
        assert result["domain"] == "docs.example.com"
        assert entry["status"] == "skipped"
        assert "too short" in entry["reason"]
        job = await store.get_crawl_job(entry["jobId"])
        assert job["status"] == "completed"
        assert job["pages_stored"] == 0

    @pytest.mark.asyncio
    async def test_files_are_processed_independently(self, orchestrator, store, client_record):
        result = await orchestrator.ingest_documents(client_record, [
            UploadedDocument("archive.zip", b"PK..."),
            UploadedDocument("notes.txt", long_document("notes")),
        ])

        failed, ok = result["files"]
        assert failed["status"] == "failed"
        assert "error" in failed
        assert (await store.get_crawl_job(failed["jobId"]))["status"] == "failed"
        assert ok["status"] == "ok"

    @pytest.mark.asyncio
    async def test_default_domain_without_main_domain(self, orchestrator, store):
        client = await store.create_client("No Domain", None, "text-embedding-3-small")
        result = await orchestrator.ingest_documents(client, [UploadedDocument("a.md", long_document())])
        assert result["domain"] == "uploaded-docs"

    @pytest.mark.asyncio
    async def test_deactivate_docs_job_only_touches_its_file(self, orchestrator, store, client_record):
        result = await orchestrator.ingest_documents(client_record, [
            UploadedDocument("a.md", long_document("alpha")),
            UploadedDocument("b.md", long_document("beta")),
        ])
        job_a = await store.get_crawl_job(result["files"][0]["jobId"])
        job_b = await store.get_crawl_job(result["files"][1]["jobId"])

        await orchestrator.deactivate_job(client_record, job_a)

        assert not any(c["is_active"] for c in await orchestrator.list_job_chunks(client_record, job_a))
        assert all(c["is_active"] for c in await orchestrator.list_job_chunks(client_record, job_b))


class TestJobDispatcher:
    @pytest.mark.asyncio
    async def test_dispatch_runs_coroutine(self):
        dispatcher = JobDispatcher()
        await dispatcher.initialize()
        done = asyncio.Event()
        received = []

        async def work(value):
            received.append(value)
            done.set()

        try:
            dispatcher.dispatch(work, 42, job_id="work-1")
            await asyncio.wait_for(done.wait(), timeout=5)
        finally:
            await dispatcher.shutdown()

        assert received == [42]
        assert not dispatcher.running

    def test_dispatch_requires_initialize(self):
        with pytest.raises(RuntimeError):
            JobDispatcher().dispatch(print)
