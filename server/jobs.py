"""Crawl job orchestration.

Background work runs on an APScheduler ``AsyncIOScheduler`` so HTTP handlers
return as soon as a job is queued. Every state change is written straight to
the job store; failures are recorded on the job and never escape into the
scheduler.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote, unquote, urlparse

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config.settings import KnowledgeSettings
from indexer.embeddings import DEFAULT_EMBEDDING_MODEL
from indexer.store import JobStatus
from observability.logging import log_context
from observability.prometheus_metrics import record_job_transition
from pipelines.crawler import WebCrawler
from pipelines.extract import DocumentExtractionError, UnsupportedDocumentError, extract_clean_text
from pipelines.html_ingest import ParsedPage
from pipelines.ingest import ingest_text_for_client
from pipelines.urls import extract_domain, normalize_domain_to_start_url
from server.estimate_cache import EstimateCache
from server.estimates import UploadedDocument, page_from_cache, too_short_reason

logger = logging.getLogger(__name__)

JOB_TYPE_DOMAIN = "domain"
JOB_TYPE_DOCS = "docs"
DEFAULT_DOCS_DOMAIN = "uploaded-docs"
DOCUMENT_NAME_SAFE_CHARS = "-_.!~*'()"


class JobDispatcher:
    """Runs coroutines in the background through APScheduler."""

    def __init__(self):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def initialize(self):
        """Create and start the scheduler on the running event loop."""
        self.scheduler = AsyncIOScheduler(
            executors={'default': AsyncIOExecutor()},
            job_defaults={
                'coalesce': False,
                'max_instances': 1,
                'misfire_grace_time': None,
            },
            timezone=timezone.utc,
        )
        self.scheduler.add_listener(self._job_executed, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(self._job_error, EVENT_JOB_ERROR)
        self.scheduler.start()
        self._running = True
        logger.info("Job dispatcher started")

    async def shutdown(self):
        self._running = False
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Job dispatcher shutdown complete")

    def dispatch(self, func: Callable, *args, job_id: Optional[str] = None) -> str:
        """Run ``func(*args)`` as soon as possible."""
        if not self._running:
            raise RuntimeError("Job dispatcher not initialized")
        job = self.scheduler.add_job(func, 'date', args=list(args), id=job_id)
        logger.debug(f"Dispatched background job {job.id}")
        return job.id

    def _job_executed(self, event):
        logger.debug(f"Background job {event.job_id} finished")

    def _job_error(self, event):
        logger.error(f"Background job {event.job_id} failed: {event.exception}")


def job_type_for(job: Dict[str, Any]) -> str:
    """``docs`` for ``file://`` jobs, ``domain`` otherwise."""
    return JOB_TYPE_DOCS if (job.get("start_url") or "").startswith("file://") else JOB_TYPE_DOMAIN


def document_url(domain: str, filename: str) -> str:
    return f"file://{domain}/{quote(filename, safe=DOCUMENT_NAME_SAFE_CHARS)}"


def job_origin(job: Dict[str, Any]) -> str:
    """Human label: the domain, or the uploaded file name for docs jobs."""
    if job_type_for(job) == JOB_TYPE_DOCS:
        path = urlparse(job["start_url"]).path
        name = unquote(path.rsplit("/", 1)[-1])
        return name or job.get("domain", "")
    return job.get("domain", "")


def job_percent(job: Dict[str, Any]) -> Optional[int]:
    total = job.get("total_pages_estimated")
    if not total or total <= 0:
        return None
    percent = math.floor((job.get("pages_visited") or 0) / total * 100)
    return max(0, min(100, percent))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class CrawlJobOrchestrator:
    """Creates jobs and drives crawls and document ingestion to a terminal state."""

    def __init__(self,
                 store,
                 embeddings,
                 settings: KnowledgeSettings,
                 estimate_cache: EstimateCache,
                 dispatcher: JobDispatcher,
                 crawler_factory: Callable[..., WebCrawler] = WebCrawler,
                 tokenizer=None):
        self.store = store
        self.embeddings = embeddings
        self.settings = settings
        self.estimate_cache = estimate_cache
        self.dispatcher = dispatcher
        self.crawler_factory = crawler_factory
        self.tokenizer = tokenizer

    async def start_crawl(self, client: Dict[str, Any], domain_input: str,
                          estimate_id: Optional[str] = None) -> Dict[str, Any]:
        """Queue a crawl of ``domain_input`` for ``client`` and return the job.

        Raises:
            ValueError: if the domain is invalid
        """
        start_url = normalize_domain_to_start_url(domain_input)
        domain = extract_domain(start_url)
        job = await self.store.create_crawl_job(client["id"], domain, start_url)
        record_job_transition(JOB_TYPE_DOMAIN, JobStatus.QUEUED.value)

        self.dispatcher.dispatch(self.run_crawl_job, job["id"], client, start_url, estimate_id,
                                 job_id=f"crawl-{job['id']}")
        logger.info(f"Queued crawl job {job['id']} for client {client['id']} domain {domain}")
        return job

    async def _seed_from_estimate(self, job_id: str, domain: str, estimate_id: str):
        cached = await self.estimate_cache.consume_by_id(estimate_id)
        if cached is None:
            logger.info(f"Estimate {estimate_id} not found in cache, crawling from scratch")
            return None, None

        meta = cached["meta"]
        if (meta.get("domain") or "").lower() != domain.lower():
            logger.warning(f"Estimate {estimate_id} is for {meta.get('domain')}, not {domain}; ignoring")
            return None, None

        pages = [page_from_cache(page) for page in cached.get("pages") or []]
        initial_total = min(self.settings.crawl.max_pages, int(meta.get("pagesEstimated") or 0))
        if initial_total > 0:
            await self.store.update_crawl_job_totals(job_id, initial_total)
        logger.info(f"Seeding job {job_id} with {len(pages)} pages from estimate {estimate_id}")
        return pages, initial_total

    async def run_crawl_job(self, job_id: str, client: Dict[str, Any], start_url: str,
                            estimate_id: Optional[str] = None) -> None:
        domain = extract_domain(start_url)
        with log_context(job_id=job_id, client_id=client["id"], domain=domain):
            await self._run_crawl(job_id, client, start_url, domain, estimate_id)

    async def _run_crawl(self, job_id: str, client: Dict[str, Any], start_url: str, domain: str,
                         estimate_id: Optional[str]) -> None:
        try:
            await self.store.mark_crawl_job_running(job_id)
            record_job_transition(JOB_TYPE_DOMAIN, JobStatus.RUNNING.value)

            seed_pages, initial_total = None, None
            if estimate_id:
                seed_pages, initial_total = await self._seed_from_estimate(job_id, domain, estimate_id)

            async def on_page(page: ParsedPage) -> int:
                result = await self._ingest_for_job(
                    job_id, client, page.cleaned_text, page.url, page.domain or domain
                )
                return result.chunks_stored

            async def on_totals_known(total: int) -> None:
                await self.store.update_crawl_job_totals(job_id, total)

            async def on_progress(pages_visited: int, pages_stored: int, chunks_stored: int) -> None:
                await self.store.update_crawl_job_progress(job_id, pages_visited, pages_stored, chunks_stored)

            crawler = self.crawler_factory(self.settings.crawl)
            async with crawler:
                stats = await crawler.crawl(
                    start_url,
                    on_page=on_page,
                    on_totals_known=on_totals_known,
                    on_progress=on_progress,
                    seed_pages=seed_pages,
                    initial_total=initial_total,
                )

            await self.store.mark_crawl_job_completed(
                job_id, stats.pages_visited, stats.pages_stored, stats.chunks_stored
            )
            record_job_transition(JOB_TYPE_DOMAIN, JobStatus.COMPLETED.value)
            logger.info(f"Crawl job {job_id} completed: {stats.pages_stored} pages, "
                        f"{stats.chunks_stored} chunks")

        except Exception as e:
            logger.exception(f"Crawl job {job_id} failed: {e}")
            await self._fail_job(job_id, JOB_TYPE_DOMAIN, str(e) or type(e).__name__)

    async def _job_is_active(self, job_id: str) -> bool:
        job = await self.store.get_crawl_job(job_id)
        return bool(job and job.get("is_active", True))

    async def _ingest_for_job(self, job_id: str, client: Dict[str, Any], text: str,
                              url: str, domain: str):
        """Ingest text for a job; chunks of a deactivated job are stored inactive."""
        active = await self._job_is_active(job_id)
        result = await ingest_text_for_client(
            text, url, domain, client, self.store, self.embeddings,
            self.settings.chunking, tokenizer=self.tokenizer, active=active
        )
        if active and result.chunks_stored and not await self._job_is_active(job_id):
            # Deactivated while this text was being embedded
            model = client.get("embedding_model") or DEFAULT_EMBEDDING_MODEL
            await self.store.deactivate_chunks_by_url(client["id"], model, url)
        return result

    async def _fail_job(self, job_id: str, job_type: str, message: str) -> None:
        try:
            await self.store.mark_crawl_job_failed(job_id, message)
            record_job_transition(job_type, JobStatus.FAILED.value)
        except Exception as e:
            logger.error(f"Could not mark job {job_id} as failed: {e}")

    async def ingest_documents(self, client: Dict[str, Any], files: List[UploadedDocument],
                               domain: Optional[str] = None) -> Dict[str, Any]:
        """Ingest uploaded files, one job per file; files are processed independently."""
        source_domain = domain or client.get("main_domain") or DEFAULT_DOCS_DOMAIN
        results = []
        for document in files:
            with log_context(client_id=client["id"], document=document.filename):
                results.append(await self._ingest_document(client, source_domain, document))
        return {"clientId": client["id"], "domain": source_domain, "files": results}

    async def _ingest_document(self, client: Dict[str, Any], domain: str,
                               document: UploadedDocument) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "fileName": document.filename,
            "jobId": None,
            "status": "failed",
            "chunksCreated": 0,
            "chunksStored": 0,
        }
        url = document_url(domain, document.filename)
        min_chars = self.settings.crawl.min_chars

        try:
            job = await self.store.create_crawl_job(client["id"], domain, url, total_pages_estimated=1)
            result["jobId"] = job["id"]
            await self.store.mark_crawl_job_running(job["id"])
            record_job_transition(JOB_TYPE_DOCS, JobStatus.RUNNING.value)
        except Exception as e:
            logger.error(f"Could not create job for {document.filename}: {e}")
            result["error"] = str(e) or type(e).__name__
            return result

        job_id = job["id"]
        try:
            text = extract_clean_text(document.data, document.filename)

            if len(text) < min_chars:
                await self.store.mark_crawl_job_completed(job_id, 1, 0, 0)
                record_job_transition(JOB_TYPE_DOCS, JobStatus.COMPLETED.value)
                result.update(status="skipped", reason=too_short_reason(len(text), min_chars))
                return result

            ingest = await self._ingest_for_job(job_id, client, text, url, domain)
            result["chunksCreated"] = ingest.chunks_created
            result["chunksStored"] = ingest.chunks_stored

            pages_stored = 1 if ingest.chunks_stored > 0 else 0
            await self.store.mark_crawl_job_completed(job_id, 1, pages_stored, ingest.chunks_stored)
            record_job_transition(JOB_TYPE_DOCS, JobStatus.COMPLETED.value)

            if ingest.chunks_created == 0:
                result.update(status="skipped", reason="No chunks produced from document")
            else:
                result["status"] = "ok"
            return result

        except (UnsupportedDocumentError, DocumentExtractionError) as e:
            logger.warning(f"Could not extract {document.filename}: {e}")
            result["error"] = str(e)
        except Exception as e:
            logger.exception(f"Failed to ingest {document.filename}: {e}")
            result["error"] = str(e) or type(e).__name__

        await self._fail_job(job_id, JOB_TYPE_DOCS, result["error"])
        return result

    async def deactivate_job(self, client: Dict[str, Any], job: Dict[str, Any]) -> int:
        """Deactivate the chunks a job produced and clear its active flag."""
        model = client.get("embedding_model") or DEFAULT_EMBEDDING_MODEL
        if job_type_for(job) == JOB_TYPE_DOCS:
            count = await self.store.deactivate_chunks_by_url(client["id"], model, job["start_url"])
        else:
            count = await self.store.deactivate_chunks_by_domain(client["id"], model, job["domain"])
        await self.store.mark_crawl_job_deactivated(job["id"])
        logger.info(f"Deactivated {count} chunks for job {job['id']}")
        return count

    async def list_job_chunks(self, client: Dict[str, Any], job: Dict[str, Any]) -> List[Dict[str, Any]]:
        model = client.get("embedding_model") or DEFAULT_EMBEDDING_MODEL
        if job_type_for(job) == JOB_TYPE_DOCS:
            return await self.store.list_chunks_by_url(client["id"], model, job["start_url"])
        return await self.store.list_chunks_by_domain(client["id"], model, job["domain"])

    async def build_public_view(self, job: Dict[str, Any]) -> Dict[str, Any]:
        """Job as exposed by the HTTP API."""
        tokens_used = None
        started_at = job.get("started_at")
        if started_at:
            finished_at = job.get("finished_at") or datetime.now(timezone.utc)
            tokens_used = await self.store.sum_client_tokens_used_between(
                job["client_id"], started_at, finished_at
            )

        return {
            "id": job["id"],
            "clientId": job["client_id"],
            "status": job["status"],
            "jobType": job_type_for(job),
            "origin": job_origin(job),
            "domain": job["domain"],
            "startUrl": job["start_url"],
            "isActive": bool(job.get("is_active", True)),
            "pagesVisited": job.get("pages_visited") or 0,
            "pagesStored": job.get("pages_stored") or 0,
            "chunksStored": job.get("chunks_stored") or 0,
            "totalPagesEstimated": job.get("total_pages_estimated"),
            "percent": job_percent(job),
            "errorMessage": job.get("error_message"),
            "tokensUsed": tokens_used,
            "createdAt": _iso(job.get("created_at")),
            "startedAt": _iso(started_at),
            "finishedAt": _iso(job.get("finished_at")),
            "updatedAt": _iso(job.get("updated_at")),
        }
