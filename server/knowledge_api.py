"""HTTP API of the knowledge engine."""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, FastAPI, File, Form, Query, Response, UploadFile
from pydantic import BaseModel, Field

from config.database import db_factory
from config.settings import KnowledgeSettings, get_settings
from indexer.chunker import hash_chunk_text
from indexer.embeddings import DEFAULT_EMBEDDING_MODEL, EmbeddingClient
from indexer.store import DuplicateChunkError, DuplicateDomainError, UsageOperation, clamp_page, clamp_page_size
from observability.logging import setup_logging
from observability.prometheus_metrics import setup_prometheus_metrics
from pipelines.crawler import CrawlError
from server.errors import ConflictError, KnowledgeAPIError, NotFoundError, ValidationError, setup_error_handlers
from server.estimate_cache import EstimateCache
from server.estimates import EstimateService, UploadedDocument
from server.jobs import CrawlJobOrchestrator, JobDispatcher, job_type_for
from server.search_service import search_client_content
from server.security import require_internal_token, setup_cors

logger = logging.getLogger(__name__)

LARGE_EMBEDDING_MODEL = "text-embedding-3-large"
DEFAULT_USAGE_CLIENTS_LIMIT = 100
MAX_USAGE_CLIENTS_LIMIT = 1000


@dataclass
class KnowledgeServices:
    """Everything a request handler needs, wired once at startup."""
    settings: KnowledgeSettings
    store: Any
    embeddings: Any
    estimate_cache: EstimateCache
    dispatcher: Any
    estimates: EstimateService
    orchestrator: CrawlJobOrchestrator


def build_services(settings: KnowledgeSettings, store, embeddings, estimate_cache: EstimateCache,
                   dispatcher, crawler_factory=None, tokenizer=None) -> KnowledgeServices:
    extra = {"crawler_factory": crawler_factory} if crawler_factory else {}
    estimates = EstimateService(settings, estimate_cache, dispatcher=dispatcher,
                                tokenizer=tokenizer, **extra)
    orchestrator = CrawlJobOrchestrator(store, embeddings, settings, estimate_cache, dispatcher,
                                        tokenizer=tokenizer, **extra)
    return KnowledgeServices(
        settings=settings,
        store=store,
        embeddings=embeddings,
        estimate_cache=estimate_cache,
        dispatcher=dispatcher,
        estimates=estimates,
        orchestrator=orchestrator,
    )


app = FastAPI(title="Knowledge Engine API", version="0.1.0")
setup_error_handlers(app)
setup_prometheus_metrics(app)
setup_cors(app)

services: Optional[KnowledgeServices] = None


@app.on_event("startup")
async def startup_event():
    """Initialize database, estimate cache, embeddings client and job dispatcher."""
    global services

    settings = get_settings()
    setup_logging(
        level=settings.server.log_level,
        log_file=settings.server.log_file,
        use_json=settings.server.log_json,
    )

    try:
        store = await db_factory.initialize()
        logger.info(f"Database initialized: {type(store).__name__}")

        estimate_cache = EstimateCache.from_settings(settings.cache)
        dispatcher = JobDispatcher()
        await dispatcher.initialize()
        embeddings = EmbeddingClient(settings.embeddings)

        services = build_services(settings, store, embeddings, estimate_cache, dispatcher)
        logger.info("Knowledge engine started")
    except Exception as e:
        logger.error(f"Failed to initialize application: {e}")
        raise


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up resources on shutdown."""
    global services
    if services is None:
        return

    try:
        await services.dispatcher.shutdown()
    except Exception as e:
        logger.error(f"Error during job dispatcher shutdown: {e}")

    await services.embeddings.close()
    await services.estimate_cache.close()
    await db_factory.close()
    services = None
    logger.info("Knowledge engine stopped")


def get_services() -> KnowledgeServices:
    """Dependency returning the wired services."""
    if services is None:
        raise KnowledgeAPIError("Service not initialized", 503)
    return services


# Request models

class CreateClientRequest(BaseModel):
    name: Optional[str] = None
    mainDomain: Optional[str] = None
    embeddingModel: Optional[str] = None


class CrawlRequest(BaseModel):
    clientId: Optional[str] = None
    domain: Optional[str] = None
    estimateId: Optional[str] = None


class CrawlEstimateRequest(BaseModel):
    domain: Optional[str] = None
    run_async: bool = Field(False, alias="async")


class JobChunksRequest(BaseModel):
    clientId: Optional[str] = None
    jobId: Optional[str] = None


class UpdateChunkRequest(BaseModel):
    clientId: Optional[str] = None
    chunkId: Optional[str] = None
    text: Optional[str] = None


class DeleteChunkRequest(BaseModel):
    clientId: Optional[str] = None
    chunkId: Optional[str] = None


class SearchRequest(BaseModel):
    clientId: Optional[str] = None
    query: Optional[str] = None
    domain: Optional[str] = None
    limit: Optional[int] = None


# Helpers

def _iso(value) -> Optional[str]:
    return value.isoformat() if isinstance(value, datetime) else value


def client_view(client: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": client["id"],
        "name": client["name"],
        "mainDomain": client["main_domain"],
        "embeddingModel": client["embedding_model"],
        "createdAt": _iso(client.get("created_at")),
    }


def chunk_view(chunk: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": chunk["id"],
        "url": chunk["url"],
        "chunkIndex": chunk["chunk_index"],
        "text": chunk["chunk_text"],
        "isActive": bool(chunk["is_active"]),
        "createdAt": _iso(chunk.get("created_at")),
    }


def client_model(client: Dict[str, Any]) -> str:
    return client.get("embedding_model") or DEFAULT_EMBEDDING_MODEL


async def load_client(svc: KnowledgeServices, client_id: Optional[str]) -> Dict[str, Any]:
    if not client_id:
        raise ValidationError("clientId is required")
    client = await svc.store.get_client(client_id)
    if not client:
        raise NotFoundError("Client not found")
    return client


async def load_client_job(svc: KnowledgeServices, client: Dict[str, Any], job_id: Optional[str]) -> Dict[str, Any]:
    if not job_id:
        raise ValidationError("jobId is required")
    job = await svc.store.get_crawl_job(job_id)
    if not job or job["client_id"] != client["id"]:
        raise NotFoundError("Job not found")
    return job


def parse_date_param(value: Optional[str], field_name: str) -> Optional[datetime]:
    if not value:
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(f'Invalid date format for "{field_name}". Use ISO8601.') from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def resolve_usage_range(from_value: Optional[str], to_value: Optional[str],
                        period: Optional[str]) -> Tuple[Optional[datetime], Optional[datetime]]:
    start = parse_date_param(from_value, "from")
    end = parse_date_param(to_value, "to")
    if start is None and end is None and (period or "").lower() == "month":
        end = datetime.now(timezone.utc)
        start = end.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return start, end


def parse_usage_limit(value: Optional[str]) -> int:
    try:
        parsed = int(value) if value else 0
    except ValueError:
        parsed = 0
    if parsed <= 0:
        return DEFAULT_USAGE_CLIENTS_LIMIT
    return min(parsed, MAX_USAGE_CLIENTS_LIMIT)


async def read_uploads(files: Optional[List[UploadFile]], max_bytes: int) -> List[UploadedDocument]:
    if not files:
        raise ValidationError("files are required")
    documents = []
    for upload in files:
        data = await upload.read()
        if len(data) > max_bytes:
            raise ValidationError(f"File {upload.filename} exceeds the {max_bytes} byte upload limit")
        documents.append(UploadedDocument(filename=upload.filename or "upload", data=data))
    return documents


# Public routes

@app.get("/health")
async def health():
    svc = services
    database = "unavailable"
    cache = "disabled"
    if svc is not None:
        database = "ok" if await svc.store.ping() else "error"
        if svc.estimate_cache.enabled:
            cache = svc.estimate_cache.backend_name if await svc.estimate_cache.ping() else "error"
    return {"status": "healthy", "database": database, "cache": cache}


# Authenticated routes

api = APIRouter(dependencies=[Depends(require_internal_token)])


@api.post("/clients", status_code=201)
async def create_client(req: CreateClientRequest, svc: KnowledgeServices = Depends(get_services)):
    if not req.name:
        raise ValidationError("name is required")
    if not req.mainDomain:
        raise ValidationError("mainDomain is required")

    model = LARGE_EMBEDDING_MODEL if req.embeddingModel == LARGE_EMBEDDING_MODEL else DEFAULT_EMBEDDING_MODEL
    try:
        client = await svc.store.create_client(req.name, req.mainDomain, model)
    except DuplicateDomainError:
        raise ConflictError("mainDomain already exists for another client") from None

    logger.info(f"Created client {client['id']} for {req.mainDomain}")
    return {"client": client_view(client), "created": True}


@api.delete("/clients/{client_id}", status_code=204)
async def delete_client(client_id: str, svc: KnowledgeServices = Depends(get_services)):
    if not await svc.store.get_client(client_id):
        raise NotFoundError("Client not found")
    await svc.store.delete_client(client_id)
    logger.info(f"Deleted client {client_id}")
    return Response(status_code=204)


@api.post("/crawl", status_code=202)
async def start_crawl(req: CrawlRequest, svc: KnowledgeServices = Depends(get_services)):
    if not req.clientId or not req.domain:
        raise ValidationError("clientId and domain are required")
    client = await load_client(svc, req.clientId)

    try:
        job = await svc.orchestrator.start_crawl(client, req.domain, estimate_id=req.estimateId)
    except ValueError as e:
        raise ValidationError(str(e)) from None

    return {
        "status": "queued",
        "message": "Crawl started",
        "jobId": job["id"],
        "clientId": client["id"],
        "domain": job["domain"],
    }


@api.get("/crawl/jobs/{job_id}")
async def get_crawl_job(job_id: str, svc: KnowledgeServices = Depends(get_services)):
    job = await svc.store.get_crawl_job(job_id)
    if not job:
        raise NotFoundError("Job not found")
    return {"job": await svc.orchestrator.build_public_view(job)}


@api.get("/crawl/jobs")
async def list_crawl_jobs(clientId: Optional[str] = None,
                          page: Optional[str] = None,
                          pageSize: Optional[str] = None,
                          svc: KnowledgeServices = Depends(get_services)):
    client = await load_client(svc, clientId)
    jobs, total, page_number, page_size = await _list_jobs(svc, client["id"], page, pageSize)
    return {
        "page": page_number,
        "pageSize": page_size,
        "totalItems": total,
        "totalPages": max(1, math.ceil(total / page_size)),
        "jobs": [await svc.orchestrator.build_public_view(job) for job in jobs],
    }


async def _list_jobs(svc: KnowledgeServices, client_id: str, page, page_size):
    page_number = clamp_page(page or 1)
    size = clamp_page_size(page_size or 20)
    jobs, total = await svc.store.list_crawl_jobs(client_id, page_number, size)
    return jobs, total, page_number, size


@api.post("/estimate/crawl")
async def estimate_crawl(req: CrawlEstimateRequest, response: Response,
                         svc: KnowledgeServices = Depends(get_services)):
    if not req.domain:
        raise ValidationError("domain is required")

    try:
        if req.run_async:
            estimate_id = await svc.estimates.start_crawl_estimate(req.domain)
            response.status_code = 202
            return {"estimateId": estimate_id, "status": "running"}
        estimate = await svc.estimates.estimate_crawl(req.domain)
    except ValueError as e:
        raise ValidationError(str(e)) from None
    except CrawlError as e:
        raise KnowledgeAPIError(f"Estimate failed: {e}", 502) from None

    return {"estimate": estimate}


@api.get("/estimate/crawl/{estimate_id}")
async def get_crawl_estimate(estimate_id: str, svc: KnowledgeServices = Depends(get_services)):
    status = await svc.estimates.get_crawl_estimate_status(estimate_id)
    if status is None:
        raise NotFoundError("Estimate not found")
    return status


@api.post("/estimate/docs")
async def estimate_docs(clientId: Optional[str] = Form(None),
                        domain: Optional[str] = Form(None),
                        files: Optional[List[UploadFile]] = File(None),
                        svc: KnowledgeServices = Depends(get_services)):
    await load_client(svc, clientId)
    documents = await read_uploads(files, svc.settings.server.max_upload_bytes)
    return {"estimate": svc.estimates.estimate_documents(documents)}


@api.post("/ingest-docs")
async def ingest_docs(clientId: Optional[str] = Form(None),
                      domain: Optional[str] = Form(None),
                      files: Optional[List[UploadFile]] = File(None),
                      svc: KnowledgeServices = Depends(get_services)):
    client = await load_client(svc, clientId)
    documents = await read_uploads(files, svc.settings.server.max_upload_bytes)
    return await svc.orchestrator.ingest_documents(client, documents, domain=domain or None)


@api.post("/chunks/deactivate")
async def deactivate_job_chunks(req: JobChunksRequest, svc: KnowledgeServices = Depends(get_services)):
    client = await load_client(svc, req.clientId)
    job = await load_client_job(svc, client, req.jobId)
    count = await svc.orchestrator.deactivate_job(client, job)
    return {"status": "ok", "jobId": job["id"], "jobType": job_type_for(job), "deactivated": count}


@api.get("/chunks/by-job")
async def chunks_by_job(clientId: Optional[str] = None,
                        jobId: Optional[str] = None,
                        svc: KnowledgeServices = Depends(get_services)):
    client = await load_client(svc, clientId)
    job = await load_client_job(svc, client, jobId)
    chunks = await svc.orchestrator.list_job_chunks(client, job)
    return {"jobId": job["id"], "jobType": job_type_for(job), "chunks": [chunk_view(c) for c in chunks]}


@api.post("/chunks/update")
async def update_chunk(req: UpdateChunkRequest, svc: KnowledgeServices = Depends(get_services)):
    client = await load_client(svc, req.clientId)
    if not req.chunkId:
        raise ValidationError("chunkId is required")
    text = (req.text or "").strip()
    if not text:
        raise ValidationError("text is required")

    model = client_model(client)
    if not await svc.store.get_chunk(client["id"], model, req.chunkId):
        raise NotFoundError("Chunk not found")

    batch = await svc.embeddings.embed_batch_with_usage([text], model)
    if batch.total_tokens > 0:
        await svc.store.record_usage(client["id"], model, UsageOperation.UPDATE.value,
                                     batch.prompt_tokens, batch.total_tokens)

    try:
        chunk = await svc.store.update_chunk(client["id"], model, req.chunkId, text,
                                             hash_chunk_text(text), batch.vectors[0])
    except DuplicateChunkError as e:
        raise ConflictError(str(e)) from None
    if not chunk:
        raise NotFoundError("Chunk not found")
    return {"chunk": chunk_view(chunk)}


@api.post("/chunks/delete")
async def delete_chunk(req: DeleteChunkRequest, svc: KnowledgeServices = Depends(get_services)):
    client = await load_client(svc, req.clientId)
    if not req.chunkId:
        raise ValidationError("chunkId is required")
    if not await svc.store.delete_chunk(client["id"], client_model(client), req.chunkId):
        raise NotFoundError("Chunk not found")
    return {"status": "deleted", "chunkId": req.chunkId}


@api.post("/search")
async def search(req: SearchRequest, svc: KnowledgeServices = Depends(get_services)):
    if not req.clientId or not req.query:
        raise ValidationError("clientId and query are required")
    client = await load_client(svc, req.clientId)
    results = await search_client_content(
        svc.store, svc.embeddings, client, req.query,
        domain=req.domain or None, limit=req.limit if req.limit is not None else 10
    )
    return {"results": results}


@api.get("/usage")
async def usage(clientId: Optional[str] = None,
                from_: Optional[str] = Query(None, alias="from"),
                to: Optional[str] = None,
                period: Optional[str] = None,
                svc: KnowledgeServices = Depends(get_services)):
    client = await load_client(svc, clientId)
    start, end = resolve_usage_range(from_, to, period)
    return await svc.store.get_usage_summary(client["id"], start, end)


@api.get("/usage/clients")
async def usage_clients(limit: Optional[str] = None,
                        from_: Optional[str] = Query(None, alias="from"),
                        to: Optional[str] = None,
                        period: Optional[str] = None,
                        svc: KnowledgeServices = Depends(get_services)):
    start, end = resolve_usage_range(from_, to, period)
    clients = await svc.store.get_usage_for_all_clients(parse_usage_limit(limit), start, end)
    return {"clients": clients}


app.include_router(api)
