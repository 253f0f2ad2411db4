"""Prometheus metrics integration for the knowledge engine API."""

from prometheus_client import Counter, Histogram, Info, generate_latest, CONTENT_TYPE_LATEST
from prometheus_client.core import CollectorRegistry
from fastapi import FastAPI, Request, Response
import re
import time
from typing import Optional
import logging
import os

logger = logging.getLogger(__name__)

# Create custom registry for knowledge engine metrics
knowledge_registry = CollectorRegistry()

# Request metrics
request_count = Counter(
    'knowledge_http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=knowledge_registry
)

request_duration = Histogram(
    'knowledge_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=knowledge_registry
)

# Crawl metrics
crawl_pages = Counter(
    'knowledge_crawl_pages_total',
    'Pages handled by the crawler',
    ['outcome'],
    registry=knowledge_registry
)

job_transitions = Counter(
    'knowledge_job_transitions_total',
    'Crawl job lifecycle transitions',
    ['job_type', 'status'],
    registry=knowledge_registry
)

# Embedding metrics
embedding_requests = Counter(
    'knowledge_embedding_requests_total',
    'Embedding API requests',
    ['model', 'status'],
    registry=knowledge_registry
)

embedding_retries = Counter(
    'knowledge_embedding_retries_total',
    'Embedding API requests retried after a transient error',
    ['model'],
    registry=knowledge_registry
)

embedding_duration = Histogram(
    'knowledge_embedding_duration_seconds',
    'Embedding API request duration in seconds',
    ['model'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=knowledge_registry
)

# Cache metrics
estimate_cache_lookups = Counter(
    'knowledge_estimate_cache_lookups_total',
    'Estimate cache lookups by result',
    ['result'],
    registry=knowledge_registry
)

# Search metrics
search_requests = Counter(
    'knowledge_search_requests_total',
    'Total number of search requests',
    ['status'],
    registry=knowledge_registry
)

search_results_count = Histogram(
    'knowledge_search_results_count',
    'Number of search results returned',
    buckets=[0, 1, 5, 10, 25, 50],
    registry=knowledge_registry
)

# Application info
app_info = Info(
    'knowledge_app_info',
    'Knowledge engine application information',
    registry=knowledge_registry
)

UUID_PATTERN = re.compile(r'/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}')
HASH_PATTERN = re.compile(r'/[a-f0-9]{32,}')


class PrometheusMiddleware:
    """Middleware to collect Prometheus metrics for HTTP requests."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        method = request.method
        endpoint = self._normalize_endpoint(request.url.path)
        start_time = time.time()
        status_code = 500

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            request_count.labels(
                method=method,
                endpoint=endpoint,
                status_code=str(status_code)
            ).inc()
            request_duration.labels(method=method, endpoint=endpoint).observe(time.time() - start_time)

    def _normalize_endpoint(self, path: str) -> str:
        """Normalize endpoint path to reduce cardinality."""
        path = UUID_PATTERN.sub('/{uuid}', path)
        return HASH_PATTERN.sub('/{hash}', path)


def setup_prometheus_metrics(app: FastAPI) -> None:
    """Setup Prometheus metrics collection for FastAPI app."""
    app.add_middleware(PrometheusMiddleware)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint():
        """Prometheus metrics endpoint."""
        return Response(generate_latest(knowledge_registry), media_type=CONTENT_TYPE_LATEST)

    app_info.info({
        'version': os.getenv('APP_VERSION', 'unknown'),
        'environment': os.getenv('ENVIRONMENT', 'development'),
    })

    logger.info("Prometheus metrics configured")


def record_crawl_page(outcome: str) -> None:
    """Count a crawled page as ``stored``, ``short``, ``failed`` or ``skipped``."""
    crawl_pages.labels(outcome=outcome).inc()


def record_job_transition(job_type: str, status: str) -> None:
    job_transitions.labels(job_type=job_type, status=status).inc()


def record_embedding_request(model: str, status: str, duration: Optional[float] = None) -> None:
    embedding_requests.labels(model=model, status=status).inc()
    if duration is not None:
        embedding_duration.labels(model=model).observe(duration)


def record_embedding_retry(model: str) -> None:
    embedding_retries.labels(model=model).inc()


def record_cache_lookup(hit: bool) -> None:
    estimate_cache_lookups.labels(result="hit" if hit else "miss").inc()


def record_search_metrics(result_count: int, error: Optional[str] = None) -> None:
    """Record search-related metrics."""
    search_requests.labels(status="error" if error else "success").inc()
    if not error:
        search_results_count.observe(result_count)
