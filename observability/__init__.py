"""Observability package for the knowledge engine."""

from .logging import setup_logging, log_context
from .prometheus_metrics import (
    setup_prometheus_metrics,
    record_crawl_page,
    record_job_transition,
    record_embedding_request,
    record_embedding_retry,
    record_cache_lookup,
    record_search_metrics,
    PrometheusMiddleware,
    knowledge_registry
)

__all__ = [
    'setup_logging',
    'log_context',
    'setup_prometheus_metrics',
    'record_crawl_page',
    'record_job_transition',
    'record_embedding_request',
    'record_embedding_retry',
    'record_cache_lookup',
    'record_search_metrics',
    'PrometheusMiddleware',
    'knowledge_registry'
]
