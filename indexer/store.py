"""Shared constants, errors and helpers for the storage adapters."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from indexer.embeddings import DEFAULT_EMBEDDING_MODEL, get_model_dimensions

MAX_ERROR_MESSAGE_LENGTH = 2000
MAX_PAGE_SIZE = 50
DEFAULT_PAGE_SIZE = 20
MAX_SEARCH_LIMIT = 50


class JobStatus(str, Enum):
    """Crawl job lifecycle states."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class UsageOperation(str, Enum):
    """Operations that consume embedding tokens."""
    INGEST = "embeddings_ingest"
    SEARCH = "embeddings_search"
    UPDATE = "embeddings_update"


class StoreError(Exception):
    """Base class for storage errors."""


class DuplicateDomainError(StoreError):
    """Raised when another client already owns the main domain."""

    def __init__(self, domain: str):
        super().__init__(f"Client with domain {domain} already exists")
        self.domain = domain


class DuplicateChunkError(StoreError):
    """Raised when an updated chunk collides with an existing chunk of the client."""


def is_valid_id(value: Any) -> bool:
    """True when ``value`` is a UUID string."""
    try:
        uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        return False
    return True


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clamp_error_message(message: Optional[str]) -> str:
    return (message or "Unknown error")[:MAX_ERROR_MESSAGE_LENGTH]


def clamp_page(page: Any) -> int:
    try:
        return max(1, int(page))
    except (TypeError, ValueError):
        return 1


def clamp_page_size(page_size: Any) -> int:
    try:
        return min(MAX_PAGE_SIZE, max(1, int(page_size)))
    except (TypeError, ValueError):
        return DEFAULT_PAGE_SIZE


def clamp_search_limit(limit: Any) -> int:
    try:
        return min(MAX_SEARCH_LIMIT, max(1, int(limit)))
    except (TypeError, ValueError):
        return 10


def chunk_table_for_model(model: Optional[str]) -> str:
    """Chunk table holding embeddings of ``model``'s dimension."""
    dimensions = get_model_dimensions(model or DEFAULT_EMBEDDING_MODEL)
    return "page_chunks_large" if dimensions > 1536 else "page_chunks_small"


def distance_to_score(distance: float) -> float:
    """Map an L2 distance onto (0, 1]; identical vectors score 1."""
    return 1.0 / (1.0 + float(distance))


def empty_usage_summary(client_id: str) -> Dict[str, Any]:
    return {
        "clientId": client_id,
        "totalPromptTokens": 0,
        "totalTokens": 0,
        "byModel": [],
        "byOperation": [],
    }
