"""Semantic search over a client's active chunks."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from indexer.embeddings import DEFAULT_EMBEDDING_MODEL
from indexer.store import UsageOperation, clamp_search_limit
from observability.prometheus_metrics import record_search_metrics

logger = logging.getLogger(__name__)


def _iso(value) -> Optional[str]:
    return value.isoformat() if isinstance(value, datetime) else value


def format_search_result(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "clientId": row["client_id"],
        "domain": row["domain"],
        "url": row["url"],
        "chunkIndex": row["chunk_index"],
        "text": row["chunk_text"],
        "score": row["score"],
        "createdAt": _iso(row.get("created_at")),
    }


async def search_client_content(store,
                                embeddings,
                                client: Dict[str, Any],
                                query: str,
                                domain: Optional[str] = None,
                                limit: int = 10) -> List[Dict[str, Any]]:
    """Embed ``query`` with the client's model and return its nearest chunks.

    Results are ordered by ascending L2 distance, scored ``1 / (1 + distance)``.
    Embedding failures propagate to the caller.
    """
    model = client.get("embedding_model") or DEFAULT_EMBEDDING_MODEL
    limit = clamp_search_limit(limit)

    try:
        batch = await embeddings.embed_batch_with_usage([query], model)
        if batch.total_tokens > 0:
            await store.record_usage(client["id"], model, UsageOperation.SEARCH.value,
                                     batch.prompt_tokens, batch.total_tokens)

        rows = await store.search_chunks(client["id"], model, batch.vectors[0],
                                         domain=domain, limit=limit)
    except Exception as e:
        record_search_metrics(0, error=type(e).__name__)
        raise

    results = [format_search_result(row) for row in rows]
    record_search_metrics(len(results))
    logger.debug(f"Search for client {client['id']} returned {len(results)} results")
    return results
