"""Chunk, embed and store text on behalf of a client."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from config.settings import ChunkingConfig
from indexer.chunker import chunk_text
from indexer.embeddings import DEFAULT_EMBEDDING_MODEL
from indexer.store import UsageOperation

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    chunks_created: int = 0
    chunks_stored: int = 0


async def ingest_text_for_client(text: str,
                                 url: str,
                                 domain: str,
                                 client: Dict[str, Any],
                                 store,
                                 embeddings,
                                 chunking: ChunkingConfig,
                                 tokenizer=None,
                                 active: bool = True) -> IngestResult:
    """Chunk ``text``, embed all chunks in one call and upsert them.

    Chunks are written inactive when ``active`` is false. Embedding failures
    propagate; individual chunk write failures are logged and left out of
    ``chunks_stored``.
    """
    chunks = chunk_text(text, url, domain, chunking, tokenizer=tokenizer)
    if not chunks:
        return IngestResult()

    model = client.get("embedding_model") or DEFAULT_EMBEDDING_MODEL
    batch = await embeddings.embed_batch_with_usage([chunk.text for chunk in chunks], model)

    if batch.total_tokens > 0:
        await store.record_usage(client["id"], model, UsageOperation.INGEST.value,
                                 batch.prompt_tokens, batch.total_tokens)

    stored = 0
    for chunk, vector in zip(chunks, batch.vectors):
        try:
            await store.upsert_chunk(
                client_id=client["id"],
                model=model,
                domain=chunk.domain,
                url=chunk.url,
                chunk_index=chunk.chunk_index,
                chunk_text=chunk.text,
                chunk_hash=chunk.chunk_hash,
                embedding=vector,
                active=active,
            )
            stored += 1
        except Exception as e:
            logger.error(f"Failed to store chunk {chunk.chunk_index} of {url}: {e}")

    logger.debug(f"Ingested {url}: {stored}/{len(chunks)} chunks stored")
    return IngestResult(chunks_created=len(chunks), chunks_stored=stored)
