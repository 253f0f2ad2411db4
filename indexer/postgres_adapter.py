"""PostgreSQL database adapter for the knowledge engine.

Stores tenants, crawl jobs, embedded chunks and token usage. Chunk
embeddings live in pgvector columns; the table is chosen by the tenant's
embedding model (1536 or 3072 dimensions).
"""

import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import asyncpg
from pydantic import BaseModel

from indexer.store import (
    DuplicateChunkError,
    DuplicateDomainError,
    chunk_table_for_model,
    clamp_error_message,
    clamp_page,
    clamp_page_size,
    clamp_search_limit,
    distance_to_score,
    empty_usage_summary,
    is_valid_id,
)

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "postgres_schema.sql"

JOB_COLUMNS = """
    id, client_id, domain, start_url, status, is_active, total_pages_estimated,
    pages_visited, pages_stored, chunks_stored, error_message,
    created_at, started_at, finished_at, updated_at
"""

CHUNK_COLUMNS = "id, client_id, domain, url, chunk_index, chunk_text, chunk_hash, is_active, created_at"


class PostgresConfig(BaseModel):
    """PostgreSQL connection configuration."""
    dsn: Optional[str] = None
    host: str = "localhost"
    port: int = 5432
    database: str = "knowledge"
    user: str = "knowledge"
    password: str = ""
    min_connections: int = 2
    max_connections: int = 10
    command_timeout: int = 60


def _record(row) -> Optional[Dict[str, Any]]:
    """asyncpg record to dict with UUIDs rendered as strings."""
    if row is None:
        return None
    result = dict(row)
    for key, value in result.items():
        if isinstance(value, uuid.UUID):
            result[key] = str(value)
    return result


def _vector_literal(embedding: Sequence[float]) -> str:
    return "[" + ",".join(repr(float(x)) for x in embedding) + "]"


def _vector_expression(table: str, param: str) -> Tuple[str, str]:
    """Column and parameter expressions used for the L2 distance in ``table``."""
    if table == "page_chunks_large":
        return "embedding::halfvec(3072)", f"{param}::halfvec(3072)"
    return "embedding", f"{param}::vector"


class PostgresAdapter:
    """PostgreSQL database adapter with pgvector support."""

    def __init__(self, config: PostgresConfig):
        self.config = config
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        """Initialize connection pool and ensure schema exists."""
        try:
            if self.config.dsn:
                connect_kwargs = {"dsn": self.config.dsn}
            else:
                connect_kwargs = {
                    "host": self.config.host,
                    "port": self.config.port,
                    "database": self.config.database,
                    "user": self.config.user,
                    "password": self.config.password,
                }
            self.pool = await asyncpg.create_pool(
                min_size=self.config.min_connections,
                max_size=self.config.max_connections,
                command_timeout=self.config.command_timeout,
                **connect_kwargs
            )
            logger.info("PostgreSQL connection pool initialized")

            await self.execute_schema(str(SCHEMA_PATH))

        except Exception as e:
            logger.error(f"Failed to initialize PostgreSQL: {e}")
            raise

    async def close(self):
        """Close connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("PostgreSQL connection pool closed")

    async def execute_schema(self, schema_path: str):
        """Execute schema SQL file."""
        with open(schema_path, 'r', encoding='utf-8') as f:
            schema_sql = f.read()

        async with self.pool.acquire() as conn:
            await conn.execute(schema_sql)
        logger.info(f"Schema executed from {schema_path}")

    async def ping(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception as e:
            logger.warning(f"PostgreSQL health check failed: {e}")
            return False

    # Clients

    async def create_client(self, name: str, main_domain: Optional[str],
                            embedding_model: str) -> Dict[str, Any]:
        """Create a tenant.

        Raises:
            DuplicateDomainError: if another client already owns ``main_domain``
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO clients (name, main_domain, embedding_model)
                    VALUES ($1, $2, $3)
                    RETURNING id, name, main_domain, embedding_model, created_at
                    """,
                    name, main_domain, embedding_model
                )
        except asyncpg.UniqueViolationError:
            raise DuplicateDomainError(main_domain) from None
        return _record(row)

    async def get_client(self, client_id: str) -> Optional[Dict[str, Any]]:
        if not is_valid_id(client_id):
            return None
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT id, name, main_domain, embedding_model, created_at FROM clients WHERE id = $1",
                client_id
            )
        return _record(row)

    async def delete_client(self, client_id: str) -> bool:
        """Delete a tenant together with its jobs, chunks and usage."""
        if not is_valid_id(client_id):
            return False
        async with self.pool.acquire() as conn:
            deleted = await conn.fetchval(
                "DELETE FROM clients WHERE id = $1 RETURNING id", client_id
            )
        return deleted is not None

    # Crawl jobs

    async def create_crawl_job(self, client_id: str, domain: str, start_url: str,
                               total_pages_estimated: Optional[int] = None) -> Dict[str, Any]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO crawl_jobs (client_id, domain, start_url, status, total_pages_estimated)
                VALUES ($1, $2, $3, 'queued', $4)
                RETURNING {JOB_COLUMNS}
                """,
                client_id, domain, start_url, total_pages_estimated
            )
        return _record(row)

    async def get_crawl_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        if not is_valid_id(job_id):
            return None
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {JOB_COLUMNS} FROM crawl_jobs WHERE id = $1", job_id
            )
        return _record(row)

    async def list_crawl_jobs(self, client_id: str, page: int = 1,
                              page_size: int = 20) -> Tuple[List[Dict[str, Any]], int]:
        """One page of a client's jobs, newest first, plus the total count."""
        page = clamp_page(page)
        page_size = clamp_page_size(page_size)
        if not is_valid_id(client_id):
            return [], 0

        async with self.pool.acquire() as conn:
            total = await conn.fetchval(
                "SELECT COUNT(*) FROM crawl_jobs WHERE client_id = $1", client_id
            )
            rows = await conn.fetch(
                f"""
                SELECT {JOB_COLUMNS} FROM crawl_jobs
                WHERE client_id = $1
                ORDER BY created_at DESC, id DESC
                LIMIT $2 OFFSET $3
                """,
                client_id, page_size, (page - 1) * page_size
            )
        return [_record(row) for row in rows], int(total or 0)

    async def mark_crawl_job_running(self, job_id: str):
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE crawl_jobs
                SET status = 'running',
                    started_at = COALESCE(started_at, NOW()),
                    updated_at = NOW()
                WHERE id = $1
                """,
                job_id
            )

    async def update_crawl_job_totals(self, job_id: str, total_pages_estimated: int):
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE crawl_jobs
                SET total_pages_estimated = $2, updated_at = NOW()
                WHERE id = $1
                """,
                job_id, total_pages_estimated
            )

    async def update_crawl_job_progress(self, job_id: str, pages_visited: int,
                                        pages_stored: int, chunks_stored: int):
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE crawl_jobs
                SET pages_visited = $2, pages_stored = $3, chunks_stored = $4,
                    updated_at = NOW()
                WHERE id = $1
                """,
                job_id, pages_visited, pages_stored, chunks_stored
            )

    async def mark_crawl_job_completed(self, job_id: str,
                                       pages_visited: Optional[int] = None,
                                       pages_stored: Optional[int] = None,
                                       chunks_stored: Optional[int] = None):
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE crawl_jobs
                SET status = 'completed',
                    pages_visited = COALESCE($2, pages_visited),
                    pages_stored = COALESCE($3, pages_stored),
                    chunks_stored = COALESCE($4, chunks_stored),
                    started_at = COALESCE(started_at, NOW()),
                    finished_at = GREATEST(NOW(), COALESCE(started_at, NOW())),
                    updated_at = NOW()
                WHERE id = $1
                """,
                job_id, pages_visited, pages_stored, chunks_stored
            )

    async def mark_crawl_job_failed(self, job_id: str, error_message: str):
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE crawl_jobs
                SET status = 'failed',
                    error_message = $2,
                    started_at = COALESCE(started_at, NOW()),
                    finished_at = GREATEST(NOW(), COALESCE(started_at, NOW())),
                    updated_at = NOW()
                WHERE id = $1
                """,
                job_id, clamp_error_message(error_message)
            )

    async def mark_crawl_job_deactivated(self, job_id: str):
        async with self.pool.acquire() as conn:
            await conn.execute(
                "UPDATE crawl_jobs SET is_active = FALSE, updated_at = NOW() WHERE id = $1",
                job_id
            )

    # Chunks

    async def upsert_chunk(self, client_id: str, model: str, domain: str, url: str,
                           chunk_index: int, chunk_text: str, chunk_hash: str,
                           embedding: Sequence[float], active: bool = True) -> str:
        """Insert a chunk of the client.

        An identical existing chunk is re-activated when ``active`` is true and
        left as it is otherwise.
        """
        table = chunk_table_for_model(model)
        async with self.pool.acquire() as conn:
            chunk_id = await conn.fetchval(
                f"""
                INSERT INTO {table} (client_id, domain, url, chunk_index, chunk_text, chunk_hash,
                                     embedding, is_active)
                VALUES ($1, $2, $3, $4, $5, $6, $7::vector, $8)
                ON CONFLICT (client_id, chunk_hash) DO UPDATE SET
                    is_active = {table}.is_active OR EXCLUDED.is_active
                RETURNING id
                """,
                client_id, domain, url, chunk_index, chunk_text, chunk_hash,
                _vector_literal(embedding), active
            )
        return str(chunk_id)

    async def deactivate_chunks_by_domain(self, client_id: str, model: str, domain: str) -> int:
        table = chunk_table_for_model(model)
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                UPDATE {table} SET is_active = FALSE
                WHERE client_id = $1 AND domain = $2 AND is_active
                RETURNING id
                """,
                client_id, domain
            )
        return len(rows)

    async def deactivate_chunks_by_url(self, client_id: str, model: str, url: str) -> int:
        table = chunk_table_for_model(model)
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                UPDATE {table} SET is_active = FALSE
                WHERE client_id = $1 AND url = $2 AND is_active
                RETURNING id
                """,
                client_id, url
            )
        return len(rows)

    async def list_chunks_by_domain(self, client_id: str, model: str, domain: str) -> List[Dict[str, Any]]:
        table = chunk_table_for_model(model)
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {CHUNK_COLUMNS} FROM {table}
                WHERE client_id = $1 AND domain = $2
                ORDER BY url, chunk_index
                """,
                client_id, domain
            )
        return [_record(row) for row in rows]

    async def list_chunks_by_url(self, client_id: str, model: str, url: str) -> List[Dict[str, Any]]:
        table = chunk_table_for_model(model)
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {CHUNK_COLUMNS} FROM {table}
                WHERE client_id = $1 AND url = $2
                ORDER BY chunk_index
                """,
                client_id, url
            )
        return [_record(row) for row in rows]

    async def get_chunk(self, client_id: str, model: str, chunk_id: str) -> Optional[Dict[str, Any]]:
        if not is_valid_id(chunk_id):
            return None
        table = chunk_table_for_model(model)
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {CHUNK_COLUMNS} FROM {table} WHERE client_id = $1 AND id = $2",
                client_id, chunk_id
            )
        return _record(row)

    async def update_chunk(self, client_id: str, model: str, chunk_id: str, chunk_text: str,
                           chunk_hash: str, embedding: Sequence[float]) -> Optional[Dict[str, Any]]:
        """Replace a chunk's text and embedding.

        Raises:
            DuplicateChunkError: if the client already has a chunk with this text
        """
        if not is_valid_id(chunk_id):
            return None
        table = chunk_table_for_model(model)
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE {table}
                    SET chunk_text = $3, chunk_hash = $4, embedding = $5::vector, is_active = TRUE
                    WHERE client_id = $1 AND id = $2
                    RETURNING {CHUNK_COLUMNS}
                    """,
                    client_id, chunk_id, chunk_text, chunk_hash, _vector_literal(embedding)
                )
        except asyncpg.UniqueViolationError:
            raise DuplicateChunkError(f"Chunk with identical text already exists for client {client_id}") from None
        return _record(row)

    async def delete_chunk(self, client_id: str, model: str, chunk_id: str) -> bool:
        if not is_valid_id(chunk_id):
            return False
        table = chunk_table_for_model(model)
        async with self.pool.acquire() as conn:
            deleted = await conn.fetchval(
                f"DELETE FROM {table} WHERE client_id = $1 AND id = $2 RETURNING id",
                client_id, chunk_id
            )
        return deleted is not None

    async def search_chunks(self, client_id: str, model: str, embedding: Sequence[float],
                            domain: Optional[str] = None, limit: int = 10) -> List[Dict[str, Any]]:
        """Active chunks of the client nearest to ``embedding`` by L2 distance."""
        table = chunk_table_for_model(model)
        column, param = _vector_expression(table, "$2")
        limit = clamp_search_limit(limit)

        conditions = ["client_id = $1", "is_active"]
        params: List[Any] = [client_id, _vector_literal(embedding), limit]
        if domain:
            params.append(domain)
            conditions.append(f"domain = ${len(params)}")

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {CHUNK_COLUMNS}, {column} <-> {param} AS distance
                FROM {table}
                WHERE {" AND ".join(conditions)}
                ORDER BY {column} <-> {param}
                LIMIT $3
                """,
                *params
            )

        results = []
        for row in rows:
            result = _record(row)
            result["score"] = distance_to_score(result.pop("distance"))
            results.append(result)
        return results

    # Usage

    async def record_usage(self, client_id: str, model: str, operation: str,
                           prompt_tokens: int, total_tokens: int):
        """Record embedding token usage; failures are logged, never raised."""
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO client_usage (client_id, model, operation, prompt_tokens, total_tokens)
                    VALUES ($1, $2, $3, $4, $5)
                    """,
                    client_id, model, operation, int(prompt_tokens or 0), int(total_tokens or 0)
                )
        except Exception as e:
            logger.error(f"Failed to record usage for client {client_id}: {e}")

    async def sum_client_tokens_used_between(self, client_id: str, start: datetime,
                                             end: datetime) -> int:
        try:
            async with self.pool.acquire() as conn:
                total = await conn.fetchval(
                    """
                    SELECT COALESCE(SUM(total_tokens), 0) FROM client_usage
                    WHERE client_id = $1 AND created_at >= $2 AND created_at <= $3
                    """,
                    client_id, start, end
                )
            return int(total or 0)
        except Exception as e:
            logger.warning(f"Failed to sum token usage for client {client_id}: {e}")
            return 0

    async def get_usage_summary(self, client_id: str, start: Optional[datetime] = None,
                                end: Optional[datetime] = None) -> Dict[str, Any]:
        summary = empty_usage_summary(client_id)
        if not is_valid_id(client_id):
            return summary

        where = """
            WHERE client_id = $1
              AND ($2::timestamptz IS NULL OR created_at >= $2::timestamptz)
              AND ($3::timestamptz IS NULL OR created_at <= $3::timestamptz)
        """
        async with self.pool.acquire() as conn:
            totals = await conn.fetchrow(
                f"""
                SELECT COALESCE(SUM(prompt_tokens), 0) AS prompt_tokens,
                       COALESCE(SUM(total_tokens), 0) AS total_tokens
                FROM client_usage {where}
                """,
                client_id, start, end
            )
            by_model = await conn.fetch(
                f"""
                SELECT model, SUM(prompt_tokens) AS prompt_tokens, SUM(total_tokens) AS total_tokens
                FROM client_usage {where}
                GROUP BY model ORDER BY model
                """,
                client_id, start, end
            )
            by_operation = await conn.fetch(
                f"""
                SELECT operation, SUM(prompt_tokens) AS prompt_tokens, SUM(total_tokens) AS total_tokens
                FROM client_usage {where}
                GROUP BY operation ORDER BY operation
                """,
                client_id, start, end
            )

        summary["totalPromptTokens"] = int(totals["prompt_tokens"])
        summary["totalTokens"] = int(totals["total_tokens"])
        summary["byModel"] = [
            {"model": row["model"], "promptTokens": int(row["prompt_tokens"]),
             "totalTokens": int(row["total_tokens"])}
            for row in by_model
        ]
        summary["byOperation"] = [
            {"operation": row["operation"], "promptTokens": int(row["prompt_tokens"]),
             "totalTokens": int(row["total_tokens"])}
            for row in by_operation
        ]
        return summary

    async def get_usage_for_all_clients(self, limit: int = 100, start: Optional[datetime] = None,
                                        end: Optional[datetime] = None) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT c.id AS client_id, c.name AS name,
                       COALESCE(SUM(u.prompt_tokens), 0) AS prompt_tokens,
                       COALESCE(SUM(u.total_tokens), 0) AS total_tokens
                FROM clients c
                LEFT JOIN client_usage u
                  ON u.client_id = c.id
                 AND ($2::timestamptz IS NULL OR u.created_at >= $2::timestamptz)
                 AND ($3::timestamptz IS NULL OR u.created_at <= $3::timestamptz)
                GROUP BY c.id, c.name
                ORDER BY COALESCE(SUM(u.total_tokens), 0) DESC
                LIMIT $1
                """,
                limit, start, end
            )
        return [
            {"clientId": str(row["client_id"]), "name": row["name"],
             "totalPromptTokens": int(row["prompt_tokens"]),
             "totalTokens": int(row["total_tokens"])}
            for row in rows
        ]
