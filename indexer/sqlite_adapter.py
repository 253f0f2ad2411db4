"""SQLite database adapter for the knowledge engine.

Same interface as the PostgreSQL adapter, used for development and tests.
Embeddings are stored as float32 BLOBs and nearest neighbours are computed
with numpy.
"""

import sqlite3
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

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
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

TIMESTAMP_FIELDS = ("created_at", "started_at", "finished_at", "updated_at")
BOOLEAN_FIELDS = ("is_active",)

JOB_COLUMNS = """
    id, client_id, domain, start_url, status, is_active, total_pages_estimated,
    pages_visited, pages_stored, chunks_stored, error_message,
    created_at, started_at, finished_at, updated_at
"""

CHUNK_COLUMNS = "id, client_id, domain, url, chunk_index, chunk_text, chunk_hash, is_active, created_at"


def _timestamp(value: Optional[datetime] = None) -> str:
    value = value or utcnow()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    result = dict(row)
    for key in TIMESTAMP_FIELDS:
        if result.get(key):
            result[key] = datetime.fromisoformat(result[key])
    for key in BOOLEAN_FIELDS:
        if key in result:
            result[key] = bool(result[key])
    return result


def _embedding_blob(embedding: Sequence[float]) -> bytes:
    return np.asarray(embedding, dtype=np.float32).tobytes()


class SQLiteAdapter:
    """SQLite database adapter with unified interface."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None

    async def initialize(self):
        """Initialize SQLite connection and ensure schema exists."""
        try:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA foreign_keys = ON")

            await self.execute_schema(str(SCHEMA_PATH))

            logger.info(f"SQLite adapter initialized: {self.db_path}")

        except Exception as e:
            logger.error(f"Failed to initialize SQLite: {e}")
            raise

    async def close(self):
        """Close SQLite connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("SQLite connection closed")

    async def execute_schema(self, schema_path: str):
        """Execute schema SQL file."""
        with open(schema_path, 'r', encoding='utf-8') as f:
            schema_sql = f.read()

        self.conn.executescript(schema_sql)
        self.conn.commit()
        logger.info(f"Schema executed from {schema_path}")

    async def ping(self) -> bool:
        try:
            self.conn.execute("SELECT 1").fetchone()
            return True
        except Exception as e:
            logger.warning(f"SQLite health check failed: {e}")
            return False

    def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        return _row_to_dict(self.conn.execute(sql, params).fetchone())

    def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        return [_row_to_dict(row) for row in self.conn.execute(sql, params).fetchall()]

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        cursor = self.conn.execute(sql, params)
        self.conn.commit()
        return cursor.rowcount

    # Clients

    async def create_client(self, name: str, main_domain: Optional[str],
                            embedding_model: str) -> Dict[str, Any]:
        """Create a tenant.

        Raises:
            DuplicateDomainError: if another client already owns ``main_domain``
        """
        client_id = new_id()
        try:
            self._execute(
                """
                INSERT INTO clients (id, name, main_domain, embedding_model, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (client_id, name, main_domain, embedding_model, _timestamp())
            )
        except sqlite3.IntegrityError:
            self.conn.rollback()
            raise DuplicateDomainError(main_domain) from None
        return await self.get_client(client_id)

    async def get_client(self, client_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone(
            "SELECT id, name, main_domain, embedding_model, created_at FROM clients WHERE id = ?",
            (client_id,)
        )

    async def delete_client(self, client_id: str) -> bool:
        """Delete a tenant together with its jobs, chunks and usage."""
        return self._execute("DELETE FROM clients WHERE id = ?", (client_id,)) > 0

    # Crawl jobs

    async def create_crawl_job(self, client_id: str, domain: str, start_url: str,
                               total_pages_estimated: Optional[int] = None) -> Dict[str, Any]:
        job_id = new_id()
        now = _timestamp()
        self._execute(
            """
            INSERT INTO crawl_jobs (id, client_id, domain, start_url, status,
                                    total_pages_estimated, created_at, updated_at)
            VALUES (?, ?, ?, ?, 'queued', ?, ?, ?)
            """,
            (job_id, client_id, domain, start_url, total_pages_estimated, now, now)
        )
        return await self.get_crawl_job(job_id)

    async def get_crawl_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone(f"SELECT {JOB_COLUMNS} FROM crawl_jobs WHERE id = ?", (job_id,))

    async def list_crawl_jobs(self, client_id: str, page: int = 1,
                              page_size: int = 20) -> Tuple[List[Dict[str, Any]], int]:
        """One page of a client's jobs, newest first, plus the total count."""
        page = clamp_page(page)
        page_size = clamp_page_size(page_size)

        total = self.conn.execute(
            "SELECT COUNT(*) FROM crawl_jobs WHERE client_id = ?", (client_id,)
        ).fetchone()[0]
        rows = self._fetchall(
            f"""
            SELECT {JOB_COLUMNS} FROM crawl_jobs
            WHERE client_id = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT ? OFFSET ?
            """,
            (client_id, page_size, (page - 1) * page_size)
        )
        return rows, int(total)

    async def mark_crawl_job_running(self, job_id: str):
        now = _timestamp()
        self._execute(
            """
            UPDATE crawl_jobs
            SET status = 'running', started_at = COALESCE(started_at, ?), updated_at = ?
            WHERE id = ?
            """,
            (now, now, job_id)
        )

    async def update_crawl_job_totals(self, job_id: str, total_pages_estimated: int):
        self._execute(
            "UPDATE crawl_jobs SET total_pages_estimated = ?, updated_at = ? WHERE id = ?",
            (total_pages_estimated, _timestamp(), job_id)
        )

    async def update_crawl_job_progress(self, job_id: str, pages_visited: int,
                                        pages_stored: int, chunks_stored: int):
        self._execute(
            """
            UPDATE crawl_jobs
            SET pages_visited = ?, pages_stored = ?, chunks_stored = ?, updated_at = ?
            WHERE id = ?
            """,
            (pages_visited, pages_stored, chunks_stored, _timestamp(), job_id)
        )

    def _finish_job(self, job_id: str, status: str, extra_sql: str = "",
                    extra_params: Sequence[Any] = ()):
        now = _timestamp()
        # ISO timestamps in UTC compare correctly as text
        self._execute(
            f"""
            UPDATE crawl_jobs
            SET status = ?,
                started_at = COALESCE(started_at, ?),
                finished_at = MAX(?, COALESCE(started_at, ?)),
                updated_at = ?{extra_sql}
            WHERE id = ?
            """,
            (status, now, now, now, now, *extra_params, job_id)
        )

    async def mark_crawl_job_completed(self, job_id: str,
                                       pages_visited: Optional[int] = None,
                                       pages_stored: Optional[int] = None,
                                       chunks_stored: Optional[int] = None):
        self._finish_job(
            job_id, "completed",
            """,
                pages_visited = COALESCE(?, pages_visited),
                pages_stored = COALESCE(?, pages_stored),
                chunks_stored = COALESCE(?, chunks_stored)""",
            (pages_visited, pages_stored, chunks_stored)
        )

    async def mark_crawl_job_failed(self, job_id: str, error_message: str):
        self._finish_job(job_id, "failed", ", error_message = ?",
                         (clamp_error_message(error_message),))

    async def mark_crawl_job_deactivated(self, job_id: str):
        self._execute(
            "UPDATE crawl_jobs SET is_active = 0, updated_at = ? WHERE id = ?",
            (_timestamp(), job_id)
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
        self._execute(
            f"""
            INSERT INTO {table} (id, client_id, domain, url, chunk_index, chunk_text,
                                 chunk_hash, embedding, is_active, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (client_id, chunk_hash) DO UPDATE SET
                is_active = MAX({table}.is_active, excluded.is_active)
            """,
            (new_id(), client_id, domain, url, chunk_index, chunk_text, chunk_hash,
             _embedding_blob(embedding), int(active), _timestamp())
        )
        row = self.conn.execute(
            f"SELECT id FROM {table} WHERE client_id = ? AND chunk_hash = ?",
            (client_id, chunk_hash)
        ).fetchone()
        return row["id"]

    async def deactivate_chunks_by_domain(self, client_id: str, model: str, domain: str) -> int:
        table = chunk_table_for_model(model)
        return self._execute(
            f"UPDATE {table} SET is_active = 0 WHERE client_id = ? AND domain = ? AND is_active = 1",
            (client_id, domain)
        )

    async def deactivate_chunks_by_url(self, client_id: str, model: str, url: str) -> int:
        table = chunk_table_for_model(model)
        return self._execute(
            f"UPDATE {table} SET is_active = 0 WHERE client_id = ? AND url = ? AND is_active = 1",
            (client_id, url)
        )

    async def list_chunks_by_domain(self, client_id: str, model: str, domain: str) -> List[Dict[str, Any]]:
        table = chunk_table_for_model(model)
        return self._fetchall(
            f"""
            SELECT {CHUNK_COLUMNS} FROM {table}
            WHERE client_id = ? AND domain = ?
            ORDER BY url, chunk_index
            """,
            (client_id, domain)
        )

    async def list_chunks_by_url(self, client_id: str, model: str, url: str) -> List[Dict[str, Any]]:
        table = chunk_table_for_model(model)
        return self._fetchall(
            f"SELECT {CHUNK_COLUMNS} FROM {table} WHERE client_id = ? AND url = ? ORDER BY chunk_index",
            (client_id, url)
        )

    async def get_chunk(self, client_id: str, model: str, chunk_id: str) -> Optional[Dict[str, Any]]:
        table = chunk_table_for_model(model)
        return self._fetchone(
            f"SELECT {CHUNK_COLUMNS} FROM {table} WHERE client_id = ? AND id = ?",
            (client_id, chunk_id)
        )

    async def update_chunk(self, client_id: str, model: str, chunk_id: str, chunk_text: str,
                           chunk_hash: str, embedding: Sequence[float]) -> Optional[Dict[str, Any]]:
        """Replace a chunk's text and embedding.

        Raises:
            DuplicateChunkError: if the client already has a chunk with this text
        """
        table = chunk_table_for_model(model)
        try:
            updated = self._execute(
                f"""
                UPDATE {table}
                SET chunk_text = ?, chunk_hash = ?, embedding = ?, is_active = 1
                WHERE client_id = ? AND id = ?
                """,
                (chunk_text, chunk_hash, _embedding_blob(embedding), client_id, chunk_id)
            )
        except sqlite3.IntegrityError:
            self.conn.rollback()
            raise DuplicateChunkError(f"Chunk with identical text already exists for client {client_id}") from None
        if not updated:
            return None
        return await self.get_chunk(client_id, model, chunk_id)

    async def delete_chunk(self, client_id: str, model: str, chunk_id: str) -> bool:
        table = chunk_table_for_model(model)
        return self._execute(
            f"DELETE FROM {table} WHERE client_id = ? AND id = ?", (client_id, chunk_id)
        ) > 0

    async def search_chunks(self, client_id: str, model: str, embedding: Sequence[float],
                            domain: Optional[str] = None, limit: int = 10) -> List[Dict[str, Any]]:
        """Active chunks of the client nearest to ``embedding`` by L2 distance."""
        table = chunk_table_for_model(model)
        limit = clamp_search_limit(limit)

        sql = f"SELECT {CHUNK_COLUMNS}, embedding FROM {table} WHERE client_id = ? AND is_active = 1"
        params: List[Any] = [client_id]
        if domain:
            sql += " AND domain = ?"
            params.append(domain)

        query = np.asarray(embedding, dtype=np.float32)
        candidates = []
        vectors = []
        for row in self.conn.execute(sql, params).fetchall():
            vector = np.frombuffer(row["embedding"], dtype=np.float32)
            if vector.shape != query.shape:
                logger.warning(f"Skipping chunk {row['id']} with {vector.shape[0]} dimensions")
                continue
            result = _row_to_dict(row)
            result.pop("embedding", None)
            candidates.append(result)
            vectors.append(vector)

        if not candidates:
            return []

        distances = np.linalg.norm(np.vstack(vectors) - query, axis=1)
        order = np.argsort(distances, kind="stable")[:limit]

        results = []
        for index in order:
            result = candidates[int(index)]
            result["score"] = distance_to_score(distances[int(index)])
            results.append(result)
        return results

    # Usage

    async def record_usage(self, client_id: str, model: str, operation: str,
                           prompt_tokens: int, total_tokens: int):
        """Record embedding token usage; failures are logged, never raised."""
        try:
            self._execute(
                """
                INSERT INTO client_usage (client_id, model, operation, prompt_tokens, total_tokens, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (client_id, model, operation, int(prompt_tokens or 0), int(total_tokens or 0), _timestamp())
            )
        except Exception as e:
            logger.error(f"Failed to record usage for client {client_id}: {e}")

    async def sum_client_tokens_used_between(self, client_id: str, start: datetime,
                                             end: datetime) -> int:
        try:
            total = self.conn.execute(
                """
                SELECT COALESCE(SUM(total_tokens), 0) FROM client_usage
                WHERE client_id = ? AND created_at >= ? AND created_at <= ?
                """,
                (client_id, _timestamp(start), _timestamp(end))
            ).fetchone()[0]
            return int(total or 0)
        except Exception as e:
            logger.warning(f"Failed to sum token usage for client {client_id}: {e}")
            return 0

    @staticmethod
    def _range_clause(start: Optional[datetime], end: Optional[datetime],
                      column: str = "created_at") -> Tuple[str, List[Any]]:
        clause = ""
        params: List[Any] = []
        if start is not None:
            clause += f" AND {column} >= ?"
            params.append(_timestamp(start))
        if end is not None:
            clause += f" AND {column} <= ?"
            params.append(_timestamp(end))
        return clause, params

    async def get_usage_summary(self, client_id: str, start: Optional[datetime] = None,
                                end: Optional[datetime] = None) -> Dict[str, Any]:
        summary = empty_usage_summary(client_id)
        range_sql, range_params = self._range_clause(start, end)
        where = f"WHERE client_id = ?{range_sql}"
        params = [client_id, *range_params]

        totals = self.conn.execute(
            f"""
            SELECT COALESCE(SUM(prompt_tokens), 0), COALESCE(SUM(total_tokens), 0)
            FROM client_usage {where}
            """,
            params
        ).fetchone()
        summary["totalPromptTokens"] = int(totals[0])
        summary["totalTokens"] = int(totals[1])

        for group, key in (("model", "byModel"), ("operation", "byOperation")):
            rows = self.conn.execute(
                f"""
                SELECT {group}, SUM(prompt_tokens), SUM(total_tokens)
                FROM client_usage {where}
                GROUP BY {group} ORDER BY {group}
                """,
                params
            ).fetchall()
            summary[key] = [
                {group: row[0], "promptTokens": int(row[1]), "totalTokens": int(row[2])}
                for row in rows
            ]
        return summary

    async def get_usage_for_all_clients(self, limit: int = 100, start: Optional[datetime] = None,
                                        end: Optional[datetime] = None) -> List[Dict[str, Any]]:
        range_sql, range_params = self._range_clause(start, end, column="u.created_at")
        rows = self.conn.execute(
            f"""
            SELECT c.id, c.name,
                   COALESCE(SUM(u.prompt_tokens), 0) AS prompt_tokens,
                   COALESCE(SUM(u.total_tokens), 0) AS total_tokens
            FROM clients c
            LEFT JOIN client_usage u ON u.client_id = c.id{range_sql}
            GROUP BY c.id, c.name
            ORDER BY total_tokens DESC
            LIMIT ?
            """,
            (*range_params, limit)
        ).fetchall()
        return [
            {"clientId": row["id"], "name": row["name"],
             "totalPromptTokens": int(row["prompt_tokens"]),
             "totalTokens": int(row["total_tokens"])}
            for row in rows
        ]
