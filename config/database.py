"""Storage backend selection.

The knowledge store runs on PostgreSQL with pgvector in production and on a
SQLite file everywhere else. ``DATABASE_URL`` picks PostgreSQL unless
``KNOWLEDGE_DB_TYPE`` forces a backend. The store is opened once at startup
and shared through ``db_factory``.
"""

import os
import logging
from typing import Union, Optional
from enum import Enum
from pydantic import BaseModel, Field

from config.settings import int_env
from indexer.postgres_adapter import PostgresAdapter, PostgresConfig
from indexer.sqlite_adapter import SQLiteAdapter

logger = logging.getLogger(__name__)

KnowledgeStore = Union[PostgresAdapter, SQLiteAdapter]


class DatabaseType(str, Enum):
    """Supported storage backends."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"


class DatabaseConfig(BaseModel):
    """Where the knowledge store lives."""
    type: DatabaseType = Field(default=DatabaseType.SQLITE, description="Storage backend")
    sqlite_path: str = Field(default="knowledge.db", description="SQLite file for development and tests")
    postgres: PostgresConfig = Field(default_factory=PostgresConfig, description="PostgreSQL pool settings")

    @classmethod
    def from_env(cls) -> 'DatabaseConfig':
        dsn = os.getenv('DATABASE_URL') or None
        requested = (os.getenv('KNOWLEDGE_DB_TYPE') or '').strip().lower()
        if requested and requested not in {t.value for t in DatabaseType}:
            logger.warning(f"Unknown KNOWLEDGE_DB_TYPE {requested!r}, choosing by DATABASE_URL")
            requested = ''

        if requested == DatabaseType.POSTGRESQL.value or (not requested and dsn):
            if not dsn:
                logger.warning("PostgreSQL selected without DATABASE_URL, using the default host")
            return cls(
                type=DatabaseType.POSTGRESQL,
                postgres=PostgresConfig(
                    dsn=dsn,
                    min_connections=int_env('POSTGRES_MIN_CONNECTIONS', 2),
                    max_connections=int_env('POSTGRES_MAX_CONNECTIONS', 10),
                    command_timeout=int_env('POSTGRES_COMMAND_TIMEOUT', 60),
                ),
            )

        return cls(type=DatabaseType.SQLITE, sqlite_path=os.getenv('SQLITE_PATH') or 'knowledge.db')


def create_store(config: DatabaseConfig) -> KnowledgeStore:
    """Build the adapter for ``config`` without connecting it."""
    if config.type == DatabaseType.POSTGRESQL:
        return PostgresAdapter(config.postgres)
    return SQLiteAdapter(config.sqlite_path)


class DatabaseFactory:
    """Process-wide owner of the knowledge store."""

    _instance: Optional['DatabaseFactory'] = None
    _store: Optional[KnowledgeStore] = None

    def __new__(cls) -> 'DatabaseFactory':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def initialize(self, config: Optional[DatabaseConfig] = None) -> KnowledgeStore:
        """Open the store and apply its schema; a second call returns the open store."""
        if self._store is not None:
            return self._store

        config = config or DatabaseConfig.from_env()
        store = create_store(config)
        await store.initialize()
        self._store = store
        logger.info(f"Knowledge store ready on {config.type.value}")
        return store

    async def close(self):
        if self._store is not None:
            await self._store.close()
            self._store = None
            logger.info("Knowledge store closed")

    def get_adapter(self) -> KnowledgeStore:
        if self._store is None:
            raise RuntimeError("Knowledge store not initialized. Call initialize() first.")
        return self._store


db_factory = DatabaseFactory()
