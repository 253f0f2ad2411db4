"""Configuration module for the knowledge engine.

Provides configuration management for database, crawling, chunking,
embeddings, caching and the HTTP server.
"""

from .database import (
    DatabaseConfig,
    DatabaseType,
    DatabaseFactory,
    create_store,
    db_factory
)
from .settings import (
    CrawlConfig,
    ChunkingConfig,
    EmbeddingsConfig,
    CacheSettings,
    ServerSettings,
    KnowledgeSettings,
    get_settings,
    set_settings
)

__all__ = [
    'DatabaseConfig',
    'DatabaseType',
    'DatabaseFactory',
    'create_store',
    'db_factory',
    'CrawlConfig',
    'ChunkingConfig',
    'EmbeddingsConfig',
    'CacheSettings',
    'ServerSettings',
    'KnowledgeSettings',
    'get_settings',
    'set_settings'
]
