"""Construct concrete vector stores from configuration."""

from loguru import logger

from fragment_store.base import VectorStore
from fragment_store.config import (
    DEFAULT_DIMENSION,
    DEFAULT_EMBEDDING_MODEL,
    JSONBackendConfig,
    PgVectorBackendConfig,
    SQLiteBackendConfig,
    StoreConfig,
)
from fragment_store.exceptions import ValidationError
from fragment_store.json_store import JSONVectorStore
from fragment_store.models import BackendKind
from fragment_store.sqlite_store import SQLiteVectorStore

SMALL_STORE_LIMIT = 10_000
MEDIUM_STORE_LIMIT = 100_000


def create_vector_store(config: StoreConfig) -> VectorStore:
    """Create an uninitialized store for the configured backend.

    Missing json/sqlite sub-configs fall back to defaults with a warning; a
    missing pgvector sub-config is an error since it has no usable default.

    Raises:
        ValidationError: If the pgvector backend has no connection settings
    """
    backend = BackendKind(config.backend)

    if backend is BackendKind.JSON:
        if config.json_store is None:
            logger.warning("JSON backend selected but config missing, using defaults")
            config.json_store = JSONBackendConfig()
        return JSONVectorStore(config.json_store, config.embedding_model, config.dimension)

    if backend is BackendKind.SQLITE:
        if config.sqlite is None:
            logger.warning("SQLite backend selected but config missing, using defaults")
            config.sqlite = SQLiteBackendConfig()
        return SQLiteVectorStore(config.sqlite, config.embedding_model, config.dimension)

    if config.pgvector is None:
        raise ValidationError("PgVector backend configuration missing")

    # Imported here so asyncpg is only loaded when the backend is used.
    from fragment_store.pgvector_store import PgVectorStore

    return PgVectorStore(config.pgvector, config.embedding_model, config.dimension)


def small_store_config(index_path: str = "data/vector-store-index.json") -> StoreConfig:
    """Recommended configuration for up to ten thousand fragments."""
    return StoreConfig(
        backend=BackendKind.JSON.value,
        embedding_model=DEFAULT_EMBEDDING_MODEL,
        dimension=DEFAULT_DIMENSION,
        json_store=JSONBackendConfig(index_path=index_path),
    )


def medium_store_config(db_path: str = "data/vector-store.db") -> StoreConfig:
    """Recommended configuration for ten to a hundred thousand fragments."""
    return StoreConfig(
        backend=BackendKind.SQLITE.value,
        embedding_model=DEFAULT_EMBEDDING_MODEL,
        dimension=DEFAULT_DIMENSION,
        sqlite=SQLiteBackendConfig(db_path=db_path, enable_wal=True, cache_size=10000),
    )


def large_store_config(
    host: str,
    database: str,
    user: str,
    password: str | None = None,
    port: int = 5432,
) -> StoreConfig:
    """Recommended configuration for a hundred thousand fragments and more."""
    return StoreConfig(
        backend=BackendKind.PGVECTOR.value,
        embedding_model=DEFAULT_EMBEDDING_MODEL,
        dimension=DEFAULT_DIMENSION,
        pgvector=PgVectorBackendConfig(
            host=host,
            port=port,
            database=database,
            user=user,
            password=password,
            ssl=True,
            pool_size=10,
            connection_timeout=5.0,
        ),
    )


def recommended_backend(expected_fragments: int) -> BackendKind:
    """Pick the backend sized for an expected fragment count."""
    if expected_fragments < SMALL_STORE_LIMIT:
        return BackendKind.JSON
    if expected_fragments < MEDIUM_STORE_LIMIT:
        return BackendKind.SQLITE
    return BackendKind.PGVECTOR
