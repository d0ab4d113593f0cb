"""Pluggable vector storage for embedded text fragments.

Three interchangeable backends implement one async store contract, sized to
different collection scales. Data moves between them through a canonical
JSON interchange document.

Architecture:
    - base: The ``VectorStore`` contract every backend implements
    - json_store: Whole collection in memory, saved as one JSON file
    - sqlite_store: Single-file SQLite database, similarity scored in Python
    - pgvector_store: PostgreSQL with pgvector and an HNSW index
    - factory: Backend selection from ``StoreConfig`` plus sizing presets
    - migration: Best-effort copy between any two stores

Usage:
    >>> from fragment_store import create_vector_store, load_config
    >>> store = create_vector_store(load_config("sqlite"))
    >>> async with store:
    ...     result = await store.search(query_embedding, SearchOptions(top_k=10))
"""

__version__ = "0.1.0"

from fragment_store.base import VectorStore
from fragment_store.config import StoreConfig, load_config
from fragment_store.exceptions import (
    IntegrityError,
    NotFoundError,
    NotReadyError,
    PersistenceError,
    StoreError,
    ValidationError,
)
from fragment_store.factory import create_vector_store
from fragment_store.migration import MigrationResult, StoreMigration
from fragment_store.models import (
    BackendKind,
    BatchEntry,
    DocumentChunk,
    FragmentMetadata,
    SearchOptions,
    SearchResult,
    StoreStats,
    VectorEntry,
)

__all__ = [
    "BackendKind",
    "BatchEntry",
    "DocumentChunk",
    "FragmentMetadata",
    "IntegrityError",
    "MigrationResult",
    "NotFoundError",
    "NotReadyError",
    "PersistenceError",
    "SearchOptions",
    "SearchResult",
    "StoreConfig",
    "StoreError",
    "StoreMigration",
    "StoreStats",
    "ValidationError",
    "VectorEntry",
    "VectorStore",
    "create_vector_store",
    "load_config",
]
