"""PostgreSQL + pgvector vector store.

Writes are durable per statement, so ``save()`` and ``load()`` do nothing.
Similarity ranking is delegated to the database: cosine distance on an HNSW
index, with metadata filters translated into the WHERE clause. Suited to
large collections (hundreds of thousands of fragments and more).
"""

import json
import math
import time
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

import asyncpg
import numpy as np
from loguru import logger
from pgvector.asyncpg import register_vector

from fragment_store.base import VectorStore, parse_interchange
from fragment_store.chunking import DEFAULT_CHUNK_SIZE, chunk_id, split_fixed_size
from fragment_store.config import DEFAULT_DIMENSION, DEFAULT_EMBEDDING_MODEL, PgVectorBackendConfig
from fragment_store.exceptions import NotFoundError, PersistenceError, ValidationError
from fragment_store.models import (
    DENORMALIZED_FIELDS,
    BackendKind,
    BatchEntry,
    DocumentChunk,
    FragmentMetadata,
    RetrievedFragment,
    Scalar,
    SearchOptions,
    SearchResult,
    StoreStats,
    VectorEntry,
    VerifyReport,
)

DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

UPSERT_SQL = """
INSERT INTO embeddings (id, content, embedding, metadata, document_id, section, content_type)
VALUES ($1, $2, $3, $4, $5, $6, $7)
ON CONFLICT (id) DO UPDATE SET
    content = EXCLUDED.content,
    embedding = EXCLUDED.embedding,
    metadata = EXCLUDED.metadata,
    document_id = EXCLUDED.document_id,
    section = EXCLUDED.section,
    content_type = EXCLUDED.content_type,
    updated_at = now()
"""


def schema_sql(dimension: int) -> str:
    """Return the DDL for both tables and their indexes."""
    return f"""
    CREATE TABLE IF NOT EXISTS embeddings (
        id TEXT PRIMARY KEY,
        content TEXT NOT NULL,
        embedding vector({dimension}),
        metadata JSONB,
        document_id TEXT,
        section TEXT,
        content_type TEXT,
        created_at TIMESTAMPTZ DEFAULT now(),
        updated_at TIMESTAMPTZ DEFAULT now()
    );
    CREATE INDEX IF NOT EXISTS embeddings_embedding_idx
        ON embeddings USING hnsw (embedding vector_cosine_ops);
    CREATE INDEX IF NOT EXISTS embeddings_metadata_idx ON embeddings USING GIN (metadata);
    CREATE INDEX IF NOT EXISTS embeddings_document_id_idx ON embeddings (document_id);
    CREATE INDEX IF NOT EXISTS embeddings_content_type_idx ON embeddings (content_type);

    CREATE TABLE IF NOT EXISTS document_chunks (
        id SERIAL PRIMARY KEY,
        document_id TEXT NOT NULL,
        chunk_index INTEGER NOT NULL,
        chunk_content TEXT NOT NULL,
        embedding vector({dimension}),
        total_chunks INTEGER NOT NULL,
        metadata JSONB,
        created_at TIMESTAMPTZ DEFAULT now(),
        UNIQUE (document_id, chunk_index)
    );
    CREATE INDEX IF NOT EXISTS document_chunks_document_id_idx
        ON document_chunks (document_id);
    """


def build_where(
    filters: Mapping[str, Sequence[Scalar]], start_index: int = 2
) -> tuple[str, list[Any]]:
    """Translate metadata filters into a WHERE clause and its parameters.

    Denormalized columns get ``= ANY`` predicates. Those columns are text, so
    only string allowed values can match them. Other fields match when the
    metadata contains the field with one of the allowed values, either as the
    scalar value or as an element of a list value. A ``None`` allowed value
    matches a field that is null or absent, as ``matches_filters`` does.

    Args:
        filters: Field name -> allowed values
        start_index: Number of the first positional parameter to use

    Returns:
        Tuple of (clause including the WHERE keyword or "", parameters)
    """
    conditions: list[str] = []
    params: list[Any] = []
    index = start_index

    for key, allowed in filters.items():
        if not allowed:
            continue

        if key in DENORMALIZED_FIELDS:
            condition = f"{key} = ANY(${index}::text[])"
            params.append([value for value in allowed if isinstance(value, str)])
            index += 1
            if None in allowed:
                condition = f"({condition} OR {key} IS NULL)"
        else:
            candidates = [{key: value} for value in allowed]
            candidates += [{key: [value]} for value in allowed]
            condition = (
                f"EXISTS (SELECT 1 FROM jsonb_array_elements(${index}::jsonb) AS c(value) "
                "WHERE metadata @> c.value)"
            )
            params.append(candidates)
            index += 1
            if None in allowed:
                condition = f"({condition} OR NOT metadata ? ${index})"
                params.append(key)
                index += 1

        conditions.append(condition)

    if not conditions:
        return "", []
    return "WHERE " + " AND ".join(conditions), params


def to_millis(stamp: datetime | None) -> int | None:
    """Convert a TIMESTAMPTZ value to epoch milliseconds."""
    if stamp is None:
        return None
    return int(stamp.timestamp() * 1000)


def to_list(vector: Any) -> list[float]:
    """Convert a vector column value (numpy array or sequence) to a list of floats."""
    if vector is None:
        return []
    if isinstance(vector, np.ndarray):
        return vector.astype(float).tolist()
    if isinstance(vector, str):
        return [float(v) for v in json.loads(vector)]
    return [float(v) for v in vector]


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")
    await register_vector(conn)


class PgVectorStore(VectorStore):
    """Vector store on PostgreSQL with the pgvector extension.

    A connection pool lets independent calls run in parallel; a transaction
    holds one pooled connection for its duration.
    """

    backend = BackendKind.PGVECTOR

    def __init__(
        self,
        config: PgVectorBackendConfig,
        embedding_model: str = DEFAULT_EMBEDDING_MODEL,
        dimension: int = DEFAULT_DIMENSION,
    ) -> None:
        super().__init__(embedding_model, dimension)
        self.config = config
        self._pool: asyncpg.Pool | None = None

    # Lifecycle

    async def initialize(self) -> None:
        """Check for the vector extension, create the schema and open the pool.

        Raises:
            PersistenceError: If the database is unreachable or lacks pgvector
        """
        if self._pool is not None:
            return

        try:
            conn = await asyncpg.connect(**self._connect_kwargs())
            try:
                has_vector = await conn.fetchval(
                    "SELECT EXISTS (SELECT 1 FROM pg_extension WHERE extname = 'vector')"
                )
                if not has_vector:
                    raise PersistenceError(
                        "pgvector extension not installed. Run: CREATE EXTENSION vector;"
                    )
                await conn.execute(schema_sql(self.dimension))
            finally:
                await conn.close()

            self._pool = await asyncpg.create_pool(
                min_size=1,
                max_size=self.config.pool_size,
                init=_init_connection,
                **self._connect_kwargs(),
            )
        except DRIVER_ERRORS as e:
            logger.error(f"Failed to initialize PgVector store: {e}")
            raise PersistenceError(f"Failed to initialize PostgreSQL vector store: {e}") from e

        logger.info(
            f"PgVector store initialized on {self.config.host}:{self.config.port}/"
            f"{self.config.database}"
        )

    def is_ready(self) -> bool:
        return self._pool is not None

    async def is_empty(self) -> bool:
        pool = self._connection()
        return await self._fetchval(pool, "SELECT COUNT(*) FROM embeddings") == 0

    async def close(self) -> None:
        if self._pool is None:
            return
        await self._pool.close()
        self._pool = None
        logger.info("PgVector store connection closed")

    # CRUD

    async def insert(
        self,
        fragment_id: str,
        content: str,
        embedding: Sequence[float],
        metadata: FragmentMetadata,
    ) -> None:
        pool = self._connection()
        self._check_dimension(fragment_id, embedding)
        try:
            await pool.execute(UPSERT_SQL, *self._row(fragment_id, content, embedding, metadata))
        except DRIVER_ERRORS as e:
            raise PersistenceError(f"Failed to insert chunk {fragment_id}: {e}") from e

    async def insert_batch(self, entries: Sequence[BatchEntry]) -> None:
        """Insert entries in one transaction.

        Nothing is pre-filtered: an entry with a missing or mismatched
        embedding fails the whole batch, which is rolled back.
        """
        if not entries:
            return
        pool = self._connection()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    for entry in entries:
                        self._check_dimension(entry.id, entry.embedding)
                    await conn.executemany(
                        UPSERT_SQL,
                        [
                            self._row(entry.id, entry.content, entry.embedding, entry.metadata)
                            for entry in entries
                        ],
                    )
        except DRIVER_ERRORS as e:
            raise PersistenceError(f"Failed to insert batch: {e}") from e
        logger.debug(f"Batch inserted {len(entries)} chunks")

    async def get(self, fragment_id: str) -> VectorEntry | None:
        pool = self._connection()
        try:
            row = await pool.fetchrow(
                "SELECT id, content, embedding, metadata FROM embeddings WHERE id = $1",
                fragment_id,
            )
        except DRIVER_ERRORS as e:
            raise PersistenceError(f"Failed to get chunk {fragment_id}: {e}") from e
        return self._entry(row) if row else None

    async def delete(self, fragment_id: str) -> bool:
        pool = self._connection()
        try:
            status = await pool.execute("DELETE FROM embeddings WHERE id = $1", fragment_id)
        except DRIVER_ERRORS as e:
            raise PersistenceError(f"Failed to delete chunk {fragment_id}: {e}") from e
        return int(status.split()[-1]) > 0

    async def clear(self) -> None:
        pool = self._connection()
        try:
            await pool.execute("TRUNCATE TABLE embeddings, document_chunks")
        except DRIVER_ERRORS as e:
            raise PersistenceError(f"Failed to clear vector store: {e}") from e
        logger.info("PgVector store cleared")

    # Search

    async def search(
        self,
        query_embedding: Sequence[float],
        options: SearchOptions | None = None,
    ) -> SearchResult:
        """Rank by cosine distance in the database.

        The database cuts at ``top_k`` before the score threshold is applied,
        so ``total_found`` counts only returned rows that pass the threshold.
        """
        pool = self._connection()
        options = options or SearchOptions()
        started = time.perf_counter()

        where, params = build_where(options.filters)
        columns = "id, content, metadata"
        if options.include_embeddings:
            columns += ", embedding"
        query = f"""
            SELECT {columns}, 1 - (embedding <=> $1) AS score
            FROM embeddings
            {where}
            ORDER BY embedding <=> $1, id
            LIMIT {options.top_k}
        """
        try:
            rows = await pool.fetch(query, np.asarray(query_embedding, dtype=np.float32), *params)
        except DRIVER_ERRORS as e:
            raise PersistenceError(f"Vector search failed: {e}") from e

        fragments = []
        for row in rows:
            score = float(row["score"]) if row["score"] is not None else 0.0
            if math.isnan(score):
                score = 0.0
            if score < options.score_threshold:
                continue
            fragments.append(
                RetrievedFragment(
                    id=row["id"],
                    content=row["content"],
                    metadata=FragmentMetadata.model_validate(row["metadata"] or {}),
                    score=score,
                    embedding=to_list(row["embedding"]) if options.include_embeddings else None,
                )
            )

        return SearchResult(
            fragments=fragments,
            total_found=len(fragments),
            query_time_ms=(time.perf_counter() - started) * 1000,
        )

    # Large documents

    def supports_chunking(self) -> bool:
        return True

    async def insert_large_document(
        self,
        doc_id: str,
        content: str,
        metadata: FragmentMetadata,
        chunk_size: int | None = None,
    ) -> list[str]:
        """Store a document as fixed-size chunk rows with zero-vector embeddings.

        Chunks previously stored for ``doc_id`` are replaced in the same
        transaction.
        """
        pool = self._connection()
        try:
            windows = split_fixed_size(content, chunk_size or DEFAULT_CHUNK_SIZE)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        placeholder = np.zeros(self.dimension, dtype=np.float32)
        metadata_doc = metadata.model_dump()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        "DELETE FROM document_chunks WHERE document_id = $1", doc_id
                    )
                    await conn.executemany(
                        "INSERT INTO document_chunks (document_id, chunk_index, chunk_content, "
                        "embedding, total_chunks, metadata) VALUES ($1, $2, $3, $4, $5, $6)",
                        [
                            (doc_id, w.index, w.text, placeholder, len(windows), metadata_doc)
                            for w in windows
                        ],
                    )
        except DRIVER_ERRORS as e:
            raise PersistenceError(f"Failed to insert large document {doc_id}: {e}") from e

        logger.info(f"Inserted large document {doc_id}: {len(windows)} chunks")
        return [chunk_id(doc_id, w.index) for w in windows]

    async def retrieve_large_document(self, doc_id: str) -> str:
        chunks = await self.get_document_chunks(doc_id)
        if not chunks:
            raise NotFoundError(f"Document not found: {doc_id}")
        return "".join(chunk.content for chunk in chunks)

    async def get_document_chunks(self, doc_id: str) -> list[DocumentChunk]:
        pool = self._connection()
        try:
            rows = await pool.fetch(
                "SELECT chunk_index, chunk_content, total_chunks, metadata FROM document_chunks "
                "WHERE document_id = $1 ORDER BY chunk_index",
                doc_id,
            )
        except DRIVER_ERRORS as e:
            raise PersistenceError(f"Failed to get document chunks for {doc_id}: {e}") from e

        return [
            DocumentChunk(
                chunk_id=chunk_id(doc_id, row["chunk_index"]),
                chunk_index=row["chunk_index"],
                total_chunks=row["total_chunks"],
                content=row["chunk_content"],
                metadata=FragmentMetadata.model_validate(row["metadata"] or {}),
            )
            for row in rows
        ]

    # Management

    async def get_stats(self) -> StoreStats:
        pool = self._connection()
        try:
            summary = await pool.fetchrow(
                "SELECT COUNT(*) AS total, MIN(created_at) AS created, "
                "MAX(updated_at) AS updated FROM embeddings"
            )
            doc_rows = await pool.fetch(
                "SELECT COALESCE(document_id, 'unknown') AS key, COUNT(*) AS count "
                "FROM embeddings GROUP BY 1"
            )
            type_rows = await pool.fetch(
                "SELECT COALESCE(content_type, 'unknown') AS key, COUNT(*) AS count "
                "FROM embeddings GROUP BY 1"
            )
        except DRIVER_ERRORS as e:
            raise PersistenceError(f"Failed to get stats: {e}") from e

        now = datetime.now(UTC)
        return StoreStats(
            total_chunks=summary["total"],
            embedding_model=self.embedding_model,
            dimension=self.dimension,
            created_at=summary["created"] or now,
            updated_at=summary["updated"] or now,
            document_counts={row["key"]: row["count"] for row in doc_rows},
            content_type_counts={row["key"]: row["count"] for row in type_rows},
            backend=self.backend,
        )

    async def export_data(self) -> str:
        pool = self._connection()
        try:
            rows = await pool.fetch(
                "SELECT id, content, embedding, metadata FROM embeddings ORDER BY id"
            )
            span = await pool.fetchrow(
                "SELECT MIN(created_at) AS created, MAX(updated_at) AS updated FROM embeddings"
            )
        except DRIVER_ERRORS as e:
            raise PersistenceError(f"Failed to export data: {e}") from e
        return self._interchange_json(
            [self._entry(row) for row in rows],
            to_millis(span["created"]) if span else None,
            to_millis(span["updated"]) if span else None,
        )

    async def import_data(self, data: str | bytes) -> None:
        self._connection()
        document = parse_interchange(data)
        await self.insert_batch([BatchEntry.from_entry(entry) for entry in document.entries])
        logger.info(f"Imported {len(document.entries)} chunks to PostgreSQL")

    async def save(self) -> None:
        """No-op: writes are durable immediately."""

    async def load(self) -> None:
        """No-op: rows are read on query."""

    # Maintenance

    async def optimize(self) -> None:
        pool = self._connection()
        try:
            await pool.execute("VACUUM ANALYZE embeddings")
            await pool.execute("VACUUM ANALYZE document_chunks")
        except DRIVER_ERRORS as e:
            raise PersistenceError(f"Failed to optimize database: {e}") from e
        logger.info("PgVector store optimized")

    async def verify(self) -> VerifyReport:
        if self._pool is None:
            return VerifyReport(valid=False, errors=["Store is not initialized"])

        errors: list[str] = []
        try:
            duplicates = await self._pool.fetch(
                "SELECT id, COUNT(*) AS count FROM embeddings GROUP BY id HAVING COUNT(*) > 1"
            )
            for row in duplicates:
                errors.append(f"Duplicate ID found: {row['id']} ({row['count']} occurrences)")

            wrong_dims = await self._pool.fetchval(
                "SELECT COUNT(*) FROM embeddings WHERE vector_dims(embedding) != $1",
                self.dimension,
            )
            if wrong_dims:
                errors.append(f"Found {wrong_dims} chunks with incorrect embedding dimension")
        except DRIVER_ERRORS as e:
            errors.append(f"Verification failed: {e}")

        return VerifyReport(valid=not errors, errors=errors)

    # Helpers

    def _connection(self) -> asyncpg.Pool:
        self._ensure_ready()
        assert self._pool is not None
        return self._pool

    def _connect_kwargs(self) -> dict[str, Any]:
        return {
            "host": self.config.host,
            "port": self.config.port,
            "database": self.config.database,
            "user": self.config.user,
            "password": self.config.password,
            "ssl": "require" if self.config.ssl else False,
            "timeout": self.config.connection_timeout,
        }

    async def _fetchval(self, pool: asyncpg.Pool, query: str, *args: Any) -> Any:
        try:
            return await pool.fetchval(query, *args)
        except DRIVER_ERRORS as e:
            raise PersistenceError(f"Query failed: {e}") from e

    @staticmethod
    def _row(
        fragment_id: str,
        content: str,
        embedding: Sequence[float],
        metadata: FragmentMetadata,
    ) -> tuple[Any, ...]:
        return (
            fragment_id,
            content,
            np.asarray(embedding, dtype=np.float32),
            metadata.model_dump(),
            metadata.document_id,
            metadata.section,
            metadata.content_type,
        )

    @staticmethod
    def _entry(row: Mapping[str, Any]) -> VectorEntry:
        return VectorEntry(
            id=row["id"],
            content=row["content"],
            embedding=to_list(row["embedding"]),
            metadata=FragmentMetadata.model_validate(row["metadata"] or {}),
        )
