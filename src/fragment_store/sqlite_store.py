"""Embedded relational vector store backed by a single SQLite file.

The database is opened in memory and the whole image is written to
``db_path`` on ``save()``; ``initialize()`` reads the image back once.
Similarity is computed in Python over the rows that pass the SQL-level
filters, so this backend suits medium collections (up to roughly a hundred
thousand fragments).
"""

import json
import os
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from filelock import FileLock
from loguru import logger

from fragment_store.base import VectorStore, now_ms, parse_interchange
from fragment_store.chunking import (
    DEFAULT_CHUNK_SIZE,
    chunk_id,
    document_id_from_chunk_id,
    split_fixed_size,
)
from fragment_store.config import DEFAULT_DIMENSION, DEFAULT_EMBEDDING_MODEL, SQLiteBackendConfig
from fragment_store.exceptions import NotFoundError, PersistenceError, ValidationError
from fragment_store.models import (
    DENORMALIZED_FIELDS,
    BackendKind,
    BatchEntry,
    DocumentChunk,
    FragmentMetadata,
    SearchOptions,
    SearchResult,
    StoreStats,
    VectorEntry,
    VerifyReport,
)
from fragment_store.similarity import cosine_similarity, matches_filters, rank

SCHEMA = """
CREATE TABLE IF NOT EXISTS embeddings (
    id TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    embedding TEXT NOT NULL,
    metadata TEXT NOT NULL,
    document_id TEXT,
    section TEXT,
    content_type TEXT,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_embeddings_document_id ON embeddings(document_id);
CREATE INDEX IF NOT EXISTS idx_embeddings_content_type ON embeddings(content_type);
CREATE INDEX IF NOT EXISTS idx_embeddings_section ON embeddings(section);

CREATE TABLE IF NOT EXISTS document_chunks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    document_id TEXT NOT NULL,
    chunk_index INTEGER NOT NULL,
    chunk_content TEXT NOT NULL,
    embedding TEXT NOT NULL,
    total_chunks INTEGER NOT NULL,
    metadata TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    UNIQUE(document_id, chunk_index)
);

CREATE INDEX IF NOT EXISTS idx_chunks_document_id ON document_chunks(document_id);
"""

UPSERT_SQL = """
INSERT INTO embeddings (
    id, content, embedding, metadata, document_id, section, content_type,
    created_at, updated_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    content = excluded.content,
    embedding = excluded.embedding,
    metadata = excluded.metadata,
    document_id = excluded.document_id,
    section = excluded.section,
    content_type = excluded.content_type,
    updated_at = excluded.updated_at
"""


def denormalized_columns(fragment_id: str, metadata: FragmentMetadata) -> tuple[str, str, str]:
    """Return the (document_id, section, content_type) column values for a row."""
    document_id = metadata.document_id
    if document_id is None:
        document_id = document_id_from_chunk_id(fragment_id) or "unknown"
    section = "default" if metadata.section is None else metadata.section
    content_type = "markdown" if metadata.content_type is None else metadata.content_type
    return document_id, section, content_type


class SQLiteVectorStore(VectorStore):
    """Vector store on an in-memory SQLite database mirrored to one file."""

    backend = BackendKind.SQLITE

    def __init__(
        self,
        config: SQLiteBackendConfig,
        embedding_model: str = DEFAULT_EMBEDDING_MODEL,
        dimension: int = DEFAULT_DIMENSION,
    ) -> None:
        super().__init__(embedding_model, dimension)
        self.config = config
        self.db_path = Path(config.db_path)
        self._conn: sqlite3.Connection | None = None

    # Lifecycle

    async def initialize(self) -> None:
        if self._conn is not None:
            return

        conn = sqlite3.connect(":memory:", isolation_level=None)
        if self.db_path.exists():
            try:
                conn.deserialize(self.db_path.read_bytes())
                conn.execute("SELECT count(*) FROM sqlite_master").fetchone()
                logger.info(f"Loaded SQLite vector store from {self.db_path}")
            except (OSError, sqlite3.DatabaseError) as e:
                logger.warning(f"Could not load {self.db_path} ({e}); starting empty")
                conn.close()
                conn = sqlite3.connect(":memory:", isolation_level=None)
        else:
            logger.info(f"No database at {self.db_path}; creating new SQLite vector store")

        try:
            conn.execute(f"PRAGMA cache_size = -{self.config.cache_size}")
            if self.config.enable_wal:
                # The in-memory working copy reports "memory" here.
                conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            conn.close()
            raise PersistenceError(f"Failed to create SQLite schema: {e}") from e

        self._conn = conn
        logger.info(f"SQLite vector store initialized ({await self._count()} chunks)")

    def is_ready(self) -> bool:
        return self._conn is not None

    async def is_empty(self) -> bool:
        return await self._count() == 0

    async def close(self) -> None:
        if self._conn is None:
            return
        await self.save()
        self._conn.close()
        self._conn = None

    # CRUD

    async def insert(
        self,
        fragment_id: str,
        content: str,
        embedding: Sequence[float],
        metadata: FragmentMetadata,
    ) -> None:
        conn = self._connection()
        self._check_dimension(fragment_id, embedding)
        try:
            conn.execute(UPSERT_SQL, self._row(fragment_id, content, embedding, metadata))
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to insert {fragment_id}: {e}") from e

    async def insert_batch(self, entries: Sequence[BatchEntry]) -> None:
        """Insert entries in one transaction.

        Entries with a missing or empty embedding are skipped with a warning
        before the transaction starts. Any failure inside the transaction,
        including a dimension mismatch, rolls back the whole batch.
        """
        conn = self._connection()
        valid = [entry for entry in entries if entry.embedding]
        skipped = len(entries) - len(valid)
        if skipped:
            logger.warning(f"Skipping {skipped} batch entries without embeddings")
        if not valid:
            return

        with self._transaction(conn):
            for entry in valid:
                self._check_dimension(entry.id, entry.embedding)
                conn.execute(
                    UPSERT_SQL,
                    self._row(entry.id, entry.content, entry.embedding, entry.metadata),
                )
        logger.debug(f"Inserted batch of {len(valid)} entries")

    async def get(self, fragment_id: str) -> VectorEntry | None:
        conn = self._connection()
        row = conn.execute(
            "SELECT id, content, embedding, metadata FROM embeddings WHERE id = ?",
            (fragment_id,),
        ).fetchone()
        return self._entry(row) if row else None

    async def delete(self, fragment_id: str) -> bool:
        conn = self._connection()
        try:
            cursor = conn.execute("DELETE FROM embeddings WHERE id = ?", (fragment_id,))
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to delete {fragment_id}: {e}") from e
        return cursor.rowcount > 0

    async def clear(self) -> None:
        conn = self._connection()
        with self._transaction(conn):
            conn.execute("DELETE FROM embeddings")
            conn.execute("DELETE FROM document_chunks")
        logger.info("Cleared SQLite vector store")

    # Search

    async def search(
        self,
        query_embedding: Sequence[float],
        options: SearchOptions | None = None,
    ) -> SearchResult:
        conn = self._connection()
        options = options or SearchOptions()
        started = time.perf_counter()

        clauses: list[str] = []
        params: list[object] = []
        for field in DENORMALIZED_FIELDS:
            allowed = options.filters.get(field)
            # Rows whose metadata lacks the field carry a default column value,
            # so a None in the allowed list is left to the Python check.
            if not allowed or None in allowed:
                continue
            clauses.append(f"{field} IN ({', '.join('?' for _ in allowed)})")
            params.extend(str(value) for value in allowed)

        sql = "SELECT id, content, embedding, metadata FROM embeddings"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY rowid"

        entries = (self._entry(row) for row in conn.execute(sql, params))
        scored = (
            (entry, cosine_similarity(query_embedding, entry.embedding))
            for entry in entries
            if not options.filters or matches_filters(entry.metadata, options.filters)
        )
        fragments, total_found = rank(scored, options)

        return SearchResult(
            fragments=fragments,
            total_found=total_found,
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
        """Split a document into fixed-size chunks and store them.

        Any chunks previously stored for ``doc_id`` are replaced. Each chunk
        gets a zero-vector placeholder embedding.
        """
        conn = self._connection()
        try:
            windows = split_fixed_size(content, chunk_size or DEFAULT_CHUNK_SIZE)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        placeholder = json.dumps([0.0] * self.dimension)
        metadata_json = metadata.model_dump_json()
        stamp = now_ms()
        with self._transaction(conn):
            conn.execute("DELETE FROM document_chunks WHERE document_id = ?", (doc_id,))
            conn.executemany(
                "INSERT INTO document_chunks (document_id, chunk_index, chunk_content, "
                "embedding, total_chunks, metadata, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    (doc_id, w.index, w.text, placeholder, len(windows), metadata_json, stamp)
                    for w in windows
                ],
            )

        logger.info(f"Stored document {doc_id} as {len(windows)} chunks")
        return [chunk_id(doc_id, w.index) for w in windows]

    async def retrieve_large_document(self, doc_id: str) -> str:
        chunks = await self.get_document_chunks(doc_id)
        if not chunks:
            raise NotFoundError(f"Document not found: {doc_id}")
        return "".join(chunk.content for chunk in chunks)

    async def get_document_chunks(self, doc_id: str) -> list[DocumentChunk]:
        conn = self._connection()
        rows = conn.execute(
            "SELECT chunk_index, chunk_content, total_chunks, metadata FROM document_chunks "
            "WHERE document_id = ? ORDER BY chunk_index",
            (doc_id,),
        ).fetchall()
        return [
            DocumentChunk(
                chunk_id=chunk_id(doc_id, index),
                chunk_index=index,
                total_chunks=total,
                content=text,
                metadata=FragmentMetadata.model_validate_json(metadata),
            )
            for index, text, total, metadata in rows
        ]

    # Management

    async def get_stats(self) -> StoreStats:
        conn = self._connection()
        total, oldest, newest = conn.execute(
            "SELECT COUNT(*), MIN(created_at), MAX(updated_at) FROM embeddings"
        ).fetchone()
        document_counts = dict(
            conn.execute("SELECT document_id, COUNT(*) FROM embeddings GROUP BY document_id")
        )
        content_type_counts = dict(
            conn.execute("SELECT content_type, COUNT(*) FROM embeddings GROUP BY content_type")
        )

        stamp = now_ms()
        return StoreStats(
            total_chunks=total,
            embedding_model=self.embedding_model,
            dimension=self.dimension,
            created_at=datetime.fromtimestamp((oldest or stamp) / 1000, UTC),
            updated_at=datetime.fromtimestamp((newest or stamp) / 1000, UTC),
            document_counts=document_counts,
            content_type_counts=content_type_counts,
            backend=self.backend,
        )

    async def export_data(self) -> str:
        conn = self._connection()
        rows = conn.execute(
            "SELECT id, content, embedding, metadata FROM embeddings ORDER BY rowid"
        ).fetchall()
        oldest, newest = conn.execute(
            "SELECT MIN(created_at), MAX(updated_at) FROM embeddings"
        ).fetchone()
        return self._interchange_json([self._entry(row) for row in rows], oldest, newest)

    async def import_data(self, data: str | bytes) -> None:
        self._connection()
        document = parse_interchange(data)
        await self.insert_batch([BatchEntry.from_entry(entry) for entry in document.entries])
        logger.info(f"Imported {len(document.entries)} chunks")

    async def save(self) -> None:
        """Write the database image atomically under a file lock."""
        conn = self._connection()
        lock_path = self.db_path.with_name(f".{self.db_path.name}.lock")
        temp_path = self.db_path.with_suffix(".tmp")
        try:
            image = conn.serialize()
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with FileLock(lock_path, timeout=30):
                with open(temp_path, "wb") as f:
                    f.write(image)
                    f.flush()
                    os.fsync(f.fileno())
                temp_path.replace(self.db_path)
        except (OSError, sqlite3.Error) as e:
            logger.error(f"Failed to save SQLite vector store: {e}")
            if temp_path.exists():
                temp_path.unlink()
            raise PersistenceError(f"Failed to save SQLite database: {e}") from e

        logger.debug(f"SQLite vector store saved to {self.db_path}")

    async def load(self) -> None:
        """No-op: the database image is read once in ``initialize()``."""

    # Maintenance

    async def optimize(self) -> None:
        conn = self._connection()
        try:
            conn.execute("VACUUM")
            conn.execute("ANALYZE")
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to optimize SQLite database: {e}") from e
        logger.info("SQLite vector store optimized")

    async def verify(self) -> VerifyReport:
        errors: list[str] = []
        if self._conn is None:
            return VerifyReport(valid=False, errors=["Store is not initialized"])

        try:
            duplicates = self._conn.execute(
                "SELECT id, COUNT(*) FROM embeddings GROUP BY id HAVING COUNT(*) > 1"
            ).fetchall()
            for fragment_id, count in duplicates:
                errors.append(f"Duplicate ID found: {fragment_id} ({count} occurrences)")

            for fragment_id, embedding in self._conn.execute(
                "SELECT id, embedding FROM embeddings"
            ):
                size = len(json.loads(embedding))
                if size != self.dimension:
                    errors.append(
                        f"Invalid embedding dimension for chunk {fragment_id}: "
                        f"expected {self.dimension}, got {size}"
                    )

            (integrity,) = self._conn.execute("PRAGMA integrity_check").fetchone()
            if integrity != "ok":
                errors.append(f"Database integrity check failed: {integrity}")
        except (sqlite3.Error, ValueError) as e:
            errors.append(f"Verification failed: {e}")

        return VerifyReport(valid=not errors, errors=errors)

    # Helpers

    def _connection(self) -> sqlite3.Connection:
        self._ensure_ready()
        assert self._conn is not None
        return self._conn

    @contextmanager
    def _transaction(self, conn: sqlite3.Connection) -> Iterator[None]:
        conn.execute("BEGIN")
        try:
            yield
        except sqlite3.Error as e:
            conn.execute("ROLLBACK")
            raise PersistenceError(f"Transaction rolled back: {e}") from e
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    async def _count(self) -> int:
        (count,) = self._connection().execute("SELECT COUNT(*) FROM embeddings").fetchone()
        return count

    def _row(
        self,
        fragment_id: str,
        content: str,
        embedding: Sequence[float],
        metadata: FragmentMetadata,
    ) -> tuple[object, ...]:
        stamp = now_ms()
        return (
            fragment_id,
            content,
            json.dumps(list(embedding)),
            metadata.model_dump_json(),
            *denormalized_columns(fragment_id, metadata),
            stamp,
            stamp,
        )

    @staticmethod
    def _entry(row: tuple[str, str, str, str]) -> VectorEntry:
        fragment_id, content, embedding, metadata = row
        return VectorEntry(
            id=fragment_id,
            content=content,
            embedding=json.loads(embedding),
            metadata=FragmentMetadata.model_validate_json(metadata),
        )
