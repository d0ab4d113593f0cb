"""In-memory vector store persisted as a single JSON snapshot.

Best for small collections (up to roughly ten thousand fragments). Search is
a brute-force linear scan. Writes stay in memory until ``save()`` writes the
whole collection to disk, so callers should save after each mutation batch.
"""

import os
import time
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

from filelock import FileLock
from loguru import logger

from fragment_store.base import VectorStore, now_ms, parse_interchange
from fragment_store.config import DEFAULT_DIMENSION, DEFAULT_EMBEDDING_MODEL, JSONBackendConfig
from fragment_store.exceptions import PersistenceError, ValidationError
from fragment_store.models import (
    BackendKind,
    BatchEntry,
    DocumentChunk,
    FragmentMetadata,
    InterchangeDocument,
    SearchOptions,
    SearchResult,
    StoreStats,
    VectorEntry,
    VerifyReport,
)
from fragment_store.similarity import cosine_similarity, matches_filters, rank

# Rough per-entry overhead for content and metadata when estimating memory.
_METADATA_BYTES_ESTIMATE = 500


class JSONVectorStore(VectorStore):
    """Vector store holding every entry in one ordered in-memory list.

    The collection's dimension is fixed by the first inserted embedding.
    """

    backend = BackendKind.JSON

    def __init__(
        self,
        config: JSONBackendConfig,
        embedding_model: str = DEFAULT_EMBEDDING_MODEL,
        dimension: int = DEFAULT_DIMENSION,
    ) -> None:
        """Initialize the store.

        Args:
            config: Location of the snapshot file
            embedding_model: Model name recorded in new snapshots
            dimension: Dimension reported before the first insert
        """
        super().__init__(embedding_model, dimension)
        self.config = config
        self.index_path = Path(config.index_path)
        self._index: InterchangeDocument | None = None
        self._loaded = False

    # Lifecycle

    async def initialize(self) -> None:
        if self._loaded:
            return
        try:
            await self.load()
            count = self._index.total_chunks if self._index else 0
            logger.info(f"JSON vector store initialized with {count} chunks")
        except PersistenceError as e:
            logger.info(f"No usable index at {self.index_path} ({e}); starting empty")
        self._loaded = True

    def is_ready(self) -> bool:
        return self._loaded

    async def is_empty(self) -> bool:
        self._ensure_ready()
        return self._index is None or not self._index.entries

    async def close(self) -> None:
        if self._loaded and self._index is not None:
            await self.save()
        self._loaded = False

    # CRUD

    async def insert(
        self,
        fragment_id: str,
        content: str,
        embedding: Sequence[float],
        metadata: FragmentMetadata,
    ) -> None:
        self._ensure_ready()
        if not embedding:
            raise ValidationError(f"Embedding for {fragment_id} is empty")
        if self._index is None:
            self._index = self._create_empty_index(len(embedding))
        self._check_dimension(fragment_id, embedding)

        entry = VectorEntry(
            id=fragment_id,
            embedding=list(embedding),
            content=content,
            metadata=metadata.model_copy(deep=True),
        )
        position = self._find(fragment_id)
        if position is None:
            self._index.entries.append(entry)
            self._index.total_chunks += 1
        else:
            self._index.entries[position] = entry
        self._index.updated_at = now_ms()

    async def insert_batch(self, entries: Sequence[BatchEntry]) -> None:
        """Insert entries one by one.

        There is no transaction: a dimension mismatch part-way through leaves
        the earlier entries of the batch in place.
        """
        if not entries:
            return
        self._ensure_ready()
        for entry in entries:
            await self.insert(entry.id, entry.content, entry.embedding, entry.metadata)

    async def get(self, fragment_id: str) -> VectorEntry | None:
        self._ensure_ready()
        position = self._find(fragment_id)
        if position is None:
            return None
        assert self._index is not None
        return self._index.entries[position].model_copy(deep=True)

    async def delete(self, fragment_id: str) -> bool:
        self._ensure_ready()
        position = self._find(fragment_id)
        if position is None:
            return False

        assert self._index is not None
        del self._index.entries[position]
        self._index.total_chunks = len(self._index.entries)
        self._index.updated_at = now_ms()
        await self.save()
        return True

    async def clear(self) -> None:
        self._ensure_ready()
        if self._index is None:
            return
        self._index.entries = []
        self._index.total_chunks = 0
        self._index.updated_at = now_ms()
        await self.save()

    # Search

    async def search(
        self,
        query_embedding: Sequence[float],
        options: SearchOptions | None = None,
    ) -> SearchResult:
        self._ensure_ready()
        options = options or SearchOptions()
        if self._index is None or not self._index.entries:
            return SearchResult()

        started = time.perf_counter()
        candidates = [
            entry
            for entry in self._index.entries
            if not options.filters or matches_filters(entry.metadata, options.filters)
        ]
        scored = (
            (entry, cosine_similarity(query_embedding, entry.embedding)) for entry in candidates
        )
        fragments, total_found = rank(scored, options)

        return SearchResult(
            fragments=fragments,
            total_found=total_found,
            query_time_ms=(time.perf_counter() - started) * 1000,
        )

    # Large documents

    def supports_chunking(self) -> bool:
        return False

    async def insert_large_document(
        self,
        doc_id: str,
        content: str,
        metadata: FragmentMetadata,
        chunk_size: int | None = None,
    ) -> list[str]:
        raise self._unsupported("Large document chunking")

    async def retrieve_large_document(self, doc_id: str) -> str:
        raise self._unsupported("Large document retrieval")

    async def get_document_chunks(self, doc_id: str) -> list[DocumentChunk]:
        raise self._unsupported("Document chunks")

    # Management

    async def get_stats(self) -> StoreStats:
        self._ensure_ready()
        if self._index is None:
            now = datetime.now(UTC)
            return StoreStats(
                total_chunks=0,
                embedding_model=self.embedding_model,
                dimension=self.dimension,
                created_at=now,
                updated_at=now,
                memory_usage=0,
                backend=self.backend,
            )

        document_counts: dict[str, int] = {}
        content_type_counts: dict[str, int] = {}
        for entry in self._index.entries:
            doc_id = entry.metadata.document_id or "unknown"
            content_type = entry.metadata.content_type or "unknown"
            document_counts[doc_id] = document_counts.get(doc_id, 0) + 1
            content_type_counts[content_type] = content_type_counts.get(content_type, 0) + 1

        embedding_bytes = self._index.dimension * 8  # float64
        memory_usage = self._index.total_chunks * (embedding_bytes + _METADATA_BYTES_ESTIMATE)

        return StoreStats(
            total_chunks=self._index.total_chunks,
            embedding_model=self._index.embedding_model,
            dimension=self._index.dimension,
            created_at=datetime.fromtimestamp(self._index.created_at / 1000, UTC),
            updated_at=datetime.fromtimestamp(self._index.updated_at / 1000, UTC),
            memory_usage=memory_usage,
            document_counts=document_counts,
            content_type_counts=content_type_counts,
            backend=self.backend,
        )

    async def export_data(self) -> str:
        self._ensure_ready()
        if self._index is None:
            return self._interchange_json([])
        return self._index.to_json()

    async def import_data(self, data: str | bytes) -> None:
        """Replace the whole collection with an interchange document, then save."""
        self._ensure_ready()
        imported = parse_interchange(data)
        for entry in imported.entries:
            if len(entry.embedding) != imported.dimension:
                raise ValidationError(
                    f"Dimension mismatch for {entry.id}: expected {imported.dimension}, "
                    f"got {len(entry.embedding)}"
                )
        imported.total_chunks = len(imported.entries)
        self._index = imported
        self.dimension = imported.dimension
        self.embedding_model = imported.embedding_model
        await self.save()
        logger.info(f"Imported {imported.total_chunks} chunks")

    async def save(self) -> None:
        """Write the snapshot atomically (temp file, fsync, rename) under a file lock."""
        if self._index is None:
            logger.warning("Creating empty index to save")
            self._index = self._create_empty_index(self.dimension)

        lock_path = self.index_path.with_name(f".{self.index_path.name}.lock")
        temp_path = self.index_path.with_suffix(".tmp")
        try:
            self.index_path.parent.mkdir(parents=True, exist_ok=True)
            with FileLock(lock_path, timeout=30):
                with open(temp_path, "w", encoding="utf-8") as f:
                    f.write(self._index.to_json())
                    f.flush()
                    os.fsync(f.fileno())
                temp_path.replace(self.index_path)
        except OSError as e:
            logger.error(f"Failed to save vector store: {e}")
            if temp_path.exists():
                temp_path.unlink()
            raise PersistenceError(f"Failed to save vector store index: {e}") from e

        logger.debug(f"Vector store saved: {self._index.total_chunks} chunks")

    async def load(self) -> None:
        """Replace in-memory state with the snapshot on disk.

        Raises:
            PersistenceError: If the file is missing, unreadable or malformed
        """
        try:
            raw = self.index_path.read_text(encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"Failed to load vector store index: {e}") from e

        try:
            index = parse_interchange(raw)
        except ValidationError as e:
            raise PersistenceError(f"Failed to load vector store index: {e.message}") from e

        mismatched = [
            entry.id for entry in index.entries if len(entry.embedding) != index.dimension
        ]
        if mismatched:
            logger.warning(
                f"Skipping {len(mismatched)} entries whose dimension is not {index.dimension}: "
                f"{', '.join(mismatched)}"
            )
            index.entries = [
                entry for entry in index.entries if len(entry.embedding) == index.dimension
            ]
            index.total_chunks = len(index.entries)

        self._index = index
        self.dimension = index.dimension
        self.embedding_model = index.embedding_model
        logger.debug(f"Vector store loaded: {index.total_chunks} chunks")

    # Maintenance

    async def optimize(self) -> None:
        logger.info("JSON vector store does not require optimization")

    async def verify(self) -> VerifyReport:
        errors: list[str] = []
        if self._index is None:
            return VerifyReport(valid=False, errors=["No index loaded"])

        seen: set[str] = set()
        for entry in self._index.entries:
            if entry.id in seen:
                errors.append(f"Duplicate chunk ID: {entry.id}")
            seen.add(entry.id)

            if len(entry.embedding) != self._index.dimension:
                errors.append(
                    f"Invalid embedding dimension for chunk {entry.id}: "
                    f"expected {self._index.dimension}, got {len(entry.embedding)}"
                )

        if len(self._index.entries) != self._index.total_chunks:
            errors.append(
                f"Chunk count mismatch: index says {self._index.total_chunks}, "
                f"found {len(self._index.entries)}"
            )

        return VerifyReport(valid=not errors, errors=errors)

    # Helpers

    def _find(self, fragment_id: str) -> int | None:
        if self._index is None:
            return None
        for position, entry in enumerate(self._index.entries):
            if entry.id == fragment_id:
                return position
        return None

    def _create_empty_index(self, dimension: int) -> InterchangeDocument:
        self.dimension = dimension
        stamp = now_ms()
        return InterchangeDocument(
            embedding_model=self.embedding_model,
            dimension=dimension,
            total_chunks=0,
            created_at=stamp,
            updated_at=stamp,
            entries=[],
        )
