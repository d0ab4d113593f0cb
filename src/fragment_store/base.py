"""Abstract vector store contract shared by every backend.

Every method that touches storage is a coroutine. The contract provides no
internal locking: concurrent calls on one instance may interleave, including
read-modify-write races on the same id. The stores assume a single logical
writer; callers needing per-document atomicity (delete a document's
fragments, then insert the new ones) must serialize those calls themselves,
for example behind one ``asyncio.Lock`` at the call site.
"""

import json
import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any, ClassVar

from pydantic import ValidationError as PydanticValidationError

from fragment_store.exceptions import NotReadyError, ValidationError
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


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def parse_interchange(data: str | bytes) -> InterchangeDocument:
    """Parse and validate an interchange document.

    The ``entries`` field is checked for presence and array type before the
    document is accepted, so a malformed file never reaches storage.

    Raises:
        ValidationError: If the payload is not a valid interchange document
    """
    try:
        raw: Any = json.loads(data)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Import payload is not valid JSON: {e}") from e

    if not isinstance(raw, dict) or not isinstance(raw.get("entries"), list):
        raise ValidationError("Invalid export format: 'entries' must be an array")

    try:
        return InterchangeDocument.model_validate(raw)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid export format: {e}") from e


class VectorStore(ABC):
    """Backend-agnostic contract for fragment storage and similarity search.

    Instances are also async context managers: entering initializes the
    store, leaving closes it.
    """

    backend: ClassVar[BackendKind]

    def __init__(self, embedding_model: str, dimension: int) -> None:
        self.embedding_model = embedding_model
        self.dimension = dimension

    # Lifecycle

    @abstractmethod
    async def initialize(self) -> None:
        """Open connections and load persisted data.

        Idempotent. Succeeds with no prior persisted data by creating an
        empty store.
        """
        ...

    @abstractmethod
    def is_ready(self) -> bool:
        """Return True if the store accepts operations."""
        ...

    @abstractmethod
    async def is_empty(self) -> bool:
        """Return True if no entries are stored."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Flush pending state and release resources."""
        ...

    # CRUD

    @abstractmethod
    async def insert(
        self,
        fragment_id: str,
        content: str,
        embedding: Sequence[float],
        metadata: FragmentMetadata,
    ) -> None:
        """Insert or replace a single entry.

        Raises:
            ValidationError: If the embedding does not match the store dimension
        """
        ...

    @abstractmethod
    async def insert_batch(self, entries: Sequence[BatchEntry]) -> None:
        """Insert or replace many entries as one unit.

        Backends differ on malformed entries; see each implementation.
        """
        ...

    async def upsert(self, entry: VectorEntry) -> None:
        """Insert or replace from a full entry value."""
        await self.insert(entry.id, entry.content, entry.embedding, entry.metadata)

    @abstractmethod
    async def get(self, fragment_id: str) -> VectorEntry | None:
        """Return the entry with this id, or None if absent."""
        ...

    @abstractmethod
    async def delete(self, fragment_id: str) -> bool:
        """Remove an entry; return whether one was removed."""
        ...

    @abstractmethod
    async def clear(self) -> None:
        """Remove every entry (and every large-document chunk)."""
        ...

    # Search

    @abstractmethod
    async def search(
        self,
        query_embedding: Sequence[float],
        options: SearchOptions | None = None,
    ) -> SearchResult:
        """Rank stored entries by cosine similarity to the query.

        Filters are applied first, then the score threshold, then the top-k
        cut. ``total_found`` counts hits before the cut.
        """
        ...

    # Large documents

    @abstractmethod
    def supports_chunking(self) -> bool:
        """Return True if large-document storage is available."""
        ...

    @abstractmethod
    async def insert_large_document(
        self,
        doc_id: str,
        content: str,
        metadata: FragmentMetadata,
        chunk_size: int | None = None,
    ) -> list[str]:
        """Store a large document as fixed-size chunks; return the chunk ids."""
        ...

    @abstractmethod
    async def retrieve_large_document(self, doc_id: str) -> str:
        """Reassemble a large document from its chunks."""
        ...

    @abstractmethod
    async def get_document_chunks(self, doc_id: str) -> list[DocumentChunk]:
        """Return a large document's chunks in index order."""
        ...

    # Management

    @abstractmethod
    async def get_stats(self) -> StoreStats:
        """Return a point-in-time summary of the store."""
        ...

    @abstractmethod
    async def export_data(self) -> str:
        """Serialize all entries as an interchange document (JSON)."""
        ...

    @abstractmethod
    async def import_data(self, data: str | bytes) -> None:
        """Load entries from an interchange document.

        Raises:
            ValidationError: If the document is malformed; nothing is written
        """
        ...

    @abstractmethod
    async def save(self) -> None:
        """Persist current state (no-op where writes are already durable)."""
        ...

    @abstractmethod
    async def load(self) -> None:
        """Reload from persistent storage (no-op where not applicable)."""
        ...

    @abstractmethod
    async def optimize(self) -> None:
        """Run backend-specific housekeeping."""
        ...

    @abstractmethod
    async def verify(self) -> VerifyReport:
        """Scan for integrity problems. Never raises."""
        ...

    def get_backend(self) -> BackendKind:
        """Return which concrete backend this instance is."""
        return self.backend

    # Shared helpers

    def _ensure_ready(self) -> None:
        if not self.is_ready():
            raise NotReadyError(
                f"{type(self).__name__} is not initialized. Call initialize() first."
            )

    def _check_dimension(self, fragment_id: str, embedding: Sequence[float]) -> None:
        if len(embedding) != self.dimension:
            raise ValidationError(
                f"Invalid embedding dimension for {fragment_id}: "
                f"expected {self.dimension}, got {len(embedding)}"
            )

    def _unsupported(self, operation: str) -> ValidationError:
        return ValidationError(
            f"{operation} is not supported by the {self.backend.value} backend. "
            "Use the sqlite or pgvector backend for this feature."
        )

    def _interchange_json(
        self,
        entries: list[VectorEntry],
        created_at: int | None = None,
        updated_at: int | None = None,
    ) -> str:
        stamp = now_ms()
        document = InterchangeDocument(
            embedding_model=self.embedding_model,
            dimension=self.dimension,
            total_chunks=len(entries),
            created_at=created_at or stamp,
            updated_at=updated_at or stamp,
            entries=entries,
        )
        return document.to_json()

    async def __aenter__(self) -> "VectorStore":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
