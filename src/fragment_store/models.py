"""Pydantic models for vector store data structures.

All data flowing through the stores is validated against these schemas.
This keeps every backend honest about the shape of what it accepts and
returns, and gives the interchange document a single definition.
"""

import math
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Scalar = str | int | float | bool | None
MetadataValue = Scalar | list[Scalar]

INTERCHANGE_VERSION = "1.0"

# Metadata fields mirrored into dedicated columns by the relational backends.
DENORMALIZED_FIELDS = ("document_id", "section", "content_type")


class BackendKind(str, Enum):
    """Concrete storage engines implementing the store contract."""

    JSON = "json"
    SQLITE = "sqlite"
    PGVECTOR = "pgvector"


class FragmentMetadata(BaseModel):
    """Structured attributes attached to a stored fragment.

    The well-known fields are typed; anything else (tags, keywords, folder
    paths, timestamps...) is kept as an extra field. Every value is either a
    scalar or a list of scalars, so filter matching can treat them uniformly.

    Attributes:
        document_id: Groups fragments that come from the same source document
        section: Heading path or section label within the document
        content_type: Kind of content (markdown, code, reference...)
    """

    model_config = ConfigDict(extra="allow")

    document_id: str | None = None
    section: str | None = None
    content_type: str | None = None

    @model_validator(mode="after")
    def validate_extra_values(self) -> "FragmentMetadata":
        """Ensure free-form fields hold scalars or flat lists of scalars."""
        for key, value in (self.model_extra or {}).items():
            if isinstance(value, list):
                if any(isinstance(item, (list, dict)) for item in value):
                    raise ValueError(f"metadata field {key!r} must be a flat list of scalars")
            elif isinstance(value, dict):
                raise ValueError(f"metadata field {key!r} must be a scalar or a list of scalars")
        return self

    def get(self, key: str, default: Any = None) -> Any:
        """Return a metadata value by name, whether declared or free-form."""
        if key in type(self).model_fields:
            return getattr(self, key)
        return (self.model_extra or {}).get(key, default)


class VectorEntry(BaseModel):
    """One stored fragment.

    Attributes:
        id: Identifier, unique within a store
        embedding: Embedding vector (length equals the store dimension)
        content: Fragment text
        metadata: Attributes used for filtering and display
    """

    id: str = Field(min_length=1)
    embedding: list[float]
    content: str
    metadata: FragmentMetadata = Field(default_factory=FragmentMetadata)

    @field_validator("embedding")
    @classmethod
    def validate_embedding_values(cls, v: list[float]) -> list[float]:
        """Ensure the embedding contains only finite floats."""
        for i, val in enumerate(v):
            if not math.isfinite(val):
                raise ValueError(f"Embedding contains non-finite value at index {i}: {val}")
        return v


class BatchEntry(BaseModel):
    """Unit of bulk insertion produced by an ingestion pipeline.

    Unlike ``VectorEntry`` the embedding may be missing or empty; whether such
    an entry is skipped or fails the whole batch depends on the backend.
    """

    id: str = Field(min_length=1)
    content: str
    embedding: list[float] = Field(default_factory=list)
    metadata: FragmentMetadata = Field(default_factory=FragmentMetadata)

    @classmethod
    def from_entry(cls, entry: VectorEntry) -> "BatchEntry":
        return cls(
            id=entry.id,
            content=entry.content,
            embedding=entry.embedding,
            metadata=entry.metadata,
        )


class DocumentChunk(BaseModel):
    """One fixed-size piece of a large document.

    Attributes:
        chunk_id: Identifier of the form ``{doc_id}_chunk_{index}``
        chunk_index: 0-indexed position within the document
        total_chunks: Number of chunks the document was split into
        content: Raw content of this piece
        metadata: Metadata of the source document
    """

    chunk_id: str
    chunk_index: int = Field(ge=0)
    total_chunks: int = Field(ge=1)
    content: str
    metadata: FragmentMetadata = Field(default_factory=FragmentMetadata)


class SearchOptions(BaseModel):
    """Options for a similarity search.

    Attributes:
        top_k: Maximum number of ranked results (default 5)
        score_threshold: Minimum cosine similarity to keep a result (default 0.0)
        filters: Metadata field name -> allowed values (ANDed across fields)
        include_embeddings: Whether results carry their embedding vectors
    """

    top_k: int = Field(default=5, ge=1)
    score_threshold: float = Field(default=0.0, ge=-1.0, le=1.0)
    filters: dict[str, list[Scalar]] = Field(default_factory=dict)
    include_embeddings: bool = False


class RetrievedFragment(BaseModel):
    """A single ranked search hit."""

    id: str
    content: str
    metadata: FragmentMetadata
    score: float
    embedding: list[float] | None = None


class SearchResult(BaseModel):
    """Ranked hits plus bookkeeping about the query.

    Attributes:
        fragments: Ranked hits, best first
        total_found: Hits surviving filters and threshold, before the top-k cut
        query_time_ms: Wall-clock time spent answering the query
    """

    fragments: list[RetrievedFragment] = Field(default_factory=list)
    total_found: int = Field(default=0, ge=0)
    query_time_ms: float = Field(default=0.0, ge=0.0)


class StoreStats(BaseModel):
    """Point-in-time summary of a store.

    Attributes:
        total_chunks: Number of stored entries
        embedding_model: Embedding model the store is configured for
        dimension: Embedding dimensionality
        created_at: Creation timestamp of the oldest data
        updated_at: Timestamp of the most recent write
        memory_usage: Estimated bytes held in memory (in-memory backend only)
        document_counts: Entry count per document_id
        content_type_counts: Entry count per content_type
        backend: Backend that produced these stats
    """

    total_chunks: int = Field(ge=0)
    embedding_model: str
    dimension: int = Field(ge=0)
    created_at: datetime
    updated_at: datetime
    memory_usage: int | None = None
    document_counts: dict[str, int] = Field(default_factory=dict)
    content_type_counts: dict[str, int] = Field(default_factory=dict)
    backend: BackendKind


class VerifyReport(BaseModel):
    """Outcome of an integrity scan; never raised, always returned."""

    valid: bool
    errors: list[str] = Field(default_factory=list)


class InterchangeDocument(BaseModel):
    """Canonical export/import document shared by every backend.

    Wire keys are camelCase and timestamps are epoch milliseconds so that
    files written by one backend can be read by any other.
    """

    model_config = ConfigDict(populate_by_name=True)

    version: str = INTERCHANGE_VERSION
    embedding_model: str = Field(alias="embeddingModel")
    dimension: int = Field(ge=0)
    total_chunks: int = Field(default=0, ge=0, alias="totalChunks")
    created_at: int = Field(alias="createdAt")
    updated_at: int = Field(alias="updatedAt")
    entries: list[VectorEntry] = Field(default_factory=list)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)
