"""Exception hierarchy for the vector stores.

Every error a store raises on purpose derives from ``StoreError`` so callers
can catch the whole family at once. Driver errors (sqlite3, asyncpg, OS
errors) are wrapped in ``PersistenceError`` with the original chained.
"""


class StoreError(Exception):
    """Base exception for all vector store errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NotReadyError(StoreError):
    """Operation invoked before ``initialize()`` succeeded or after ``close()``."""


class ValidationError(StoreError):
    """Rejected input: dimension mismatch, malformed import, unsupported operation."""


class PersistenceError(StoreError):
    """Underlying file or database read/write failed."""


class IntegrityError(StoreError):
    """Duplicate id or dimension mismatch found in stored data."""


class NotFoundError(StoreError):
    """Requested large document has no stored chunks."""
