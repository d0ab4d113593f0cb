"""Fixed-size slicing for large-document storage.

Large documents are partitioned into consecutive windows of at most
``chunk_size`` characters: no overlap, no boundary detection. Concatenating
the windows in index order reproduces the original content exactly.
"""

from dataclasses import dataclass

DEFAULT_CHUNK_SIZE = 50_000


@dataclass(frozen=True)
class ContentWindow:
    """A single slice of a large document.

    Attributes:
        text: Slice content
        start: Starting character offset in the original content
        end: Ending character offset (exclusive)
        index: 0-indexed position in the list of slices
    """

    text: str
    start: int
    end: int
    index: int

    def __post_init__(self) -> None:
        """Validate window properties."""
        if not self.text:
            raise ValueError("Window text cannot be empty")
        if self.start < 0 or self.end <= self.start:
            raise ValueError(f"Invalid offsets: start={self.start}, end={self.end}")
        if self.index < 0:
            raise ValueError(f"index must be non-negative, got {self.index}")


def chunk_id(doc_id: str, index: int) -> str:
    """Return the identifier of the ``index``-th chunk of ``doc_id``."""
    return f"{doc_id}_chunk_{index}"


def document_id_from_chunk_id(fragment_id: str) -> str | None:
    """Recover the document id prefix from a ``{doc}_chunk_{n}`` identifier."""
    prefix, sep, _ = fragment_id.partition("_chunk_")
    return prefix if sep and prefix else None


def split_fixed_size(content: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> list[ContentWindow]:
    """Split content into consecutive fixed-size windows.

    Args:
        content: Raw document content
        chunk_size: Maximum characters per window

    Returns:
        Windows in order; empty content yields an empty list

    Raises:
        ValueError: If chunk_size is not positive

    Example:
        >>> [w.text for w in split_fixed_size("abcdefg", chunk_size=3)]
        ['abc', 'def', 'g']
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")

    return [
        ContentWindow(
            text=content[start : start + chunk_size],
            start=start,
            end=min(start + chunk_size, len(content)),
            index=index,
        )
        for index, start in enumerate(range(0, len(content), chunk_size))
    ]
