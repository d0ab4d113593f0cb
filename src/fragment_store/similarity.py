"""Similarity scoring, metadata filtering and ranking.

These pure functions define the search semantics every backend must
reproduce, whether it scores rows itself or lets the database do it.
"""

from collections.abc import Iterable, Mapping, Sequence

import numpy as np

from fragment_store.exceptions import ValidationError
from fragment_store.models import (
    FragmentMetadata,
    RetrievedFragment,
    Scalar,
    SearchOptions,
    VectorEntry,
)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Compute ``dot(a, b) / (|a| * |b|)``.

    Returns 0.0 when either vector has zero magnitude.

    Raises:
        ValidationError: If the vectors differ in length
    """
    if len(a) != len(b):
        raise ValidationError(f"Vectors must have the same length: {len(a)} != {len(b)}")

    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (norm_a * norm_b))


def matches_filters(metadata: FragmentMetadata, filters: Mapping[str, Sequence[Scalar]]) -> bool:
    """Return True if metadata satisfies every filter field.

    A field passes when one of its allowed values equals the scalar value, or
    appears in the list value. Fields with no allowed values are ignored.
    """
    for key, allowed in filters.items():
        if not allowed:
            continue
        value = metadata.get(key)
        if isinstance(value, list):
            if not any(candidate in value for candidate in allowed):
                return False
        elif value not in allowed:
            return False
    return True


def rank(
    scored: Iterable[tuple[VectorEntry, float]],
    options: SearchOptions,
) -> tuple[list[RetrievedFragment], int]:
    """Threshold, sort and truncate scored entries.

    Sorting is stable, so equal scores keep the order the caller supplied.

    Returns:
        Tuple of (top_k fragments, count surviving the threshold)
    """
    kept = [(entry, score) for entry, score in scored if score >= options.score_threshold]
    kept.sort(key=lambda pair: pair[1], reverse=True)

    fragments = [
        RetrievedFragment(
            id=entry.id,
            content=entry.content,
            metadata=entry.metadata.model_copy(deep=True),
            score=score,
            embedding=list(entry.embedding) if options.include_embeddings else None,
        )
        for entry, score in kept[: options.top_k]
    ]
    return fragments, len(kept)
