"""Rank fusion and vector ranking.

Pure functions; the store feeds them candidate ids and vectors.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, TypeVar

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Hashable, Sequence

K = TypeVar("K", bound="Hashable")

DEFAULT_RRF_K = 60


def reciprocal_rank_fusion(rankings: Sequence[Sequence[K]], k: int = DEFAULT_RRF_K) -> list[K]:
    """Fuse ranked lists with Reciprocal Rank Fusion.

    Each list adds ``1 / (k + rank + 1)`` to an item's score, with ``rank``
    its 0-based position in that list. Raw retrieval scores are never used,
    so lists with incomparable scales (BM25, cosine) fuse cleanly.

    Returns ids by fused score, highest first. Ties keep first-seen order.
    """
    if k <= 0:
        raise ValueError("k must be positive")

    scores: dict[K, float] = {}
    for ranking in rankings:
        for rank, item in enumerate(ranking):
            scores[item] = scores.get(item, 0.0) + 1.0 / (k + rank + 1)

    # sorted() is stable, so equal scores keep insertion (first-seen) order.
    return sorted(scores, key=lambda item: scores[item], reverse=True)


def rank_by_similarity(
    query_vector: np.ndarray,
    candidates: Sequence[tuple[K, np.ndarray]],
    limit: int,
) -> list[K]:
    """Return the ids of the ``limit`` vectors most similar to ``query_vector``.

    All vectors are L2-normalised, so cosine similarity is the dot product.
    """
    if not candidates or limit <= 0:
        return []
    ids = [item for item, _ in candidates]
    matrix = np.vstack([vector for _, vector in candidates]).astype(np.float32, copy=False)
    scores = matrix @ query_vector.astype(np.float32, copy=False)
    order = np.argsort(-scores, kind="stable")[:limit]
    return [ids[i] for i in order]


def vector_to_blob(vector: np.ndarray) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def blob_to_vector(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32)
