"""Unit tests for alegradocs.retrieval."""

from __future__ import annotations

import numpy as np
import pytest

from alegradocs.retrieval import (
    blob_to_vector,
    rank_by_similarity,
    reciprocal_rank_fusion,
    vector_to_blob,
)


def _unit(*values: float) -> np.ndarray:
    vector = np.array(values, dtype=np.float32)
    return vector / np.linalg.norm(vector)


class TestReciprocalRankFusion:
    @pytest.mark.parametrize("k", [1, 60, 1000])
    def test_item_first_in_every_list_stays_first(self, k: int) -> None:
        fused = reciprocal_rank_fusion([[7, 3, 9], [7, 9, 4]], k=k)
        assert fused[0] == 7

    def test_item_in_both_lists_beats_single_list_item(self) -> None:
        fused = reciprocal_rank_fusion([[1, 2], [3, 2]])
        assert fused[0] == 2

    def test_ties_keep_first_seen_order(self) -> None:
        assert reciprocal_rank_fusion([["a", "b"], ["c", "d"]]) == ["a", "c", "b", "d"]

    def test_union_of_all_lists(self) -> None:
        assert set(reciprocal_rank_fusion([[1], [2], [3, 1]])) == {1, 2, 3}

    def test_empty(self) -> None:
        assert reciprocal_rank_fusion([[], []]) == []

    @pytest.mark.parametrize("k", [0, -5])
    def test_non_positive_k_rejected(self, k: int) -> None:
        with pytest.raises(ValueError, match="k must be positive"):
            reciprocal_rank_fusion([[1]], k=k)


class TestRankBySimilarity:
    def test_most_similar_first(self) -> None:
        candidates = [
            ("far", _unit(0.0, 1.0)),
            ("near", _unit(1.0, 0.1)),
            ("middle", _unit(1.0, 1.0)),
        ]
        assert rank_by_similarity(_unit(1.0, 0.0), candidates, limit=3) == [
            "near",
            "middle",
            "far",
        ]

    def test_limit(self) -> None:
        candidates = [(i, _unit(1.0, float(i))) for i in range(10)]
        assert rank_by_similarity(_unit(1.0, 0.0), candidates, limit=2) == [0, 1]

    def test_no_candidates(self) -> None:
        assert rank_by_similarity(_unit(1.0, 0.0), [], limit=5) == []


class TestBlobs:
    def test_float32_bytes(self) -> None:
        vector = np.array([0.5, -1.25, 3.0], dtype=np.float64)
        blob = vector_to_blob(vector)
        assert len(blob) == 3 * 4
        restored = blob_to_vector(blob)
        assert restored.dtype == np.float32
        np.testing.assert_array_equal(restored, vector.astype(np.float32))
