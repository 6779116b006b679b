"""
Unit tests for cosine similarity scoring.

Tests for:
- Exact self-similarity after single-precision rounding
- Degenerate inputs (mismatched lengths, zero vectors)
- Symmetry
"""

import math

import pytest

from vector.similarity import cosine_distance, cosine_similarity, to_float32


class TestCosineSimilarity:
    """Tests for the cosine_similarity function."""

    @pytest.mark.parametrize("vec", [
        [1.0, 2.0, 3.0],
        [0.1, 0.7, -0.3, 0.2],
        [1e-3, 5e4],
        [0.3] * 768,
    ])
    def test_self_similarity_is_exactly_one(self, vec):
        """Test a nonzero vector compared with itself scores exactly 1.0."""
        assert cosine_similarity(vec, vec) == 1.0

    def test_orthogonal_vectors(self):
        """Test similarity of orthogonal vectors is 0.0."""
        assert cosine_similarity([1.0, 0.0, 0.0], [0.0, 1.0, 0.0]) == 0.0

    def test_opposite_vectors(self):
        """Test similarity of opposite vectors is -1.0."""
        assert cosine_similarity([1.0, 0.0, 0.0], [-1.0, 0.0, 0.0]) == -1.0

    def test_forty_five_degrees(self):
        """Test similarity of vectors 45 degrees apart."""
        similarity = cosine_similarity([1.0, 0.0], [1.0, 1.0])

        assert abs(similarity - 1.0 / math.sqrt(2)) < 1e-6

    def test_mismatched_lengths_return_zero(self):
        """Test mismatched dimensions score 0 instead of raising."""
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0]) == 0.0

    def test_zero_vector_returns_zero(self):
        """Test any zero vector scores 0."""
        assert cosine_similarity([1.0, 2.0, 3.0], [0.0, 0.0, 0.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [0.0, 0.0]) == 0.0

    def test_empty_vectors_return_zero(self):
        """Test two empty vectors score 0."""
        assert cosine_similarity([], []) == 0.0

    def test_symmetric(self):
        """Test sim(a, b) == sim(b, a)."""
        pairs = [
            ([0.2, 0.9, 0.1], [0.8, 0.1, 0.3]),
            ([1.0, -2.0], [3.0, 0.5]),
            ([0.0, 1.0], [1.0, 2.0]),
        ]
        for a, b in pairs:
            assert cosine_similarity(a, b) == cosine_similarity(b, a)

    def test_result_is_single_precision(self):
        """Test the result is representable as float32."""
        similarity = cosine_similarity([0.1, 0.2, 0.3], [0.3, 0.2, 0.1])

        assert to_float32(similarity) == similarity

    def test_scale_invariant(self):
        """Test scaling a vector does not change its similarity."""
        a = [0.3, 0.4, 0.5]
        b = [1.0, 0.0, 1.0]

        assert cosine_similarity(a, b) == cosine_similarity([x * 4 for x in a], b)


class TestCosineDistance:
    """Tests for the ANN distance metric."""

    def test_identical_is_zero(self):
        """Test distance to itself is 0."""
        assert cosine_distance([0.5, 0.5], [0.5, 0.5]) == 0.0

    def test_opposite_is_two(self):
        """Test distance between opposite vectors is 2."""
        assert cosine_distance([1.0, 0.0], [-1.0, 0.0]) == 2.0
