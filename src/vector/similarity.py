"""
Similarity scoring for embedding vectors.
"""

import math
from array import array
from typing import Sequence


def to_float32(value: float) -> float:
    """Round a Python float to the nearest single-precision value."""
    return array("f", (value,))[0]


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """
    Compute cosine similarity between two vectors.

    Accumulates in double precision and rounds the result to single
    precision, so a nonzero vector compared with itself scores exactly 1.0.

    Args:
        vec_a: First vector
        vec_b: Second vector

    Returns:
        Cosine similarity between -1 and 1; 0.0 if the lengths differ or
        either vector has zero norm
    """
    if len(vec_a) != len(vec_b):
        return 0.0

    dot_product = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for a, b in zip(vec_a, vec_b):
        dot_product += a * b
        norm_a += a * a
        norm_b += b * b

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return to_float32(dot_product / (math.sqrt(norm_a) * math.sqrt(norm_b)))


def cosine_distance(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """Distance used by the ANN index: ``1 - cosine_similarity``."""
    return 1.0 - cosine_similarity(vec_a, vec_b)
