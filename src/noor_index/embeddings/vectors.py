"""
Vector helpers shared by the build and retrieval paths.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np


def normalize_vector(vector: Sequence[float]) -> np.ndarray:
    """
    Scale a vector to unit L2 magnitude so inner product equals cosine
    similarity.

    The zero vector is returned unchanged.
    """
    arr = np.asarray(vector, dtype="float32")
    magnitude = float(np.linalg.norm(arr))
    if magnitude == 0.0:
        return arr
    return arr / magnitude
