"""Small numeric primitives shared by localization, alignment and fusion."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from verifyx.errors import DegenerateVectorError, ShapeMismatchError

if TYPE_CHECKING:
    from numpy.typing import ArrayLike


def norm(a: ArrayLike, b: ArrayLike | None = None) -> float:
    """Euclidean length of ``a``, or of ``a - b`` when ``b`` is given."""
    va = np.asarray(a, dtype=np.float64).reshape(-1)
    if b is not None:
        va = va - np.asarray(b, dtype=np.float64).reshape(-1)
    return float(np.linalg.norm(va))


def cross2d(a: ArrayLike, b: ArrayLike) -> float:
    """Z component of the cross product of two 2D vectors."""
    va = np.asarray(a, dtype=np.float64).reshape(-1)
    vb = np.asarray(b, dtype=np.float64).reshape(-1)
    if va.size != 2 or vb.size != 2:
        raise ShapeMismatchError(f"cross2d expects 2D vectors, got sizes {va.size} and {vb.size}")
    return float(va[0] * vb[1] - va[1] * vb[0])


def cosine_similarity(a: ArrayLike, b: ArrayLike) -> float:
    """Cosine similarity of two flattened vectors.

    Raises:
        ShapeMismatchError: If the vectors differ in length.
        DegenerateVectorError: If either vector is all zeros.
    """
    va = np.asarray(a, dtype=np.float64).reshape(-1)
    vb = np.asarray(b, dtype=np.float64).reshape(-1)
    if va.size != vb.size:
        raise ShapeMismatchError(f"vectors must have the same length ({va.size} != {vb.size})")

    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        raise DegenerateVectorError("zero vector encountered")
    return float(np.dot(va, vb) / (na * nb))
