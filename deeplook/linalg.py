"""Vector primitives for comparing face encodings.

Every match and cluster decision in the library reduces to :func:`distance`
between two L2-normalized encodings. All computation is done in float64.
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Union

import numpy as np

from deeplook.errors import DimensionMismatchError

VectorLike = Union[Sequence[float], np.ndarray]


def _as_vector(vec: VectorLike) -> np.ndarray:
    return np.asarray(vec, dtype=np.float64).reshape(-1)


def _check_pair(a: VectorLike, b: VectorLike) -> tuple[np.ndarray, np.ndarray]:
    va = _as_vector(a)
    vb = _as_vector(b)
    if va.size == 0 or vb.size == 0:
        raise DimensionMismatchError("Cannot compare empty vectors")
    if va.shape != vb.shape:
        raise DimensionMismatchError(
            f"Vector dimensions differ: {va.shape[0]} vs {vb.shape[0]}"
        )
    return va, vb


def dot(a: VectorLike, b: VectorLike) -> float:
    """Dot product of two equal-length vectors."""
    va, vb = _check_pair(a, b)
    return float(np.dot(va, vb))


def magnitude(vec: VectorLike) -> float:
    """Euclidean (L2) norm of a vector."""
    return float(np.linalg.norm(_as_vector(vec)))


def cosine_similarity(a: VectorLike, b: VectorLike) -> float:
    """Cosine similarity in [-1, 1].

    Raises:
        ValueError: If either vector has zero magnitude.
    """
    va, vb = _check_pair(a, b)
    denom = magnitude(va) * magnitude(vb)
    if denom == 0.0:
        raise ValueError("Cosine similarity is undefined for zero vectors")
    return float(np.dot(va, vb) / denom)


def normalize_l2(vec: VectorLike) -> np.ndarray:
    """L2-normalize a vector.

    Args:
        vec: Vector to normalize, shape [D]

    Returns:
        New float64 vector with unit norm.

    Raises:
        ValueError: If the vector is empty or its norm is zero.

    Example:
        >>> normalize_l2([3.0, 4.0])
        array([0.6, 0.8])
    """
    arr = _as_vector(vec)
    if arr.size == 0:
        raise ValueError("Cannot normalize an empty vector")
    norm = np.linalg.norm(arr)
    if norm == 0.0 or not np.isfinite(norm):
        raise ValueError(f"Cannot normalize vector with norm {norm}")
    return arr / norm


def distance(a: VectorLike, b: VectorLike) -> float:
    """Euclidean distance between two encodings.

    Args:
        a: First encoding, shape [D]
        b: Second encoding, shape [D]

    Returns:
        Non-negative distance. For unit vectors it lies in [0, 2].

    Raises:
        DimensionMismatchError: If a vector is empty or the lengths differ.
    """
    va, vb = _check_pair(a, b)
    return float(np.sqrt(np.sum((va - vb) ** 2)))


def face_distances(encodings: Sequence[VectorLike], face_to_compare: VectorLike) -> List[float]:
    """Distance from ``face_to_compare`` to every encoding in ``encodings``."""
    return [distance(encoding, face_to_compare) for encoding in encodings]


def compare_faces(
    encodings: Sequence[VectorLike],
    face_to_compare: VectorLike,
    threshold: float = 0.6,
) -> List[bool]:
    """Whether each known encoding is within ``threshold`` of the candidate."""
    return [d <= threshold for d in face_distances(encodings, face_to_compare)]


def solve_least_squares(A: VectorLike, b: VectorLike) -> Optional[np.ndarray]:
    """Solve ``A @ x = b`` in the least-squares sense.

    Args:
        A: Design matrix, shape [M, N] with M >= N
        b: Target vector, shape [M]

    Returns:
        Solution vector of shape [N], or None when A does not have full
        column rank and no unique solution exists.

    Raises:
        ValueError: If the row counts of A and b differ.
    """
    mat = np.asarray(A, dtype=np.float64)
    vec = np.asarray(b, dtype=np.float64).reshape(-1)
    if mat.ndim != 2 or mat.shape[0] != vec.shape[0]:
        raise ValueError(
            f"Non-matching dimensions: A {mat.shape}, b {vec.shape}"
        )
    if not np.all(np.isfinite(mat)) or not np.all(np.isfinite(vec)):
        return None

    solution, _, rank, _ = np.linalg.lstsq(mat, vec, rcond=None)
    if rank < mat.shape[1]:
        return None
    return solution
