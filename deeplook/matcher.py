"""FAISS-backed face verification.

``verify`` pairs every source face with every target face whose encoding
lies within a distance threshold. Candidates come from an exact FAISS
``IndexFlatL2`` range search over the targets; each candidate is then
confirmed with :func:`deeplook.linalg.distance` in float64, so the result
does not depend on FAISS's float32 rounding.
"""

from __future__ import annotations

import math
from typing import Callable, Iterable, List, Sequence, Tuple, TypeVar

import faiss
import numpy as np

from deeplook.errors import DimensionMismatchError, PreconditionError
from deeplook.logging_config import get_logger
from deeplook.models import Face, Match, ProcessOutput

logger = get_logger(__name__)

T = TypeVar("T")

SOURCE_IDENTIFIER = "lhs"
TARGET_IDENTIFIER = "rhs"

# Widens the float32 search radius; exact distances decide membership
_RADIUS_SLACK = 1e-3


def stable_partition(
    items: Iterable[T], predicate: Callable[[T], bool]
) -> Tuple[List[T], List[T]]:
    """Split items into (matching, non-matching), each keeping input order.

    Example:
        >>> stable_partition([1, 2, 3, 4], lambda x: x % 2 == 0)
        ([2, 4], [1, 3])
    """
    matching: List[T] = []
    rest: List[T] = []
    for item in items:
        (matching if predicate(item) else rest).append(item)
    return matching, rest


def partition_by_role(
    faces: Iterable[Face], source_identifier: str = SOURCE_IDENTIFIER
) -> Tuple[List[Face], List[Face]]:
    """Split faces into (source, target) by their ``local_identifier``."""
    return stable_partition(faces, lambda face: face.local_identifier == source_identifier)


def _encoding_matrix(faces: Sequence[Face], role: str) -> np.ndarray:
    for face in faces:
        if not face.has_encoding:
            raise DimensionMismatchError(
                f"{role} face from '{face.local_identifier}' has no encoding"
            )
    dims = {face.encoding.size for face in faces}
    if len(dims) > 1:
        raise DimensionMismatchError(f"{role} encodings have mixed dimensions: {sorted(dims)}")
    return np.stack([face.encoding for face in faces]).astype(np.float32)


def verify(
    source_faces: Sequence[Face],
    target_faces: Sequence[Face],
    threshold: float,
) -> List[Match]:
    """Find every (source, target) pair within ``threshold`` of each other.

    Args:
        source_faces: Faces to look for
        target_faces: Faces to look among
        threshold: Maximum Euclidean distance between encodings

    Returns:
        Matches ordered by source, then by target, in input order. Each
        match's ``distance`` is the exact float64 encoding distance.

    Raises:
        PreconditionError: If ``source_faces`` is empty.
        ValueError: If ``threshold`` is negative or not finite.
        DimensionMismatchError: If a face has no encoding or the encoding
            sizes differ.

    Example:
        >>> matches = verify([alice], [bob, alice_again], threshold=0.6)
        >>> [m.target_face for m in matches]
        [alice_again]
    """
    if not source_faces:
        raise PreconditionError("verify() needs at least one source face")
    if not math.isfinite(threshold) or threshold < 0:
        raise ValueError(f"threshold must be a finite value >= 0, got {threshold}")
    if not target_faces:
        logger.debug("No target faces to verify against")
        return []

    sources = _encoding_matrix(source_faces, "Source")
    targets = _encoding_matrix(target_faces, "Target")
    if sources.shape[1] != targets.shape[1]:
        raise DimensionMismatchError(
            f"Source dimension {sources.shape[1]} != target dimension {targets.shape[1]}"
        )

    index = faiss.IndexFlatL2(targets.shape[1])
    index.add(targets)

    # range_search works on squared L2 distances
    radius = float((threshold + _RADIUS_SLACK) ** 2)
    lims, _, candidates = index.range_search(sources, radius)

    matches: List[Match] = []
    for i, source in enumerate(source_faces):
        for j in sorted(int(c) for c in candidates[lims[i]:lims[i + 1]]):
            match = Match.between(source, target_faces[j], threshold)
            if match.is_match:
                matches.append(match)

    logger.info(
        f"Verified {len(source_faces)} source against {len(target_faces)} target faces: "
        f"{len(matches)} match(es) at threshold {threshold}"
    )
    return matches


def matching_targets(
    source_faces: Sequence[Face],
    target_faces: Sequence[Face],
    threshold: float,
) -> List[Face]:
    """Target faces of :func:`verify`'s matches, one entry per match."""
    return [match.target_face for match in verify(source_faces, target_faces, threshold)]


def verify_outputs(
    outputs: Iterable[ProcessOutput],
    threshold: float,
    source_identifier: str = SOURCE_IDENTIFIER,
) -> List[Match]:
    """Verify the faces of processed assets against each other.

    Faces of assets named ``source_identifier`` are the sources; all other
    faces are targets.
    """
    faces = [face for output in outputs for face in output.faces]
    sources, targets = partition_by_role(faces, source_identifier)
    logger.debug(f"Partitioned {len(faces)} faces: {len(sources)} source, {len(targets)} target")
    return verify(sources, targets, threshold)
