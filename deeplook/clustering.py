"""Face clustering over encoding distances.

Two algorithms share the :class:`ClusterAlgorithm` protocol and work on any
item type through an injected distance, either per pair (``distance``) or as
a whole matrix (``pairwise``):

- :class:`DBSCAN`: density-based, backed by ``sklearn.cluster.DBSCAN`` on a
  precomputed distance matrix. With ``minimum_points=1`` every item is a
  core point, so the groups are the connected components of the
  ``distance <= epsilon`` graph.
- :class:`ChineseWhispers`: graph label propagation, deterministic for a
  given seed.

:func:`cluster` applies either one to faces. Under DBSCAN two faces from the
same asset are never direct neighbours; they can still land in one group
through a chain of faces from other assets.
"""

from __future__ import annotations

import math
import time
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Generic, List, Optional, Protocol, Sequence, TypeVar

import numpy as np
from sklearn.cluster import DBSCAN as SklearnDBSCAN

from deeplook.errors import DimensionMismatchError
from deeplook.logging_config import get_logger
from deeplook.models import Face

logger = get_logger(__name__)

T = TypeVar("T")
DistanceFunction = Callable[[T, T], float]
PairwiseDistance = Callable[[Sequence[T]], np.ndarray]


class ClusterType(str, Enum):
    DBSCAN = "dbscan"
    CHINESE_WHISPERS = "chineseWhispers"


@dataclass(frozen=True)
class ClusterOptions:
    """Clustering parameters.

    Attributes:
        minimum_cluster_size: ChineseWhispers keeps groups strictly larger than this
        number_iterations: Upper bound on ChineseWhispers iterations
        threshold: Maximum encoding distance for two faces to be linked
        cluster_type: Algorithm to run
        seed: Seed for the ChineseWhispers visitation order
    """

    minimum_cluster_size: int = 1
    number_iterations: int = 100
    threshold: float = 0.7
    cluster_type: ClusterType = ClusterType.CHINESE_WHISPERS
    seed: int = 0

    def __post_init__(self) -> None:
        if self.minimum_cluster_size < 1:
            raise ValueError(
                f"minimum_cluster_size must be >= 1, got {self.minimum_cluster_size}"
            )
        if self.number_iterations <= 0:
            raise ValueError(
                f"number_iterations must be > 0, got {self.number_iterations}"
            )
        if not math.isfinite(self.threshold) or self.threshold < 0:
            raise ValueError(f"threshold must be a finite value >= 0, got {self.threshold}")
        object.__setattr__(self, "cluster_type", ClusterType(self.cluster_type))


class ClusterAlgorithm(Protocol[T]):
    """Partition items into groups."""

    def cluster(self, items: Sequence[T]) -> List[List[T]]:
        ...


def _ordered_groups(items: Sequence[T], groups: List[List[int]]) -> List[List[T]]:
    # Members in input order, groups by their first member
    ordered = sorted((sorted(g) for g in groups if g), key=lambda g: g[0])
    return [[items[i] for i in g] for g in ordered]


def pairwise_distances(items: Sequence[T], distance: DistanceFunction) -> np.ndarray:
    """Symmetric [N, N] matrix of ``distance`` over every pair of items."""
    n = len(items)
    matrix = np.zeros((n, n), dtype=np.float64)
    for i in range(n):
        for j in range(i + 1, n):
            matrix[i, j] = matrix[j, i] = distance(items[i], items[j])
    return matrix


class DBSCAN(Generic[T]):
    """Density-based clustering.

    Neighbourhoods are ``distance <= epsilon``; an item is a core point when
    its neighbourhood, itself included, has at least ``minimum_points``
    members. Items that belong to no cluster are returned as singletons, so
    every input item appears in exactly one group. A non-finite distance
    means the two items are never neighbours.
    """

    def __init__(
        self,
        epsilon: float,
        minimum_points: int = 1,
        distance: Optional[DistanceFunction] = None,
        pairwise: Optional[PairwiseDistance] = None,
    ):
        if distance is None and pairwise is None:
            raise ValueError("DBSCAN needs a distance function")
        if minimum_points < 1:
            raise ValueError(f"minimum_points must be >= 1, got {minimum_points}")
        self.epsilon = epsilon
        self.minimum_points = minimum_points
        self.distance = distance
        self.pairwise = pairwise

    def _distance_matrix(self, items: Sequence[T]) -> np.ndarray:
        if self.pairwise is not None:
            matrix = np.array(self.pairwise(items), dtype=np.float64)
        else:
            matrix = pairwise_distances(items, self.distance)
        # sklearn rejects inf in precomputed input; any value past epsilon
        # keeps the pair apart
        matrix[~np.isfinite(matrix)] = 2.0 * self.epsilon + 1.0
        return matrix

    def cluster(self, items: Sequence[T]) -> List[List[T]]:
        n = len(items)
        if n == 0:
            return []

        dbscan = SklearnDBSCAN(
            # sklearn needs eps > 0; the smallest positive value keeps
            # epsilon=0 meaning "identical only"
            eps=max(self.epsilon, np.finfo(np.float64).tiny),
            min_samples=self.minimum_points,
            metric="precomputed",
        )
        labels = dbscan.fit_predict(self._distance_matrix(items))

        by_label: dict = {}
        groups: List[List[int]] = []
        for index, label in enumerate(labels):
            if label < 0:
                # Noise
                groups.append([index])
            else:
                by_label.setdefault(int(label), []).append(index)
        groups.extend(by_label.values())
        return _ordered_groups(items, groups)


class ChineseWhispers(Generic[T]):
    """Label-propagation clustering.

    Every item starts with its own label. Each iteration visits the items in
    a random order drawn from ``numpy.random.default_rng(seed)``; an item
    adopts the most frequent label among its neighbours (ties go to the
    lowest label). Stops after ``number_iterations`` or when an iteration
    changes nothing.
    """

    def __init__(
        self,
        eps: float,
        number_iterations: int = 100,
        seed: int = 0,
        distance: Optional[DistanceFunction] = None,
        pairwise: Optional[PairwiseDistance] = None,
    ):
        if distance is None and pairwise is None:
            raise ValueError("ChineseWhispers needs a distance function")
        if number_iterations <= 0:
            raise ValueError(f"number_iterations must be > 0, got {number_iterations}")
        self.eps = eps
        self.number_iterations = number_iterations
        self.seed = seed
        self.distance = distance
        self.pairwise = pairwise

    def cluster(self, items: Sequence[T]) -> List[List[T]]:
        n = len(items)
        if n == 0:
            return []

        if self.pairwise is not None:
            matrix = np.asarray(self.pairwise(items), dtype=np.float64)
        else:
            matrix = pairwise_distances(items, self.distance)
        adjacency = matrix <= self.eps
        np.fill_diagonal(adjacency, False)
        edges = [np.flatnonzero(row).tolist() for row in adjacency]

        labels = list(range(n))
        rng = np.random.default_rng(self.seed)
        for iteration in range(self.number_iterations):
            changed = False
            for node in rng.permutation(n):
                if not edges[node]:
                    continue
                counts = Counter(labels[other] for other in edges[node])
                best = min(counts, key=lambda label: (-counts[label], label))
                if best != labels[node]:
                    labels[node] = best
                    changed = True
            if not changed:
                logger.debug(f"ChineseWhispers converged after {iteration + 1} iterations")
                break

        by_label: dict = {}
        for index, label in enumerate(labels):
            by_label.setdefault(label, []).append(index)
        return _ordered_groups(items, list(by_label.values()))


def same_source_aware_distance(lhs: Face, rhs: Face) -> float:
    """Encoding distance, or infinity for two faces from the same asset."""
    if lhs.local_identifier == rhs.local_identifier:
        return math.inf
    return lhs.distance(rhs)


def face_distance_matrix(faces: Sequence[Face]) -> np.ndarray:
    """Euclidean distances between every pair of face encodings, shape [N, N].

    Raises:
        DimensionMismatchError: If a face has no encoding or the encoding
            sizes differ.
    """
    missing = [f.local_identifier for f in faces if not f.has_encoding]
    if missing:
        raise DimensionMismatchError(f"Faces without encodings: {missing}")
    dims = {f.encoding.size for f in faces}
    if len(dims) > 1:
        raise DimensionMismatchError(f"Encodings have mixed dimensions: {sorted(dims)}")

    encodings = np.stack([f.encoding for f in faces]).astype(np.float64)
    matrix = np.empty((len(faces), len(faces)), dtype=np.float64)
    # Row at a time to keep memory at N x D
    for i, encoding in enumerate(encodings):
        matrix[i] = np.sqrt(np.sum((encodings - encoding) ** 2, axis=1))
    return matrix


def same_source_aware_distance_matrix(faces: Sequence[Face]) -> np.ndarray:
    """:func:`face_distance_matrix` with infinity between faces of one asset."""
    matrix = face_distance_matrix(faces)
    identifiers = np.array([f.local_identifier for f in faces], dtype=object)
    same_source = identifiers[:, None] == identifiers[None, :]
    np.fill_diagonal(same_source, False)
    matrix[same_source] = math.inf
    return matrix


def cluster(faces: Sequence[Face], options: ClusterOptions = ClusterOptions()) -> List[List[Face]]:
    """Group faces that likely belong to the same person.

    Args:
        faces: Faces with encodings
        options: Algorithm and parameters

    Returns:
        Groups ordered by their first member's input position, members in
        input order.

    Raises:
        DimensionMismatchError: If a face has no encoding.

    Example:
        >>> groups = cluster(faces, ClusterOptions(threshold=0.6))
        >>> sizes = [len(g) for g in groups]
    """
    faces = list(faces)
    missing = [f.local_identifier for f in faces if not f.has_encoding]
    if missing:
        raise DimensionMismatchError(f"Faces without encodings: {missing}")
    if not faces:
        return []

    start = time.perf_counter()
    if options.cluster_type is ClusterType.DBSCAN:
        algorithm: ClusterAlgorithm[Face] = DBSCAN(
            epsilon=options.threshold,
            minimum_points=1,
            pairwise=same_source_aware_distance_matrix,
        )
        groups = algorithm.cluster(faces)
    else:
        algorithm = ChineseWhispers(
            eps=options.threshold,
            number_iterations=options.number_iterations,
            seed=options.seed,
            pairwise=face_distance_matrix,
        )
        groups = [
            g for g in algorithm.cluster(faces) if len(g) > options.minimum_cluster_size
        ]

    logger.info(
        f"Clustered {len(faces)} faces into {len(groups)} groups "
        f"({options.cluster_type.value}) in {time.perf_counter() - start:.3f}s"
    )
    return groups
