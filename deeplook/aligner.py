"""Similarity-transform face alignment.

This module maps a canonical landmark template onto the landmarks a detector
found in an image, and derives the crop/rotate/scale recipe (``ChipDetails``)
that produces a normalized face chip of the size the encoder expects.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np

from deeplook.config import LandmarksAlignmentAlgorithm
from deeplook.errors import AlignmentError
from deeplook.interfaces import LANDMARK_POINT_COUNT, FaceObservation
from deeplook.linalg import solve_least_squares
from deeplook.logging_config import get_logger

logger = get_logger(__name__)


# dlib 68-point mean face shape, points 17..67, normalized to [0, 1]
MEAN_FACE_SHAPE_X = (
    0.000213256, 0.0752622, 0.18113, 0.29077, 0.393397, 0.586856, 0.689483, 0.799124,
    0.904991, 0.98004, 0.490127, 0.490127, 0.490127, 0.490127, 0.36688, 0.426036,
    0.490127, 0.554217, 0.613373, 0.121737, 0.187122, 0.265825, 0.334606, 0.260918,
    0.182743, 0.645647, 0.714428, 0.793132, 0.858516, 0.79751, 0.719335, 0.254149,
    0.340985, 0.428858, 0.490127, 0.551395, 0.639268, 0.726104, 0.642159, 0.556721,
    0.490127, 0.423532, 0.338094, 0.290379, 0.428096, 0.490127, 0.552157, 0.689874,
    0.553364, 0.490127, 0.42689,
)
MEAN_FACE_SHAPE_Y = (
    0.106454, 0.038915, 0.0187482, 0.0344891, 0.0773906, 0.0773906, 0.0344891,
    0.0187482, 0.038915, 0.106454, 0.203352, 0.307009, 0.409805, 0.515625, 0.587326,
    0.609345, 0.628106, 0.609345, 0.587326, 0.216423, 0.178758, 0.179852, 0.231733,
    0.245099, 0.244077, 0.231733, 0.179852, 0.178758, 0.216423, 0.244077, 0.245099,
    0.780233, 0.745405, 0.727388, 0.742578, 0.727388, 0.745405, 0.780233, 0.864805,
    0.902192, 0.909281, 0.902192, 0.864805, 0.784792, 0.778746, 0.785343, 0.778746,
    0.784792, 0.824182, 0.831803, 0.824182,
)

# Eye corners, nose tip and mouth corners of the dlib 5-point model
DLIB5_TEMPLATE = (
    (0.8595674595992, 0.2134981538014),
    (0.6460604764104, 0.2289674387677),
    (0.1205750620789, 0.2137274526848),
    (0.3340850613712, 0.2290642403242),
    (0.4901123135679, 0.6277975316475),
)

# Eye centers, nose tip and mouth corners used by SphereFace
SPHERE_FACE5_TEMPLATE = (
    (0.34191607142857144, 0.4615741071428571),
    (0.6565339285714286, 0.4598339285714285),
    (0.500225, 0.6405053571428571),
    (0.3709758928571429, 0.8246919642857142),
    (0.6315169642857142, 0.8232508928571428),
)

# Indices into the detector's 76-point constellation, in template order
LANDMARK_INDICES: Dict[LandmarksAlignmentAlgorithm, Tuple[int, ...]] = {
    LandmarksAlignmentAlgorithm.DLIB32: (
        46, 47, 48, 49, 54, 53, 52, 51, 50, 0, 4, 5, 1, 3, 2,
        8, 12, 11, 7, 9, 10, 26, 29, 30, 31, 34, 42, 40, 43,
    ),
    LandmarksAlignmentAlgorithm.DLIB5: (0, 1, 8, 7, 52),
    LandmarksAlignmentAlgorithm.SPHERE_FACE5: (6, 13, 52, 26, 35),
}


def _dlib32_template() -> List[Tuple[float, float]]:
    points = []
    for i in range(17, 68):
        # Eyebrows and lower lip are too unstable to align on
        if 17 <= i <= 26 or 55 <= i <= 59 or 65 <= i <= 67:
            continue
        if i in (49, 53, 60, 64):
            continue
        points.append((MEAN_FACE_SHAPE_X[i - 17], MEAN_FACE_SHAPE_Y[i - 17]))
    return points


def canonical_points(
    algorithm: LandmarksAlignmentAlgorithm,
    chip_size: float,
    padding: float = 0.0,
) -> np.ndarray:
    """Template landmark positions inside a ``chip_size`` square chip.

    Each normalized template point ``p`` becomes
    ``(padding + p) / (2 * padding + 1) * chip_size``.

    Args:
        algorithm: Landmark preset
        chip_size: Chip side length in pixels
        padding: Extra border around the face, as a fraction of the face size

    Returns:
        Array of shape [N, 2], float64.

    Raises:
        AlignmentError: If ``2 * padding + 1`` is zero.
    """
    denominator = 2.0 * padding + 1.0
    if denominator == 0.0:
        raise AlignmentError(f"Padding {padding} collapses the chip to a point")

    algorithm = LandmarksAlignmentAlgorithm(algorithm)
    if algorithm is LandmarksAlignmentAlgorithm.DLIB32:
        template = _dlib32_template()
    elif algorithm is LandmarksAlignmentAlgorithm.DLIB5:
        p0, p1, p2, p3, p4 = DLIB5_TEMPLATE
        template = [p2, p3, p1, p0, p4]
    else:
        template = list(SPHERE_FACE5_TEMPLATE)

    points = np.asarray(template, dtype=np.float64)
    return (padding + points) / denominator * float(chip_size)


def select_landmarks(
    landmarks: Optional[np.ndarray],
    algorithm: LandmarksAlignmentAlgorithm,
) -> np.ndarray:
    """Pick the observed points matching the preset's template, in order.

    Raises:
        AlignmentError: If landmarks are missing or too few.
    """
    if landmarks is None:
        raise AlignmentError("Face has no landmarks")
    points = np.asarray(landmarks, dtype=np.float64)
    indices = LANDMARK_INDICES[LandmarksAlignmentAlgorithm(algorithm)]
    if points.ndim != 2 or points.shape[0] <= max(indices):
        raise AlignmentError(
            f"Expected {LANDMARK_POINT_COUNT} landmarks, got {points.shape[0] if points.ndim else 0}"
        )
    return points[list(indices)]


@dataclass(frozen=True)
class Rectangle:
    """Pixel rectangle with inclusive edges, so width is ``right - left + 1``."""

    left: float
    top: float
    right: float
    bottom: float

    @classmethod
    def centered(cls, point: Tuple[float, float], width: float, height: float) -> Rectangle:
        x, y = point
        return cls(
            left=x - width / 2.0,
            top=y - height / 2.0,
            right=x + width / 2.0,
            bottom=y + height / 2.0,
        )

    @property
    def width(self) -> float:
        return self.right - self.left + 1

    @property
    def height(self) -> float:
        return self.bottom - self.top + 1

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def is_empty(self) -> bool:
        return self.top > self.bottom or self.left > self.right


@dataclass(frozen=True)
class SimilarityTransform:
    """Uniform scale, rotation and translation: ``p' = [[a, -b], [b, a]] @ p + t``."""

    a: float
    b: float
    tx: float
    ty: float

    @property
    def matrix(self) -> np.ndarray:
        return np.array([[self.a, -self.b], [self.b, self.a]], dtype=np.float64)

    @property
    def translation(self) -> np.ndarray:
        return np.array([self.tx, self.ty], dtype=np.float64)

    @property
    def roll(self) -> float:
        """Rotation angle in radians."""
        return math.atan2(self.b, self.a)

    @property
    def scale(self) -> float:
        return math.hypot(self.a, self.b)

    def apply(self, points: np.ndarray) -> np.ndarray:
        """Transform a point [2] or points [N, 2]."""
        pts = np.asarray(points, dtype=np.float64)
        return pts @ self.matrix.T + self.translation

    def as_affine(self) -> np.ndarray:
        """2x3 matrix in the layout ``cv2.warpAffine`` expects."""
        return np.hstack([self.matrix, self.translation.reshape(2, 1)])


def solve_similarity_transform(
    from_points: np.ndarray,
    to_points: np.ndarray,
) -> SimilarityTransform:
    """Least-squares similarity transform mapping ``from_points`` onto ``to_points``.

    Each point pair contributes the rows ``[x, y, 1, 0]`` and ``[y, -x, 0, 1]``
    of the design matrix and ``[x', y']`` of the target vector.

    Args:
        from_points: Reference points, shape [N, 2]
        to_points: Observed points, shape [N, 2], matched by index

    Returns:
        The best-fit SimilarityTransform.

    Raises:
        ValueError: If the point sets differ in size or have fewer than 2 points.
        AlignmentError: If the points are degenerate (e.g. all identical).

    Example:
        >>> src = np.array([[0.0, 0.0], [1.0, 0.0]])
        >>> tform = solve_similarity_transform(src, src * 2.0)
        >>> round(tform.scale, 6)
        2.0
    """
    src = np.asarray(from_points, dtype=np.float64)
    dst = np.asarray(to_points, dtype=np.float64)
    if src.ndim != 2 or src.shape[1] != 2 or src.shape != dst.shape:
        raise ValueError(
            f"Point sets must both have shape (N, 2), got {src.shape} and {dst.shape}"
        )
    if src.shape[0] < 2:
        raise ValueError(f"Need at least 2 point pairs, got {src.shape[0]}")

    x, y = src[:, 0], src[:, 1]
    ones = np.ones_like(x)
    zeros = np.zeros_like(x)
    design = np.empty((2 * len(src), 4), dtype=np.float64)
    design[0::2] = np.column_stack([x, y, ones, zeros])
    design[1::2] = np.column_stack([y, -x, zeros, ones])
    target = dst.reshape(-1)

    solution = solve_least_squares(design, target)
    if solution is None:
        raise AlignmentError("Degenerate landmarks, similarity transform is undefined")

    # The design rows solve for [a, -b, tx, ty]
    a, neg_b, tx, ty = (float(v) for v in solution)
    return SimilarityTransform(a=a, b=-neg_b, tx=tx, ty=ty)


@dataclass(frozen=True)
class ChipDetails:
    """Crop/rotate/scale recipe for one face chip.

    Attributes:
        rect: Region of the source image covered by the chip
        roll: Rotation of the face in the source image, radians
        scale: Source pixels per chip pixel
        rows: Chip height in pixels
        cols: Chip width in pixels
        transform: Chip-space to image-space transform
    """

    rect: Rectangle
    roll: float
    scale: float
    rows: int
    cols: int
    transform: SimilarityTransform


def get_chip_details(
    observation: FaceObservation,
    chip_size: int,
    padding: float = 0.0,
    algorithm: LandmarksAlignmentAlgorithm = LandmarksAlignmentAlgorithm.SPHERE_FACE5,
) -> ChipDetails:
    """Compute the chip recipe for a detected face.

    Args:
        observation: Detector output with a landmark constellation
        chip_size: Output chip side length in pixels
        padding: Chip padding, see :func:`canonical_points`
        algorithm: Landmark preset to align on

    Returns:
        ChipDetails whose rect is centred on the transformed chip centre and
        has side ``chip_size * scale``.

    Raises:
        AlignmentError: If landmarks are missing or degenerate, or the
            padding is invalid.
    """
    template = canonical_points(algorithm, chip_size, padding)
    observed = select_landmarks(observation.landmarks, algorithm)
    tform = solve_similarity_transform(template, observed)

    chip_dims = np.array([chip_size, chip_size], dtype=np.float64)
    center = tform.apply(chip_dims / 2.0)
    side = chip_size * tform.scale
    rect = Rectangle.centered((float(center[0]), float(center[1])), side, side)

    return ChipDetails(
        rect=rect,
        roll=tform.roll,
        scale=tform.scale,
        rows=int(chip_size),
        cols=int(chip_size),
        transform=tform,
    )


def extract_image_chip(image: np.ndarray, chip_details: ChipDetails) -> np.ndarray:
    """Cut the aligned chip out of ``image``.

    Rotation, crop and resize are done in one ``cv2.warpAffine`` call: the
    chip-to-image transform is used as an inverse map, so every chip pixel
    samples its source location directly.

    Args:
        image: Source image in BGR format, shape [H, W, 3] (or [H, W])
        chip_details: Recipe from :func:`get_chip_details`

    Returns:
        Chip of shape [rows, cols, C], same dtype as ``image``.

    Raises:
        AlignmentError: If the image is empty.
    """
    if image is None or image.size == 0:
        raise AlignmentError("Cannot extract a chip from an empty image")

    chip = cv2.warpAffine(
        image,
        chip_details.transform.as_affine(),
        (chip_details.cols, chip_details.rows),
        flags=cv2.INTER_LINEAR | cv2.WARP_INVERSE_MAP,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(0, 0, 0),
    )

    logger.debug(
        f"Extracted {chip_details.cols}x{chip_details.rows} chip, "
        f"roll={chip_details.roll:.3f}, scale={chip_details.scale:.3f}"
    )
    return chip
