"""Core interfaces and data structures for the vision collaborators.

This module defines the abstract interfaces (Protocols) that the pipeline
stages call into, and the small value types those collaborators return.
Concrete detectors, embedders and fetchers are supplied by the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, runtime_checkable

import numpy as np

from deeplook.config import FaceEncoderModel

# Number of points in the landmark constellation the detector reports
LANDMARK_POINT_COUNT = 76


@dataclass(frozen=True)
class BoundingBox:
    """Bounding box in pixel coordinates (top-left origin).

    Attributes:
        x1: Left edge x-coordinate
        y1: Top edge y-coordinate
        x2: Right edge x-coordinate
        y2: Bottom edge y-coordinate
    """

    x1: float
    y1: float
    x2: float
    y2: float

    @property
    def width(self) -> float:
        return self.x2 - self.x1

    @property
    def height(self) -> float:
        return self.y2 - self.y1

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)


@dataclass(frozen=True, eq=False)
class FaceObservation:
    """Face detector output.

    Attributes:
        bbox: Bounding box around the face
        landmarks: Optional landmark constellation, shape [76, 2], in absolute
                   pixel coordinates (top-left origin)
        yaw: Optional head yaw in radians
        capture_quality: Optional capture-quality score in [0, 1]
    """

    bbox: BoundingBox
    landmarks: Optional[np.ndarray] = None
    yaw: Optional[float] = None
    capture_quality: Optional[float] = None

    def __post_init__(self) -> None:
        """Validate observation data after initialization."""
        if self.landmarks is not None:
            points = np.asarray(self.landmarks, dtype=np.float64)
            if points.ndim != 2 or points.shape[1] != 2:
                raise ValueError(
                    f"landmarks must have shape (N, 2), got {points.shape}"
                )
            object.__setattr__(self, "landmarks", points)

        if self.capture_quality is not None and not 0.0 <= self.capture_quality <= 1.0:
            raise ValueError(
                f"capture_quality must be in [0, 1], got {self.capture_quality}"
            )

    def __repr__(self) -> str:
        landmarks = "None" if self.landmarks is None else f"array{self.landmarks.shape}"
        return (
            f"FaceObservation(bbox={self.bbox}, landmarks={landmarks}, "
            f"yaw={self.yaw}, capture_quality={self.capture_quality})"
        )


@dataclass(frozen=True)
class DetectedObject:
    """A classification tag or located object.

    Attributes:
        identifier: Identified class
        confidence: Confidence in the identified class
        location: Object location, None for whole-image tags
    """

    identifier: str
    confidence: float
    location: Optional[BoundingBox] = None


@runtime_checkable
class FaceDetector(Protocol):
    """Protocol for face rectangle and landmark detection."""

    def detect_face_rectangles(self, image: np.ndarray) -> Optional[List[BoundingBox]]:
        """Find face bounding boxes in a BGR image.

        Returns:
            List of boxes (may be empty), or None if detection failed.
        """
        ...

    def detect_face_landmarks(
        self,
        image: np.ndarray,
        priors: Optional[Sequence[FaceObservation]] = None,
    ) -> Optional[List[FaceObservation]]:
        """Locate landmarks, reusing ``priors`` as known face locations if given.

        Returns:
            Observations with landmarks, or None if detection failed.
        """
        ...


@runtime_checkable
class FaceQualityDetector(Protocol):
    """Protocol for face capture-quality estimation."""

    def detect_face_quality(
        self,
        image: np.ndarray,
        priors: Optional[Sequence[FaceObservation]] = None,
    ) -> Optional[List[FaceObservation]]:
        """Return observations with ``capture_quality`` populated."""
        ...


@runtime_checkable
class Embedder(Protocol):
    """Protocol for face embedding extraction.

    An Embedder takes an aligned face chip and returns a fixed-dimensional
    feature vector. Raises ModelUnavailableError if ``model`` cannot be loaded.
    """

    def embed(self, cropped_image: np.ndarray, model: FaceEncoderModel) -> np.ndarray:
        ...


@runtime_checkable
class ImageFetcher(Protocol):
    """Protocol for loading an image by asset identifier."""

    def fetch(self, asset_id: str, max_dimension: float) -> Optional[np.ndarray]:
        """Return a BGR image no larger than ``max_dimension``, or None."""
        ...


@runtime_checkable
class EmotionClassifier(Protocol):
    """Protocol for facial expression scoring.

    ``classify`` returns one score per emotion in ``FaceEmotion`` order
    (angry, disgust, fear, happy, sad, surprise, neutral).
    """

    def classify(self, cropped_image: np.ndarray) -> Sequence[float]:
        ...


@runtime_checkable
class ImageClassifier(Protocol):
    """Protocol for whole-image tagging."""

    def classify(self, image: np.ndarray) -> List[DetectedObject]:
        ...


@runtime_checkable
class ObjectDetector(Protocol):
    """Protocol for locating objects in an image."""

    def detect(self, image: np.ndarray) -> List[DetectedObject]:
        ...


@runtime_checkable
class TextRecognizer(Protocol):
    """Protocol for recognizing text lines in an image."""

    def recognize(self, image: np.ndarray) -> List[str]:
        ...
