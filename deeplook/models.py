"""Immutable value types that flow through the pipeline.

Every stage derives a new value from the previous one (``with_*`` helpers
built on :func:`dataclasses.replace`); nothing is mutated in place, so
concurrent tasks never share mutable state.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Tuple

import numpy as np

from deeplook.config import ProcessConfiguration
from deeplook.interfaces import BoundingBox, DetectedObject, FaceObservation
from deeplook.linalg import distance


class FaceEmotion(Enum):
    """Facial expression, in the classifier's output order."""

    ANGRY = "angry"
    DISGUST = "disgust"
    FEAR = "fear"
    HAPPY = "happy"
    SAD = "sad"
    SURPRISE = "surprise"
    NEUTRAL = "neutral"
    NONE = "none"


def _empty_encoding() -> np.ndarray:
    return np.zeros(0, dtype=np.float64)


@dataclass(frozen=True, eq=False)
class Face:
    """One detected face, progressively enriched by the pipeline stages.

    Attributes:
        local_identifier: Origin asset id; "lhs"/"rhs" mark source/target images
        observation: Detector output for this face
        cropped_image: Aligned face chip, None until the crop stage runs
        quality: Capture quality in [0, 1], 0 until the quality stage runs
        roll: Rotation in radians applied during alignment
        encoding: L2-normalized embedding, empty until the encode stage runs
        emotion: Facial expression, NONE until the emotion stage runs
    """

    local_identifier: str
    observation: FaceObservation
    cropped_image: Optional[np.ndarray] = None
    quality: float = 0.0
    roll: float = 0.0
    encoding: np.ndarray = field(default_factory=_empty_encoding)
    emotion: FaceEmotion = FaceEmotion.NONE

    def __post_init__(self) -> None:
        encoding = np.array(self.encoding, dtype=np.float64).reshape(-1)
        encoding.setflags(write=False)
        object.__setattr__(self, "encoding", encoding)

    @property
    def landmarks(self) -> Optional[np.ndarray]:
        return self.observation.landmarks

    @property
    def has_encoding(self) -> bool:
        return self.encoding.size > 0

    def distance(self, other: Face) -> float:
        """Euclidean distance between the two faces' encodings."""
        return distance(self.encoding, other.encoding)

    def with_observation(self, observation: FaceObservation) -> Face:
        return replace(self, observation=observation)

    def with_quality(self, quality: float) -> Face:
        return replace(self, quality=float(quality))

    def with_chip(self, cropped_image: np.ndarray, roll: float) -> Face:
        return replace(self, cropped_image=cropped_image, roll=float(roll))

    def with_encoding(self, encoding: np.ndarray) -> Face:
        return replace(self, encoding=encoding)

    def with_emotion(self, emotion: FaceEmotion) -> Face:
        return replace(self, emotion=emotion)

    def __repr__(self) -> str:
        return (
            f"Face(local_identifier='{self.local_identifier}', "
            f"quality={self.quality:.3f}, roll={self.roll:.3f}, "
            f"encoding_dim={self.encoding.size}, emotion={self.emotion.value})"
        )


@dataclass(frozen=True, eq=False)
class ProcessAsset:
    """An image and everything the pipeline has learned about it so far."""

    identifier: str
    image: Optional[np.ndarray] = None
    tags: Tuple[DetectedObject, ...] = ()
    bounding_boxes: Tuple[BoundingBox, ...] = ()
    faces: Tuple[Face, ...] = ()
    text: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "tags", tuple(self.tags))
        object.__setattr__(self, "bounding_boxes", tuple(self.bounding_boxes))
        object.__setattr__(self, "faces", tuple(self.faces))
        object.__setattr__(self, "text", tuple(self.text))

    @property
    def has_image(self) -> bool:
        """True when a decoded, non-empty image is attached."""
        return self.image is not None and self.image.size > 0

    @property
    def image_size(self) -> Tuple[int, int]:
        """(width, height) of the attached image, (0, 0) without one."""
        if not self.has_image:
            return (0, 0)
        height, width = self.image.shape[:2]
        return (int(width), int(height))

    def with_changes(self, **changes) -> ProcessAsset:
        return replace(self, **changes)


@dataclass(frozen=True, eq=False)
class ProcessInput:
    """An asset paired with the configuration it is processed under."""

    asset: ProcessAsset
    configuration: ProcessConfiguration = field(default_factory=ProcessConfiguration)

    @property
    def identifier(self) -> str:
        return self.asset.identifier

    def with_asset(self, **changes) -> ProcessInput:
        """Return a new input whose asset has the given fields replaced."""
        return ProcessInput(asset=self.asset.with_changes(**changes), configuration=self.configuration)


@dataclass(frozen=True)
class ProcessOutput:
    """Result of analysing one asset, without the heavy image buffer.

    Outputs are hashed and compared by ``local_identifier`` only.
    """

    local_identifier: str
    tags: Tuple[DetectedObject, ...] = field(default=(), compare=False)
    bounding_boxes: Tuple[BoundingBox, ...] = field(default=(), compare=False)
    faces: Tuple[Face, ...] = field(default=(), compare=False)
    text: Tuple[str, ...] = field(default=(), compare=False)

    @classmethod
    def from_asset(cls, asset: ProcessAsset) -> ProcessOutput:
        return cls(
            local_identifier=asset.identifier,
            tags=asset.tags,
            bounding_boxes=asset.bounding_boxes,
            faces=asset.faces,
            text=asset.text,
        )


@dataclass(frozen=True)
class Match:
    """A source/target face pair within the caller's distance threshold.

    Build with :meth:`Match.between` so ``distance`` always equals the
    Euclidean distance between the two encodings.
    """

    source_face: Face
    target_face: Face
    distance: float
    threshold: float

    @classmethod
    def between(cls, source_face: Face, target_face: Face, threshold: float) -> Match:
        return cls(
            source_face=source_face,
            target_face=target_face,
            distance=source_face.distance(target_face),
            threshold=threshold,
        )

    @property
    def is_match(self) -> bool:
        return self.distance <= self.threshold
