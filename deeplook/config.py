"""Configuration management for the DeepLook pipeline.

This module loads configuration from environment variables (.env file) and
provides the immutable ``ProcessConfiguration`` that travels with every
asset through the pipeline.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from enum import Enum

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

DEFAULT_CHUNK_SIZE = 10


class FaceEncoderModel(str, Enum):
    """Embedding models understood by the encode stage."""

    FACENET = "facenet"
    VGG_RESNET_LITE = "vggResnetLite"
    VGG_SENET_LITE = "vggSenetLite"

    @property
    def chip_size(self) -> int:
        """Side length in pixels of the aligned chip the model expects."""
        if self is FaceEncoderModel.FACENET:
            return 160
        return 224

    @property
    def model_id(self) -> str:
        return {
            FaceEncoderModel.FACENET: "faceNet",
            FaceEncoderModel.VGG_RESNET_LITE: "VGGFace2_resnet",
            FaceEncoderModel.VGG_SENET_LITE: "VGGFace2_senet",
        }[self]


class LandmarksAlignmentAlgorithm(str, Enum):
    """Canonical landmark set used for the similarity transform."""

    DLIB32 = "dlib32"
    DLIB5 = "dlib5"
    SPHERE_FACE5 = "sphereFace5"


class QualityFilter(str, Enum):
    """Minimum capture-quality bar a face must reach to stay in the pipeline.

    Filtered faces aren't compared. ``NONE`` disables the quality stage.
    """

    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EXTREME = "extreme"

    @property
    def threshold(self) -> float:
        return {
            QualityFilter.NONE: 0.0,
            QualityFilter.LOW: 0.1,
            QualityFilter.MEDIUM: 0.25,
            QualityFilter.HIGH: 0.35,
            QualityFilter.EXTREME: 0.4,
        }[self]


def _parse_enum(enum_cls, raw: str, var_name: str):
    for member in enum_cls:
        if raw == member.value or raw.upper() == member.name:
            return member
    valid = [member.value for member in enum_cls]
    raise ValueError(f"{var_name} must be one of {valid}, got {raw}")


@dataclass(frozen=True)
class ProcessConfiguration:
    """Per-asset processing options, immutable for the asset's lifetime.

    Attributes:
        face_encoder_model: Embedding model; also selects the chip size
        landmarks_alignment_algorithm: Canonical landmark preset for alignment
        face_chip_padding: Padding added around the chip, clamped to [-1, 1]
        minimum_face_area: Minimum bbox area in square pixels, clamped >= 0
        minimum_quality_filter: Capture-quality bar for the quality stage
        fetch_image_size: Maximum dimension when fetching images, clamped >= 0
    """

    face_encoder_model: FaceEncoderModel = FaceEncoderModel.FACENET
    landmarks_alignment_algorithm: LandmarksAlignmentAlgorithm = (
        LandmarksAlignmentAlgorithm.SPHERE_FACE5
    )
    face_chip_padding: float = 0.0
    minimum_face_area: float = 4000.0
    minimum_quality_filter: QualityFilter = QualityFilter.LOW
    fetch_image_size: float = 500.0

    def __post_init__(self) -> None:
        # Frozen dataclass: clamp through object.__setattr__
        object.__setattr__(
            self, "face_chip_padding", min(1.0, max(-1.0, float(self.face_chip_padding)))
        )
        object.__setattr__(self, "minimum_face_area", max(0.0, float(self.minimum_face_area)))
        object.__setattr__(self, "fetch_image_size", max(0.0, float(self.fetch_image_size)))
        object.__setattr__(
            self, "face_encoder_model", FaceEncoderModel(self.face_encoder_model)
        )
        object.__setattr__(
            self,
            "landmarks_alignment_algorithm",
            LandmarksAlignmentAlgorithm(self.landmarks_alignment_algorithm),
        )
        object.__setattr__(
            self, "minimum_quality_filter", QualityFilter(self.minimum_quality_filter)
        )

    @property
    def face_chip_size(self) -> int:
        """Chip side length required by the configured encoder model."""
        return self.face_encoder_model.chip_size

    def with_changes(self, **changes) -> ProcessConfiguration:
        """Return a copy with the given fields replaced (values re-clamped)."""
        return replace(self, **changes)

    @classmethod
    def from_env(cls) -> ProcessConfiguration:
        """Load configuration from environment variables.

        Returns:
            ProcessConfiguration with values from environment or defaults.

        Raises:
            ValueError: If an environment variable holds an invalid value.
        """
        encoder = _parse_enum(
            FaceEncoderModel,
            os.getenv("DEEPLOOK_ENCODER_MODEL", FaceEncoderModel.FACENET.value),
            "DEEPLOOK_ENCODER_MODEL",
        )
        alignment = _parse_enum(
            LandmarksAlignmentAlgorithm,
            os.getenv("DEEPLOOK_ALIGNMENT", LandmarksAlignmentAlgorithm.SPHERE_FACE5.value),
            "DEEPLOOK_ALIGNMENT",
        )
        quality = _parse_enum(
            QualityFilter,
            os.getenv("DEEPLOOK_QUALITY_FILTER", QualityFilter.LOW.value),
            "DEEPLOOK_QUALITY_FILTER",
        )

        try:
            padding = float(os.getenv("DEEPLOOK_CHIP_PADDING", "0.0"))
            min_area = float(os.getenv("DEEPLOOK_MIN_FACE_AREA", "4000"))
            fetch_size = float(os.getenv("DEEPLOOK_FETCH_IMAGE_SIZE", "500"))
        except ValueError as e:
            raise ValueError(f"Invalid numeric DeepLook setting: {e}") from e

        return cls(
            face_encoder_model=encoder,
            landmarks_alignment_algorithm=alignment,
            face_chip_padding=padding,
            minimum_face_area=min_area,
            minimum_quality_filter=quality,
            fetch_image_size=fetch_size,
        )


def chunk_size_from_env() -> int:
    """Number of items processed concurrently per chunk (DEEPLOOK_CHUNK_SIZE)."""
    chunk_size = int(os.getenv("DEEPLOOK_CHUNK_SIZE", str(DEFAULT_CHUNK_SIZE)))
    if chunk_size < 1:
        raise ValueError(f"DEEPLOOK_CHUNK_SIZE must be >= 1, got {chunk_size}")
    return chunk_size
