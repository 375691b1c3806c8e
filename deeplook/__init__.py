"""DeepLook: face alignment, clustering and verification over batched images.

This package contains:
- aligner: similarity-transform alignment and chip extraction
- linalg: encoding distances and normalization
- clustering: DBSCAN and ChineseWhispers over face encodings
- pipeline / processor: stage composition and the stack-of-chunks scheduler
- matcher: FAISS-backed source/target verification
- actions / vision: per-asset stages and the batch runner
"""

from deeplook.actions import Actions, Backends
from deeplook.clustering import ClusterOptions, ClusterType, cluster
from deeplook.config import (
    FaceEncoderModel,
    LandmarksAlignmentAlgorithm,
    ProcessConfiguration,
    QualityFilter,
)
from deeplook.errors import (
    AlignmentError,
    DeepLookError,
    DetectionError,
    DimensionMismatchError,
    FetchError,
    ModelUnavailableError,
    PreconditionError,
)
from deeplook.matcher import verify, verify_outputs
from deeplook.models import Face, FaceEmotion, Match, ProcessAsset, ProcessInput, ProcessOutput
from deeplook.pipeline import lift, stage, then
from deeplook.processor import BatchResult, Stack, run_pipeline, stack_of_chunks
from deeplook.vision import detect, flatten_faces

__all__ = [
    "Actions",
    "Backends",
    "ClusterOptions",
    "ClusterType",
    "cluster",
    "FaceEncoderModel",
    "LandmarksAlignmentAlgorithm",
    "ProcessConfiguration",
    "QualityFilter",
    "AlignmentError",
    "DeepLookError",
    "DetectionError",
    "DimensionMismatchError",
    "FetchError",
    "ModelUnavailableError",
    "PreconditionError",
    "verify",
    "verify_outputs",
    "Face",
    "FaceEmotion",
    "Match",
    "ProcessAsset",
    "ProcessInput",
    "ProcessOutput",
    "lift",
    "stage",
    "then",
    "BatchResult",
    "Stack",
    "run_pipeline",
    "stack_of_chunks",
    "detect",
    "flatten_faces",
]
