"""Error taxonomy for the DeepLook pipeline.

Per-item errors (detection, alignment, fetching) are isolated by the batch
scheduler; ``ModelUnavailableError`` aborts the whole batch.
"""

from __future__ import annotations


class DeepLookError(Exception):
    """Base class for all DeepLook errors."""


class DetectionError(DeepLookError):
    """The detector returned no usable result for an image."""


class AlignmentError(DeepLookError, ValueError):
    """A face could not be aligned (degenerate least-squares system)."""


class FetchError(DeepLookError):
    """An image could not be fetched for an asset identifier."""


class ModelUnavailableError(DeepLookError):
    """The requested encoder model cannot be loaded."""


class PreconditionError(DeepLookError, ValueError):
    """An operation was called with input it cannot work on."""


class DimensionMismatchError(DeepLookError, ValueError):
    """Two vectors that must have equal, non-zero length do not."""
