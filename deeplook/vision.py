"""Runs actions over batches of assets.

Helpers here turn raw images or asset identifiers into a stack of
``ProcessInput`` chunks, and :func:`detect` drives each chunk through
``fetch_asset -> action -> clean`` with the batch scheduler.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

import numpy as np

from deeplook.actions import Actions
from deeplook.config import DEFAULT_CHUNK_SIZE, ProcessConfiguration
from deeplook.logging_config import get_logger
from deeplook.models import Face, ProcessAsset, ProcessInput, ProcessOutput
from deeplook.pipeline import then
from deeplook.processor import BatchResult, Stack, run_pipeline, stack_of_chunks

logger = get_logger(__name__)


def stack_inputs(
    assets: Iterable[ProcessAsset],
    configuration: Optional[ProcessConfiguration] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Stack[List[ProcessInput]]:
    """Pair every asset with ``configuration`` and chunk the inputs."""
    configuration = configuration or ProcessConfiguration()
    inputs = [ProcessInput(asset=asset, configuration=configuration) for asset in assets]
    return stack_of_chunks(inputs, chunk_size)


def stack_images(
    images: Sequence[np.ndarray],
    identifier: str,
    configuration: Optional[ProcessConfiguration] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Stack[List[ProcessInput]]:
    """Stack in-memory images that all carry the same identifier.

    The identifier marks the images' role, e.g. "lhs" for verification
    sources and "rhs" for targets.
    """
    assets = [ProcessAsset(identifier=identifier, image=image) for image in images]
    return stack_inputs(assets, configuration, chunk_size)


def stack_identifiers(
    identifiers: Sequence[str],
    configuration: Optional[ProcessConfiguration] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Stack[List[ProcessInput]]:
    """Stack assets known only by identifier; ``fetch_asset`` loads them."""
    assets = [ProcessAsset(identifier=identifier) for identifier in identifiers]
    return stack_inputs(assets, configuration, chunk_size)


def detect(
    stack: Stack[List[ProcessInput]],
    action,
    actions: Actions,
    max_workers: Optional[int] = None,
) -> BatchResult:
    """Run ``action`` on every input of ``stack``.

    Args:
        stack: Chunks of inputs, see :func:`stack_inputs`
        action: Stage applied between fetching and cleaning
        actions: Supplies the ``fetch_asset`` and ``clean`` stages
        max_workers: Threads per chunk, defaults to the chunk length

    Returns:
        BatchResult of ProcessOutput plus per-asset failures.

    Example:
        >>> result = detect(stack_identifiers(ids), actions.face_encoding, actions)
        >>> faces = flatten_faces(result)
    """
    pipeline = then(actions.fetch_asset, action, actions.clean)
    logger.debug(f"Running {pipeline.name} over {len(stack)} chunk(s)")
    result = run_pipeline(stack, pipeline, max_workers=max_workers)
    if result.failures:
        logger.warning(f"{len(result.failures)} asset(s) failed during {pipeline.name}")
    return result


def flatten_faces(outputs: Iterable[ProcessOutput]) -> List[Face]:
    """All faces of the outputs, in output order."""
    return [face for output in outputs for face in output.faces]
