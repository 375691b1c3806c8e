"""Stack-of-chunks batch scheduler.

Inputs are split into fixed-size chunks and pushed onto a LIFO stack. The
scheduler pops one chunk at a time, runs every item of that chunk through a
stage concurrently, waits for the whole chunk to finish, then pops the next.
At most one chunk is in flight, which bounds memory and model contention.

A failing item is logged and recorded as an :class:`ItemFailure`; its
siblings keep running. Errors listed in ``FATAL_ERRORS`` abort the whole
run once the current chunk has joined.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import time
from dataclasses import dataclass, field
from typing import Any, Generic, Iterable, Iterator, List, Optional, Sequence, Tuple, TypeVar

from deeplook.config import DEFAULT_CHUNK_SIZE
from deeplook.errors import ModelUnavailableError
from deeplook.logging_config import get_logger
from deeplook.pipeline import is_async_stage

logger = get_logger(__name__)

T = TypeVar("T")

# Errors that abort the whole batch instead of failing a single item
FATAL_ERRORS: Tuple[type, ...] = (ModelUnavailableError,)


class Stack(Generic[T]):
    """LIFO container.

    Example:
        >>> stack = Stack([1, 2])
        >>> stack.push(3)
        >>> stack.pop()
        3
    """

    def __init__(self, items: Optional[Iterable[T]] = None):
        self._items: List[T] = list(items) if items is not None else []

    def push(self, item: T) -> None:
        self._items.append(item)

    def pop(self) -> Optional[T]:
        """Remove and return the top item, or None when empty."""
        if not self._items:
            return None
        return self._items.pop()

    def peek(self) -> Optional[T]:
        if not self._items:
            return None
        return self._items[-1]

    def is_empty(self) -> bool:
        return not self._items

    def copy(self) -> Stack[T]:
        return Stack(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"Stack(size={len(self._items)})"


def chunked(items: Sequence[T], size: int) -> List[List[T]]:
    """Split ``items`` into consecutive chunks of at most ``size``.

    Raises:
        ValueError: If ``size`` is not positive.

    Example:
        >>> [len(c) for c in chunked(list(range(25)), 10)]
        [10, 10, 5]
    """
    if size < 1:
        raise ValueError(f"Chunk size must be >= 1, got {size}")
    items = list(items)
    return [items[i:i + size] for i in range(0, len(items), size)]


def stack_of_chunks(items: Sequence[T], chunk_size: int = DEFAULT_CHUNK_SIZE) -> Stack[List[T]]:
    """Chunk ``items`` and push the chunks in order, so the last chunk pops first."""
    stack: Stack[List[T]] = Stack()
    for chunk in chunked(items, chunk_size):
        stack.push(chunk)
    return stack


@dataclass(frozen=True)
class ItemFailure:
    """An item that raised inside the stage.

    Attributes:
        chunk: Index of the chunk in processing order (0 = first popped)
        position: Index of the item within its chunk
        identifier: Item identifier, when the item carries one
        error: The exception the stage raised
    """

    chunk: int
    position: int
    identifier: Optional[str]
    error: BaseException


@dataclass
class BatchResult(Generic[T]):
    """Outputs of a scheduler run plus the items that failed.

    Outputs are ordered chunk by chunk in processing order, and by
    submission order within a chunk.
    """

    outputs: List[T] = field(default_factory=list)
    failures: List[ItemFailure] = field(default_factory=list)
    chunk_sizes: List[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def raise_for_failures(self) -> None:
        """Re-raise the first recorded failure, if any."""
        if self.failures:
            raise self.failures[0].error

    def __iter__(self) -> Iterator[T]:
        return iter(self.outputs)

    def __len__(self) -> int:
        return len(self.outputs)


def _identify(item: Any) -> Optional[str]:
    identifier = getattr(item, "identifier", None)
    return str(identifier) if identifier is not None else None


def _collect(
    result: BatchResult,
    chunk_index: int,
    chunk: Sequence[Any],
    outcomes: Sequence[Any],
    errors: Sequence[Optional[BaseException]],
) -> None:
    fatal: Optional[BaseException] = None
    for position, (item, outcome, error) in enumerate(zip(chunk, outcomes, errors)):
        if error is None:
            result.outputs.append(outcome)
            continue
        failure = ItemFailure(chunk_index, position, _identify(item), error)
        result.failures.append(failure)
        logger.warning(
            f"Item {failure.identifier or position} in chunk {chunk_index} failed: "
            f"{type(error).__name__}: {error}"
        )
        if fatal is None and isinstance(error, FATAL_ERRORS):
            fatal = error

    if fatal is not None:
        logger.error(f"Aborting batch after chunk {chunk_index}: {fatal}")
        raise fatal


def run_pipeline(
    stack: Stack[List[T]],
    stage: Any,
    max_workers: Optional[int] = None,
) -> BatchResult:
    """Drain a stack of chunks through a synchronous stage.

    Args:
        stack: Chunks to process; left untouched (a copy is drained)
        stage: Synchronous stage applied to every item
        max_workers: Thread count per chunk, defaults to the chunk length

    Returns:
        BatchResult with successful outputs and recorded failures.

    Raises:
        TypeError: If ``stage`` is asynchronous.
        ModelUnavailableError: If any item hit a fatal error; raised after
            the chunk containing it has finished.
    """
    if is_async_stage(stage):
        raise TypeError("run_pipeline() needs a synchronous stage, use run_pipeline_async()")

    pending = stack.copy()
    result: BatchResult = BatchResult()
    chunk_index = 0

    while True:
        chunk = pending.pop()
        if chunk is None:
            break
        if not chunk:
            result.chunk_sizes.append(0)
            chunk_index += 1
            continue

        start = time.perf_counter()
        workers = max_workers or len(chunk)
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(stage.run, item) for item in chunk]
            concurrent.futures.wait(futures)

        outcomes = []
        errors = []
        for future in futures:
            error = future.exception()
            errors.append(error)
            outcomes.append(None if error is not None else future.result())

        result.chunk_sizes.append(len(chunk))
        logger.info(f"Finished {len(chunk)} items in {time.perf_counter() - start:.3f}s")
        _collect(result, chunk_index, chunk, outcomes, errors)
        chunk_index += 1

    return result


async def run_pipeline_async(stack: Stack[List[T]], stage: Any) -> BatchResult:
    """Drain a stack of chunks through an asynchronous stage.

    Each chunk is awaited with ``asyncio.gather``; semantics otherwise match
    :func:`run_pipeline`.

    Raises:
        TypeError: If ``stage`` is synchronous.
    """
    if not is_async_stage(stage):
        raise TypeError("run_pipeline_async() needs an asynchronous stage, see pipeline.lift()")

    pending = stack.copy()
    result: BatchResult = BatchResult()
    chunk_index = 0

    while True:
        chunk = pending.pop()
        if chunk is None:
            break

        start = time.perf_counter()
        gathered = await asyncio.gather(
            *(stage.run(item) for item in chunk), return_exceptions=True
        )

        outcomes = []
        errors = []
        for value in gathered:
            if isinstance(value, BaseException):
                # Cancellation belongs to the caller
                if isinstance(value, asyncio.CancelledError):
                    raise value
                errors.append(value)
                outcomes.append(None)
            else:
                errors.append(None)
                outcomes.append(value)

        result.chunk_sizes.append(len(chunk))
        logger.info(f"Finished {len(chunk)} items in {time.perf_counter() - start:.3f}s")
        _collect(result, chunk_index, chunk, outcomes, errors)
        chunk_index += 1

    return result
