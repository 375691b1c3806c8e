"""Composable pipeline stages.

A stage is anything with a ``run(item)`` method. Stages are chained with
:func:`then`; a chain is itself a stage, so chains compose further. A stage
signals failure by raising, which stops the chain at that point.

Synchronous and asynchronous stages are kept apart: chaining one of each
raises ``TypeError`` and :func:`lift` must be used to turn a synchronous
stage into an asynchronous one explicitly.

Example:
    >>> double = stage(lambda x: x * 2, name="double")
    >>> inc = stage(lambda x: x + 1, name="inc")
    >>> then(double, inc).run(3)
    7
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Protocol, Tuple, runtime_checkable

from deeplook.logging_config import get_logger

logger = get_logger(__name__)


@runtime_checkable
class Stage(Protocol):
    """Protocol for a synchronous pipeline step."""

    def run(self, item: Any) -> Any:
        ...


@runtime_checkable
class AsyncStage(Protocol):
    """Protocol for an asynchronous pipeline step."""

    async def run(self, item: Any) -> Any:
        ...


def is_async_stage(obj: Any) -> bool:
    """True when ``obj.run`` is a coroutine function."""
    run = getattr(obj, "run", None)
    return run is not None and inspect.iscoroutinefunction(run)


def _stage_name(obj: Any) -> str:
    return getattr(obj, "name", None) or type(obj).__name__


class FunctionStage:
    """Synchronous stage backed by a plain callable."""

    def __init__(self, func: Callable[[Any], Any], name: Optional[str] = None):
        self.func = func
        self.name = name or getattr(func, "__name__", "stage")

    def run(self, item: Any) -> Any:
        return self.func(item)

    def __repr__(self) -> str:
        return f"FunctionStage({self.name})"


class AsyncFunctionStage:
    """Asynchronous stage backed by a coroutine function."""

    def __init__(self, func: Callable[[Any], Awaitable[Any]], name: Optional[str] = None):
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"async_stage() needs a coroutine function, got {func!r}")
        self.func = func
        self.name = name or getattr(func, "__name__", "async_stage")

    async def run(self, item: Any) -> Any:
        return await self.func(item)

    def __repr__(self) -> str:
        return f"AsyncFunctionStage({self.name})"


def stage(func: Callable[[Any], Any], name: Optional[str] = None) -> FunctionStage:
    """Wrap a plain function as a synchronous stage."""
    return FunctionStage(func, name)


def async_stage(
    func: Callable[[Any], Awaitable[Any]], name: Optional[str] = None
) -> AsyncFunctionStage:
    """Wrap a coroutine function as an asynchronous stage.

    Raises:
        TypeError: If ``func`` is not a coroutine function.
    """
    return AsyncFunctionStage(func, name)


class Chain:
    """Synchronous stages run in sequence, each fed the previous output."""

    def __init__(self, stages: Tuple[Stage, ...]):
        self.stages = stages
        self.name = " -> ".join(_stage_name(s) for s in stages)

    def run(self, item: Any) -> Any:
        result = item
        for step in self.stages:
            result = step.run(result)
        return result

    def __repr__(self) -> str:
        return f"Chain({self.name})"


class AsyncChain:
    """Asynchronous counterpart of :class:`Chain`."""

    def __init__(self, stages: Tuple[AsyncStage, ...]):
        self.stages = stages
        self.name = " -> ".join(_stage_name(s) for s in stages)

    async def run(self, item: Any) -> Any:
        result = item
        for step in self.stages:
            result = await step.run(result)
        return result

    def __repr__(self) -> str:
        return f"AsyncChain({self.name})"


class LiftedStage:
    """Runs a synchronous stage in a worker thread so it can join an async chain."""

    def __init__(self, inner: Stage):
        self.inner = inner
        self.name = _stage_name(inner)

    async def run(self, item: Any) -> Any:
        return await asyncio.to_thread(self.inner.run, item)

    def __repr__(self) -> str:
        return f"LiftedStage({self.name})"


def lift(sync_stage: Stage) -> LiftedStage:
    """Turn a synchronous stage into an asynchronous one.

    Raises:
        TypeError: If the stage is already asynchronous.
    """
    if is_async_stage(sync_stage):
        raise TypeError(f"{_stage_name(sync_stage)} is already asynchronous")
    if not isinstance(sync_stage, Stage):
        raise TypeError(f"Expected a stage with run(), got {sync_stage!r}")
    return LiftedStage(sync_stage)


def _flatten(stages, chain_type) -> Tuple[Any, ...]:
    flat = []
    for s in stages:
        if isinstance(s, chain_type):
            flat.extend(s.stages)
        else:
            flat.append(s)
    return tuple(flat)


def then(first, second, *more):
    """Compose stages left to right.

    Args:
        first: First stage to run
        second: Stage fed with the output of ``first``
        *more: Further stages, run in order

    Returns:
        A :class:`Chain` when every stage is synchronous, an
        :class:`AsyncChain` when every stage is asynchronous.

    Raises:
        TypeError: If synchronous and asynchronous stages are mixed, or an
            argument has no ``run`` method.

    Example:
        >>> pipeline = then(actions.fetch_asset, actions.face_encoding, actions.clean)
        >>> output = pipeline.run(process_input)
    """
    stages = (first, second) + more
    for s in stages:
        if not callable(getattr(s, "run", None)):
            raise TypeError(f"Expected a stage with run(), got {s!r}")

    kinds = {is_async_stage(s) for s in stages}
    if kinds == {False}:
        return Chain(_flatten(stages, Chain))
    if kinds == {True}:
        return AsyncChain(_flatten(stages, AsyncChain))

    names = ", ".join(
        f"{_stage_name(s)} ({'async' if is_async_stage(s) else 'sync'})" for s in stages
    )
    raise TypeError(
        f"Cannot chain synchronous and asynchronous stages: {names}. "
        f"Wrap synchronous stages with lift()."
    )
