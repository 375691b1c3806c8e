"""Unit tests for stage composition."""

from __future__ import annotations

import asyncio
from unittest.mock import Mock

import pytest

from deeplook.pipeline import (
    AsyncChain,
    AsyncStage,
    Chain,
    Stage,
    async_stage,
    is_async_stage,
    lift,
    stage,
    then,
)


async def async_double(x):
    return x * 2


async def async_inc(x):
    return x + 1


def test_then_runs_left_to_right():
    """Test that stages run in order, each fed the previous output."""
    chain = then(stage(lambda x: x * 2), stage(lambda x: x + 1))

    assert isinstance(chain, Chain)
    assert chain.run(3) == 7


def test_then_accepts_more_stages():
    """Test chaining more than two stages."""
    chain = then(stage(str), stage(lambda s: s + "!"), stage(len))
    assert chain.run(123) == 4


def test_nested_chains_flatten():
    """Test that chaining chains keeps a flat stage list."""
    inner = then(stage(lambda x: x + 1, "a"), stage(lambda x: x + 2, "b"))
    outer = then(inner, stage(lambda x: x * 10, "c"))

    assert len(outer.stages) == 3
    assert outer.name == "a -> b -> c"
    assert outer.run(0) == 30


def test_failure_short_circuits():
    """Test that a raising stage stops the chain and propagates."""
    later = Mock()

    def boom(_):
        raise RuntimeError("stage failed")

    chain = then(stage(lambda x: x), stage(boom), stage(later))

    with pytest.raises(RuntimeError, match="stage failed"):
        chain.run(1)
    later.assert_not_called()


def test_stage_protocols():
    """Test runtime protocol checks and sync/async detection."""
    sync = stage(lambda x: x)
    coro = async_stage(async_double)

    assert isinstance(sync, Stage)
    assert isinstance(coro, AsyncStage)
    assert not is_async_stage(sync)
    assert is_async_stage(coro)


def test_async_chain():
    """Test that async stages compose into an AsyncChain."""
    chain = then(async_stage(async_double), async_stage(async_inc))

    assert isinstance(chain, AsyncChain)
    assert asyncio.run(chain.run(3)) == 7


def test_mixing_sync_and_async_raises():
    """Test that sync and async stages cannot be chained directly."""
    with pytest.raises(TypeError, match="lift"):
        then(stage(lambda x: x), async_stage(async_inc))


def test_lift_allows_mixing():
    """Test lifting a sync stage into an async chain."""
    chain = then(lift(stage(lambda x: x * 2, "double")), async_stage(async_inc))

    assert isinstance(chain, AsyncChain)
    assert asyncio.run(chain.run(5)) == 11


def test_lift_rejects_async_stage():
    """Test that lifting an async stage is an error."""
    with pytest.raises(TypeError):
        lift(async_stage(async_inc))


def test_async_stage_requires_coroutine_function():
    """Test that async_stage() rejects plain functions."""
    with pytest.raises(TypeError):
        async_stage(lambda x: x)


def test_then_rejects_non_stages():
    """Test that objects without run() are rejected."""
    with pytest.raises(TypeError):
        then(stage(lambda x: x), 42)


def test_stage_does_not_mutate_input():
    """Test that a chain of pure stages leaves its input untouched."""
    data = (1, 2, 3)
    chain = then(stage(lambda t: t + (4,)), stage(lambda t: tuple(reversed(t))))

    assert chain.run(data) == (4, 3, 2, 1)
    assert data == (1, 2, 3)
