"""Tests for order-preserving bounded concurrency."""

from __future__ import annotations

import asyncio

import pytest

from subagent_manager.concurrency import map_concurrent

pytestmark = pytest.mark.unit


def _run(coro):
    return asyncio.run(coro)


def test_results_follow_input_order_not_completion_order() -> None:
    delays = [0.05, 0.0, 0.02, 0.01]

    async def work(delay: float, index: int) -> str:
        await asyncio.sleep(delay)
        return f"item-{index}"

    assert _run(map_concurrent(delays, 4, work)) == ["item-0", "item-1", "item-2", "item-3"]


def test_limit_bounds_in_flight_work() -> None:
    in_flight = 0
    peak = 0

    async def work(_item: int, _index: int) -> None:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1

    _run(map_concurrent(list(range(7)), 2, work))
    assert peak == 2


def test_items_are_claimed_in_index_order() -> None:
    claimed: list[int] = []

    async def work(_item: str, index: int) -> int:
        claimed.append(index)
        await asyncio.sleep(0)
        return index

    _run(map_concurrent(["a", "b", "c", "d"], 1, work))
    assert claimed == [0, 1, 2, 3]


def test_empty_input() -> None:
    async def work(_item: int, _index: int) -> int:
        raise AssertionError("not called")

    assert _run(map_concurrent([], 3, work)) == []


def test_failure_is_raised_after_siblings_finish() -> None:
    finished: list[int] = []

    async def work(item: int, _index: int) -> int:
        if item == 1:
            raise RuntimeError("boom")
        await asyncio.sleep(0.01)
        finished.append(item)
        return item

    with pytest.raises(RuntimeError, match="boom"):
        _run(map_concurrent([0, 1, 2], 3, work))
    assert sorted(finished) == [0, 2]
