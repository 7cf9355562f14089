"""Order-preserving bounded concurrency over async units of work."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def map_concurrent(
    items: Sequence[T],
    limit: int,
    fn: Callable[[T, int], Awaitable[R]],
) -> list[R]:
    """Run ``fn(item, index)`` over ``items`` with at most ``limit`` in flight.

    Workers claim the next unclaimed index; ``result[i]`` always belongs to
    ``items[i]`` whatever the completion order. A failing unit does not cancel
    its siblings: the first exception is re-raised once every worker stops.
    """
    if not items:
        return []
    results: list[R | None] = [None] * len(items)
    next_index = 0

    async def worker() -> None:
        nonlocal next_index
        while next_index < len(items):
            index = next_index
            next_index += 1
            results[index] = await fn(items[index], index)

    workers = [asyncio.create_task(worker()) for _ in range(max(1, min(limit, len(items))))]
    outcomes = await asyncio.gather(*workers, return_exceptions=True)
    for outcome in outcomes:
        if isinstance(outcome, BaseException):
            raise outcome
    return results  # type: ignore[return-value]
