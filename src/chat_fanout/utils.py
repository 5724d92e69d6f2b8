"""
Chat Fanout - Async helpers shared by the gate and the dispatcher.
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def with_timeout(awaitable: Awaitable[R], seconds: float | None) -> R:
    """Await with a deadline; ``None`` or a non-positive value means no deadline."""
    if seconds is None or seconds <= 0:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout=seconds)


async def gather_bounded(
    items: Iterable[T],
    fn: Callable[[T], Awaitable[R]],
    limit: int,
) -> list[R | BaseException]:
    """
    Run ``fn`` over ``items`` with at most ``limit`` calls in flight.

    Results keep input order. A failing call yields its exception in place
    of a result instead of cancelling its siblings.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def run(item: T) -> Any:
        async with semaphore:
            return await fn(item)

    return await asyncio.gather(*(run(item) for item in items), return_exceptions=True)
