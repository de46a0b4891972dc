"""Helpers for bounded concurrent execution of async work."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def concurrent_executor(
    items: Iterable[T],
    func: Callable[[T], Awaitable[R]],
    *,
    concurrency: int,
) -> list[R]:
    """Run ``func`` over ``items`` with at most ``concurrency`` calls in flight.

    Results keep the order of ``items``. The first exception cancels the
    remaining calls and propagates.

    Args:
        items: Inputs to process.
        func: Async callable applied to each input.
        concurrency: Maximum number of concurrent calls.

    Returns:
        List of results in input order.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")

    semaphore = asyncio.Semaphore(concurrency)

    async def run(item: T) -> R:
        async with semaphore:
            return await func(item)

    tasks = [asyncio.ensure_future(run(item)) for item in items]
    if not tasks:
        return []

    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
