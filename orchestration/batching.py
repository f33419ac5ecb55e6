# orchestration/batching.py
"""Batch partitioning, structured fan-out and cancellation helpers for the pipeline."""

from __future__ import annotations

import asyncio
import math
from collections.abc import Awaitable, Iterable, Sequence
from typing import TypeVar

from config import settings

T = TypeVar("T")


def batch_concurrency() -> int:
    return max(1, min(settings.BATCH_CONCURRENT_BATCHES, settings.BATCH_CONCURRENT_BATCHES_MAX))


def partition_batches(
    items: Sequence[T], size_min: int | None = None, size_max: int | None = None
) -> list[list[T]]:
    """Split ``items`` into contiguous batches of near-equal size.

    Batches stay within ``[size_min, size_max]`` whenever the item count
    allows it. Fewer than ``size_max`` items always form a single batch.
    """
    size_min = size_min if size_min is not None else settings.BATCH_SIZE_MIN
    size_max = size_max if size_max is not None else settings.BATCH_SIZE_MAX
    if not items:
        return []
    if len(items) <= size_max:
        return [list(items)]
    count = math.ceil(len(items) / size_max)
    # Fewer batches keep each one above the minimum when sizes would drop below it
    while count > 1 and len(items) // count < size_min and math.ceil(
        len(items) / (count - 1)
    ) <= size_max:
        count -= 1
    base, extra = divmod(len(items), count)
    batches: list[list[T]] = []
    start = 0
    for index in range(count):
        size = base + (1 if index < extra else 0)
        batches.append(list(items[start : start + size]))
        start += size
    return batches


async def gather_cancelling(aws: Iterable[Awaitable[T]]) -> list[T]:
    """Await all awaitables; on the first failure cancel the rest and re-raise."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def withdraw_cancellation() -> None:
    """Withdraw a cancellation of the current task that the caller has handled.

    A task that turns its cancellation into a result must not stay in the
    cancelling state, or later ``asyncio.timeout`` blocks in it misfire.
    """
    task = asyncio.current_task()
    if task is not None and hasattr(task, "uncancel") and task.cancelling():
        task.uncancel()
