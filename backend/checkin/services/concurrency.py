"""Concurrency policies for running one coroutine per item."""
import asyncio
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def gather_in_order(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    *,
    limit: Optional[int] = None,
) -> List[R]:
    """Run ``worker`` over all items at once, optionally capped by a semaphore.

    Results follow input order regardless of completion order. ``worker`` is
    expected to capture its own failures.
    """
    if not limit:
        return list(await asyncio.gather(*(worker(item) for item in items)))

    semaphore = asyncio.Semaphore(limit)

    async def _bounded(item: T) -> R:
        async with semaphore:
            return await worker(item)

    return list(await asyncio.gather(*(_bounded(item) for item in items)))


async def run_in_batches(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    *,
    batch_size: int,
    delay: float = 0.0,
) -> List[R]:
    """Run fixed-size batches one after another, pausing ``delay`` seconds between them."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    results: List[R] = []
    for start in range(0, len(items), batch_size):
        if start and delay > 0:
            await asyncio.sleep(delay)
        batch = items[start:start + batch_size]
        results.extend(await asyncio.gather(*(worker(item) for item in batch)))
    return results
