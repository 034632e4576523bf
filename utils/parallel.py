"""Order-preserving bounded-concurrency map over a static index range."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def bounded_map(
    items: Sequence[T],
    fn: Callable[[T], Awaitable[R]],
    *,
    limit: int,
) -> List[Optional[R]]:
    """Run ``fn`` over ``items`` with at most ``limit`` calls in flight.

    A fixed pool of workers draws the next index from a shared cursor, so
    completions may arrive in any order; each result is written into the slot of
    its original index. Exceptions raised by ``fn`` propagate, callers that need
    per-item isolation must catch inside ``fn``.
    """
    if limit < 1:
        raise ValueError(f"concurrency limit must be >= 1, got {limit}")

    results: List[Optional[R]] = [None] * len(items)
    cursor = iter(range(len(items)))

    async def _worker() -> None:
        # next() on a shared iterator is safe: workers only interleave at awaits.
        for idx in cursor:
            results[idx] = await fn(items[idx])

    workers = [asyncio.create_task(_worker()) for _ in range(min(limit, len(items)))]
    if workers:
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            raise
    return results
