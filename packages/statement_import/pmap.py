"""Bounded-concurrency async map, modeled on `p-map`.

- ``concurrency``: maximum number of mapper coroutines in flight at once.
- On the first error, everything still running is cancelled and the error is
  re-raised.

Cancelling the caller cancels every in-flight mapper before the
``CancelledError`` propagates.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

InT = TypeVar("InT")
OutT = TypeVar("OutT")


async def p_map(
    iterable: Iterable[InT],
    mapper: Callable[[InT], Awaitable[OutT]],
    *,
    concurrency: int,
) -> list[OutT]:
    """Await ``mapper`` over ``iterable`` with at most ``concurrency`` in flight.

    The result preserves input order.
    """

    if not isinstance(concurrency, int) or concurrency < 1:
        raise ValueError("concurrency must be a positive integer")

    it = enumerate(iterable)
    results: dict[int, OutT] = {}
    task_to_idx: dict[asyncio.Task, int] = {}

    def _submit() -> asyncio.Task | None:
        try:
            idx, item = next(it)
        except StopIteration:
            return None
        task = asyncio.ensure_future(mapper(item))
        task_to_idx[task] = idx
        return task

    active: set[asyncio.Task] = set()
    try:
        for _ in range(concurrency):
            task = _submit()
            if task is None:
                break
            active.add(task)

        while active:
            done, active = await asyncio.wait(active, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                results[task_to_idx.pop(task)] = task.result()

            for _ in range(len(done)):
                task = _submit()
                if task is None:
                    break
                active.add(task)
    finally:
        # Reached with work still active only on error or cancellation.
        for task in active:
            task.cancel()
        if active:
            await asyncio.gather(*active, return_exceptions=True)

    return [results[i] for i in range(len(results))]


__all__ = ["p_map"]
