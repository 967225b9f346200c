"""Fixed-size worker pool over a shared task cursor."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True, slots=True)
class Outcome(Generic[T, R]):
    """Result (or failure) of the worker for one item."""

    item: T
    value: R | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def run_bounded(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    concurrency: int,
) -> list[Outcome[T, R]]:
    """Run ``worker`` over ``items`` with at most ``concurrency`` in flight.

    Outcomes come back in input order. A failing item does not stop the
    others; its exception is stored on the outcome.
    """

    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")
    outcomes: list[Outcome[T, R] | None] = [None] * len(items)
    cursor = 0

    async def _drain() -> None:
        nonlocal cursor
        while cursor < len(items):
            index = cursor
            cursor += 1
            item = items[index]
            try:
                outcomes[index] = Outcome(item, value=await worker(item))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                outcomes[index] = Outcome(item, error=exc)

    workers = [asyncio.create_task(_drain()) for _ in range(min(concurrency, len(items)))]
    try:
        await asyncio.gather(*workers)
    finally:
        for task in workers:
            task.cancel()
    return [outcome for outcome in outcomes if outcome is not None]


__all__ = ["Outcome", "run_bounded"]
