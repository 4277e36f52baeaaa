"""Bounded worker pool for asynchronous jobs.

At most ``concurrency`` jobs are in flight. Workers claim the next job in
submission order from a shared iterator, so a slow job only holds up the
worker running it. Outcomes are index-aligned to the submitted jobs.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

T = TypeVar("T")


@dataclass(frozen=True)
class JobOutcome(Generic[T]):
    """Result of one pooled job: a value or the exception it raised."""

    value: T | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value or re-raise the captured error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


async def run_bounded(jobs: Sequence[Callable[[], Awaitable[T]]], concurrency: int) -> list[JobOutcome[T]]:
    """Run ``jobs`` with at most ``concurrency`` in flight.

    A failing job is captured in its own slot and never cancels its
    siblings. Cancellation of the caller still propagates.
    """
    if not jobs:
        return []

    workers = max(1, min(concurrency, len(jobs)))
    outcomes: list[JobOutcome[T] | None] = [None] * len(jobs)
    pending = iter(range(len(jobs)))

    async def worker() -> None:
        for index in pending:
            try:
                outcomes[index] = JobOutcome(value=await jobs[index]())
            except Exception as exc:  # noqa: BLE001
                outcomes[index] = JobOutcome(error=exc)

    await asyncio.gather(*(worker() for _ in range(workers)))
    return outcomes  # type: ignore[return-value]
