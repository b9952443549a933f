"""Bounded-concurrency batch runner with per-item outcomes.

Bulk reconciliation favours forward progress: one failing item is recorded
and the rest of the batch still runs.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Iterable, Optional, TypeVar

T = TypeVar("T")


@dataclass
class ItemOutcome(Generic[T]):
    item: T
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchResult(Generic[T]):
    outcomes: list[ItemOutcome[T]] = field(default_factory=list)

    @property
    def failures(self) -> list[ItemOutcome[T]]:
        return [outcome for outcome in self.outcomes if not outcome.ok]

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.ok)

    @property
    def failed(self) -> int:
        return len(self.outcomes) - self.succeeded


async def run_with_concurrency(
    items: Iterable[T],
    limit: int,
    worker: Callable[[T], Awaitable[Any]],
) -> BatchResult[T]:
    """Run ``worker`` over ``items`` with at most ``limit`` in flight.

    Outcomes keep the input order. Worker exceptions are captured on the
    outcome instead of cancelling the batch.
    """
    pending = list(items)
    outcomes: list[Optional[ItemOutcome[T]]] = [None] * len(pending)
    if not pending:
        return BatchResult()

    size = max(1, min(limit, len(pending)))
    next_index = 0

    async def drain() -> None:
        nonlocal next_index
        while next_index < len(pending):
            index = next_index
            next_index += 1
            item = pending[index]
            try:
                outcomes[index] = ItemOutcome(item=item, value=await worker(item))
            except Exception as e:
                outcomes[index] = ItemOutcome(item=item, error=e)

    await asyncio.gather(*[drain() for _ in range(size)])
    return BatchResult(outcomes=[outcome for outcome in outcomes if outcome is not None])
