"""
Bounded-concurrency scheduler for independent async work units.

**Conceptual**: Fetching price history for hundreds of instruments one at a
time is slow; firing every request at once overloads the price source.
TaskQueue runs a list of zero-argument coroutine functions with at most
`concurrency` of them in flight:
  - Units start in input order as slots free up.
  - Output slots are aligned to input order, whatever the completion order.
  - A unit that raises has its exception stored in its slot instead of
    propagating, so a batch always completes once every unit has settled.
  - There is no cancellation: a started unit runs to completion.

**Usage**:
    >>> queue = TaskQueue(concurrency=8)
    >>> results = await queue.run([partial(fetch, 1), partial(fetch, 2)])
    >>> for result in results:
    ...     if isinstance(result, Exception):
    ...         log_and_skip(result)
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence


logger = logging.getLogger(__name__)

Task = Callable[[], Awaitable[Any]]


class TaskQueue:
    """
    Runs async work units with a concurrency cap and per-unit failure isolation.

    Attributes:
        concurrency: Maximum number of units in flight at once (>= 1).
    """

    def __init__(self, concurrency: int = 10):
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.concurrency = concurrency

    async def run(self, tasks: Sequence[Task]) -> list[Any]:
        """
        Run all units and return their results index-aligned with `tasks`.

        A failed unit's slot holds the exception instance it raised.
        CancelledError is not captured.
        """
        results: list[Any] = [None] * len(tasks)
        pending_indices = iter(range(len(tasks)))

        async def worker() -> None:
            # Workers share one iterator; only one runs between awaits.
            for index in pending_indices:
                try:
                    results[index] = await tasks[index]()
                except Exception as exc:
                    logger.debug("Task %d failed: %r", index, exc)
                    results[index] = exc

        worker_count = min(self.concurrency, len(tasks))
        await asyncio.gather(*(worker() for _ in range(worker_count)))
        return results

