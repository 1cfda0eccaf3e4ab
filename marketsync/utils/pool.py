from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

T = TypeVar("T")


async def run_bounded(
    items: Sequence[T],
    worker: Callable[[T, int], Awaitable[None]],
    concurrency: int = 1,
    delay_ms: int = 0,
) -> None:
    """Drain ``items`` through ``worker`` with at most ``concurrency`` in flight.

    Each lane claims the next unprocessed index until the list is exhausted and
    optionally sleeps ``delay_ms`` before claiming again. Rate limiting, retries
    and error handling belong to ``worker``. A lane keeps draining after its worker
    raises; the first such exception propagates once every item has run.
    """
    if not items:
        return

    lanes = min(max(1, int(concurrency)), len(items))
    delay = max(0, int(delay_ms)) / 1000
    next_index = 0
    first_error: Optional[Exception] = None

    async def lane() -> None:
        nonlocal next_index, first_error
        while next_index < len(items):
            # Claiming is atomic: no await between the check and the increment
            index = next_index
            next_index += 1
            try:
                await worker(items[index], index)
            except Exception as exc:
                # A failed item must not retire the lane
                if first_error is None:
                    first_error = exc
            if delay and next_index < len(items):
                await asyncio.sleep(delay)

    await asyncio.gather(*(lane() for _ in range(lanes)))
    if first_error is not None:
        raise first_error
