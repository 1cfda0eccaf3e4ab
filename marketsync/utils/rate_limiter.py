from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class RateLimiter:
    """Rolling-window call budget shared by every worker of one platform.

    At most ``capacity`` units are granted within any ``interval`` seconds.
    Waiters are served strictly FIFO, so a heavy request at the head of the
    queue holds back lighter ones behind it.

    The limiter fails open: if its own bookkeeping breaks, pending and future
    callers are released rather than left blocked.
    """

    def __init__(
        self,
        capacity: float,
        interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity <= 0 or interval <= 0:
            raise ValueError("capacity and interval must be positive")
        self.capacity = float(capacity)
        self.interval = float(interval)
        self._clock = clock
        self._grants: Deque[Tuple[float, float]] = deque()
        self._used = 0.0
        self._waiters: Deque[Tuple[float, asyncio.Future]] = deque()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._broken = False

    async def acquire(self, weight: float = 1) -> None:
        """Suspend until ``weight`` units fit in the rolling window, then debit them."""
        if self._broken:
            return
        try:
            if weight > self.capacity:
                logger.warning("Rate limiter weight %s exceeds capacity %s; clamping", weight, self.capacity)
                weight = self.capacity
            future: asyncio.Future = asyncio.get_running_loop().create_future()
            self._waiters.append((float(weight), future))
            self._process_queue()
        except Exception:  # noqa: BLE001
            logger.exception("Rate limiter failed; continuing without limiting")
            self._fail_open()
            return
        await future

    def stats(self) -> Dict[str, float]:
        self._expire(self._clock())
        return {
            "available": self.capacity - self._used,
            "queue_length": len(self._waiters),
            "capacity": self.capacity,
        }

    def _expire(self, now: float) -> None:
        horizon = now - self.interval
        while self._grants and self._grants[0][0] <= horizon:
            _, weight = self._grants.popleft()
            self._used -= weight
        if not self._grants:
            self._used = 0.0

    def _seconds_until_available(self, weight: float, now: float) -> float:
        freed = self.capacity - self._used
        for granted_at, granted_weight in self._grants:
            freed += granted_weight
            if freed >= weight:
                return max(0.0, granted_at + self.interval - now)
        return self.interval

    def _process_queue(self) -> None:
        now = self._clock()
        self._expire(now)

        while self._waiters:
            weight, future = self._waiters[0]
            if future.done():
                # Caller was cancelled while queued
                self._waiters.popleft()
                continue

            if self.capacity - self._used >= weight:
                self._waiters.popleft()
                self._grants.append((now, weight))
                self._used += weight
                future.set_result(None)
                continue

            if self._timer is None:
                delay = max(0.01, self._seconds_until_available(weight, now))
                self._timer = asyncio.get_running_loop().call_later(delay, self._on_timer)
            break

    def _on_timer(self) -> None:
        self._timer = None
        try:
            self._process_queue()
        except Exception:  # noqa: BLE001
            logger.exception("Rate limiter failed while draining queue; releasing waiters")
            self._fail_open()

    def _fail_open(self) -> None:
        self._broken = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        while self._waiters:
            _, future = self._waiters.popleft()
            if not future.done():
                future.set_result(None)
