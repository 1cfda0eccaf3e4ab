from __future__ import annotations

import asyncio
import time

import pytest

from marketsync.utils.rate_limiter import RateLimiter


def test_grants_immediately_while_under_capacity():
    async def scenario():
        limiter = RateLimiter(capacity=5, interval=10)
        started = time.monotonic()
        for _ in range(5):
            await limiter.acquire()
        return time.monotonic() - started, limiter.stats()

    elapsed, stats = asyncio.run(scenario())
    assert elapsed < 0.5
    assert stats["available"] == 0
    assert stats["queue_length"] == 0


def test_never_grants_more_than_capacity_per_window():
    capacity, interval = 3, 0.3

    async def scenario():
        limiter = RateLimiter(capacity=capacity, interval=interval)
        grants = []

        async def worker():
            await limiter.acquire()
            grants.append(time.monotonic())

        await asyncio.gather(*(worker() for _ in range(7)))
        return sorted(grants)

    grants = asyncio.run(scenario())
    assert len(grants) == 7
    for first, later in zip(grants, grants[capacity:]):
        assert later - first >= interval - 0.02


def test_waiters_are_served_in_arrival_order():
    async def scenario():
        limiter = RateLimiter(capacity=2, interval=0.2)
        order = []

        async def worker(name, weight):
            await limiter.acquire(weight)
            order.append(name)

        first = asyncio.create_task(worker("first", 2))
        await asyncio.sleep(0)
        heavy = asyncio.create_task(worker("heavy", 2))
        await asyncio.sleep(0)
        light = asyncio.create_task(worker("light", 1))
        await asyncio.gather(first, heavy, light)
        return order

    assert asyncio.run(scenario()) == ["first", "heavy", "light"]


def test_weight_above_capacity_is_clamped():
    async def scenario():
        limiter = RateLimiter(capacity=2, interval=60)
        await asyncio.wait_for(limiter.acquire(5), timeout=1)
        return limiter.stats()

    assert asyncio.run(scenario())["available"] == 0


def test_cancelled_waiter_does_not_block_queue():
    async def scenario():
        limiter = RateLimiter(capacity=1, interval=0.1)
        await limiter.acquire()
        abandoned = asyncio.create_task(limiter.acquire())
        await asyncio.sleep(0)
        abandoned.cancel()
        await asyncio.wait_for(limiter.acquire(), timeout=1)
        return abandoned.cancelled()

    assert asyncio.run(scenario()) is True


def test_fails_open_when_bookkeeping_breaks():
    def broken_clock() -> float:
        raise RuntimeError("clock unavailable")

    async def scenario():
        limiter = RateLimiter(capacity=1, interval=60, clock=broken_clock)
        await asyncio.wait_for(limiter.acquire(), timeout=1)
        await asyncio.wait_for(limiter.acquire(), timeout=1)

    asyncio.run(scenario())


def test_rejects_non_positive_configuration():
    with pytest.raises(ValueError):
        RateLimiter(capacity=0)
    with pytest.raises(ValueError):
        RateLimiter(capacity=1, interval=0)
