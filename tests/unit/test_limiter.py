"""Reservoir rate limiter tests."""

import asyncio
import time

import pytest

from stepwise.resilience import ReservoirLimiter


@pytest.mark.asyncio
async def test_calls_beyond_reservoir_wait_for_refill():
    limiter = ReservoirLimiter(capacity=2, refill_amount=2, refill_interval=0.2, max_concurrent=10)
    start = time.monotonic()
    granted = []

    async def call(i):
        async with limiter.slot():
            granted.append((i, time.monotonic() - start))

    await asyncio.gather(*(call(i) for i in range(5)))

    times = dict(granted)
    assert times[0] < 0.1 and times[1] < 0.1
    assert times[2] >= 0.19 and times[3] >= 0.19
    assert times[4] >= 0.39


@pytest.mark.asyncio
async def test_waiters_are_served_in_submission_order():
    limiter = ReservoirLimiter(capacity=1, refill_amount=1, refill_interval=0.05, max_concurrent=1)
    order = []

    async def call(i):
        async with limiter.slot():
            order.append(i)

    tasks = []
    for i in range(4):
        tasks.append(asyncio.create_task(call(i)))
        await asyncio.sleep(0)
    await asyncio.gather(*tasks)
    assert order == [0, 1, 2, 3]


@pytest.mark.asyncio
async def test_concurrency_cap():
    limiter = ReservoirLimiter(capacity=100, refill_amount=100, refill_interval=1.0, max_concurrent=2)
    active = 0
    peak = 0

    async def call():
        nonlocal active, peak
        async with limiter.slot():
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.05)
            active -= 1

    await asyncio.gather(*(call() for _ in range(6)))
    assert peak == 2
    assert limiter.in_flight == 0
    assert limiter.tokens == 94


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_leak_slot():
    limiter = ReservoirLimiter(capacity=10, refill_amount=10, refill_interval=1.0, max_concurrent=1)
    await limiter.acquire()
    waiter = asyncio.create_task(limiter.acquire())
    await asyncio.sleep(0.01)
    assert limiter.queued == 1
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter
    limiter.release()
    assert limiter.in_flight == 0
    await asyncio.wait_for(limiter.acquire(), timeout=0.5)
    assert limiter.in_flight == 1


def test_refill_never_exceeds_capacity():
    now = [0.0]
    limiter = ReservoirLimiter(
        capacity=3, refill_amount=2, refill_interval=1.0, max_concurrent=1, clock=lambda: now[0]
    )
    limiter._tokens = 0
    now[0] = 1.0
    assert limiter.tokens == 2
    now[0] = 5.0
    assert limiter.tokens == 3
    status = limiter.get_status()
    assert status["capacity"] == 3
    assert status["queued"] == 0
