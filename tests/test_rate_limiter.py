"""
Token bucket limiter tests: admission bounds, FIFO order, refill without drift,
cancellation and shutdown.
"""
import asyncio

import pytest

from finsight.rate_limiter import TokenBucketLimiter


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


# =============================================================================
# Admission
# =============================================================================

@pytest.mark.asyncio
async def test_n_plus_one_acquires_admit_only_n_until_refill():
    limiter = TokenBucketLimiter(max_tokens=3, interval=0.2)
    granted = []

    async def take(i):
        await limiter.acquire()
        granted.append(i)

    tasks = [asyncio.create_task(take(i)) for i in range(4)]
    await asyncio.sleep(0.05)

    assert sorted(granted) == [0, 1, 2]
    assert limiter.pending_waiters == 1

    await asyncio.wait_for(asyncio.gather(*tasks), timeout=2.0)
    assert sorted(granted) == [0, 1, 2, 3]
    await limiter.close()


@pytest.mark.asyncio
async def test_fast_path_does_not_suspend_when_tokens_available():
    limiter = TokenBucketLimiter(max_tokens=5, interval=60.0)
    for _ in range(5):
        await limiter.acquire()

    stats = limiter.get_stats()
    assert stats["granted_immediately"] == 5
    assert stats["available_tokens"] == 0
    await limiter.close()


@pytest.mark.asyncio
async def test_waiters_are_admitted_in_arrival_order():
    limiter = TokenBucketLimiter(max_tokens=1, interval=0.03)
    await limiter.acquire()
    order = []

    async def take(i):
        await limiter.acquire()
        order.append(i)

    tasks = []
    for i in range(5):
        tasks.append(asyncio.create_task(take(i)))
        await asyncio.sleep(0)

    await asyncio.wait_for(asyncio.gather(*tasks), timeout=2.0)
    assert order == [0, 1, 2, 3, 4]
    await limiter.close()


# =============================================================================
# Refill
# =============================================================================

@pytest.mark.asyncio
async def test_refill_adds_whole_intervals_and_is_capped():
    clock = FakeClock(100.0)
    limiter = TokenBucketLimiter(max_tokens=4, interval=1.0, refill_per_interval=1, clock=clock)
    for _ in range(4):
        await limiter.acquire()
    assert limiter.available_tokens() == 0

    clock.now = 102.5
    assert limiter.available_tokens() == 2

    clock.now = 150.0
    assert limiter.available_tokens() == 4


@pytest.mark.asyncio
async def test_refill_advances_by_consumed_intervals_only():
    clock = FakeClock(0.0)
    limiter = TokenBucketLimiter(max_tokens=10, interval=1.0, refill_per_interval=1, clock=clock)
    for _ in range(10):
        await limiter.acquire()

    clock.now = 2.7
    assert limiter.available_tokens() == 2
    # Leftover 0.7s still counts toward the next token
    assert limiter._bucket.last_refill_at == pytest.approx(2.0)

    clock.now = 3.0
    assert limiter.available_tokens() == 3


def test_invalid_configuration_rejected():
    with pytest.raises(ValueError):
        TokenBucketLimiter(max_tokens=0)
    with pytest.raises(ValueError):
        TokenBucketLimiter(max_tokens=1, interval=0)


# =============================================================================
# Cancellation and shutdown
# =============================================================================

@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_consume_a_token():
    limiter = TokenBucketLimiter(max_tokens=1, interval=0.1)
    await limiter.acquire()

    first = asyncio.create_task(limiter.acquire())
    second = asyncio.create_task(limiter.acquire())
    await asyncio.sleep(0)
    first.cancel()

    await asyncio.wait_for(second, timeout=2.0)
    assert first.cancelled()
    assert limiter.pending_waiters == 0
    await limiter.close()


@pytest.mark.asyncio
async def test_close_cancels_queued_waiters_and_rejects_new_calls():
    limiter = TokenBucketLimiter(max_tokens=1, interval=60.0)
    await limiter.acquire()

    waiter = asyncio.create_task(limiter.acquire())
    await asyncio.sleep(0)
    await limiter.close()

    with pytest.raises(asyncio.CancelledError):
        await waiter
    with pytest.raises(RuntimeError):
        await limiter.acquire()
