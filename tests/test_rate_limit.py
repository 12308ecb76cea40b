"""Tests for the per-page rate limiter."""

import pytest

from messenger_outreach.services.dispatch.rate_limit import RateLimitTracker


class FakeClock:
    """Monotonic clock advanced by the fake sleep."""

    def __init__(self) -> None:
        self.now = 1000.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def test_rejects_invalid_limits():
    with pytest.raises(ValueError):
        RateLimitTracker(max_calls=0, period=60)


@pytest.mark.asyncio
async def test_acquire_waits_for_window(clock):
    limiter = RateLimitTracker(max_calls=2, period=10, clock=clock, sleep=clock.sleep)

    await limiter.acquire("page-1")
    await limiter.acquire("page-1")
    assert clock.sleeps == []
    assert limiter.remaining("page-1") == 0

    await limiter.acquire("page-1")
    assert clock.sleeps == [10.0]


@pytest.mark.asyncio
async def test_keys_are_independent(clock):
    limiter = RateLimitTracker(max_calls=1, period=10, clock=clock, sleep=clock.sleep)

    await limiter.acquire("page-1")
    await limiter.acquire("page-2")

    assert clock.sleeps == []
    assert limiter.tracked_keys == 2


@pytest.mark.asyncio
async def test_penalize_blocks_key(clock):
    limiter = RateLimitTracker(max_calls=100, period=10, clock=clock, sleep=clock.sleep)

    limiter.penalize("page-1", 5)
    await limiter.acquire("page-1")

    assert clock.sleeps == [5.0]


@pytest.mark.asyncio
async def test_idle_keys_are_evicted(clock):
    limiter = RateLimitTracker(max_calls=5, period=10, clock=clock, sleep=clock.sleep)

    await limiter.acquire("page-1")
    clock.now += 30
    await limiter.acquire("page-2")

    assert limiter.tracked_keys == 1
    assert limiter.remaining("page-1") == 5
