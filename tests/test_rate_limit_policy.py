import asyncio
import time

import pytest

from krakenbot.rate_limit_policy import RateLimiter


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def test_first_request_is_allowed_immediately():
    limiter = RateLimiter(min_interval=1.0, clock=FakeClock())
    assert limiter.is_allowed()
    assert limiter.time_until_allowed() == 0.0


def test_time_until_allowed_after_request():
    clock = FakeClock(10.0)
    limiter = RateLimiter(min_interval=1.0, clock=clock)
    limiter.record_request()

    clock.now = 10.25
    assert not limiter.is_allowed()
    assert limiter.time_until_allowed() == pytest.approx(0.75)

    clock.now = 11.0
    assert limiter.is_allowed()


@pytest.mark.asyncio
async def test_wait_allows_immediately_when_idle():
    limiter = RateLimiter(min_interval=0.5)

    start = time.monotonic()
    await limiter.wait()
    elapsed = time.monotonic() - start

    assert elapsed < 0.05


@pytest.mark.asyncio
async def test_wait_spaces_consecutive_requests():
    limiter = RateLimiter(min_interval=0.1)

    start = time.monotonic()
    await limiter.wait()
    await limiter.wait()
    elapsed = time.monotonic() - start

    assert elapsed >= 0.09


@pytest.mark.asyncio
async def test_concurrent_waiters_are_spaced_one_after_another():
    limiter = RateLimiter(min_interval=0.05)
    stamps = []

    async def caller():
        await limiter.wait()
        stamps.append(time.monotonic())

    await asyncio.gather(caller(), caller(), caller())

    gaps = [b - a for a, b in zip(stamps, stamps[1:])]
    assert len(stamps) == 3
    assert all(gap >= 0.04 for gap in gaps)
