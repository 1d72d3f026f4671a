import asyncio
import time

import pytest

from ink2md.runtime.rate_limiter import RateLimiter


def test_min_interval_from_requests_per_second() -> None:
    assert RateLimiter(3).min_interval_seconds == pytest.approx(0.333)
    assert RateLimiter(0).min_interval_seconds == pytest.approx(1.0)
    assert RateLimiter(5000).min_interval_seconds == pytest.approx(0.001)


@pytest.mark.asyncio
async def test_turns_are_spaced_by_min_interval() -> None:
    limiter = RateLimiter(20)
    starts: list[float] = []

    async def take_turn() -> None:
        await limiter.wait_turn()
        starts.append(time.monotonic())

    await asyncio.gather(*(take_turn() for _ in range(4)))

    gaps = [later - earlier for earlier, later in zip(starts, starts[1:])]
    assert len(gaps) == 3
    assert all(gap >= limiter.min_interval_seconds - 0.005 for gap in gaps)


@pytest.mark.asyncio
async def test_first_turn_does_not_wait() -> None:
    limiter = RateLimiter(1)
    started = time.monotonic()
    await limiter.wait_turn()
    assert time.monotonic() - started < 0.5
