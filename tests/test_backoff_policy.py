from __future__ import annotations

import pytest

from core.backoff import Backoff, BackoffConfig


def test_delays_grow_exponentially_up_to_cap() -> None:
    backoff = Backoff(
        config=BackoffConfig(base_delay_s=0.5, max_delay_s=3.0), rand_fn=lambda: 1.0
    )

    delays = [backoff.next_delay() for _ in range(5)]

    assert delays == [0.5, 1.0, 2.0, 3.0, 3.0]
    assert backoff.attempts == 5


def test_jitter_scales_delay() -> None:
    backoff = Backoff(config=BackoffConfig(base_delay_s=2.0), rand_fn=lambda: 0.25)
    assert backoff.next_delay() == pytest.approx(0.5)


def test_bounded_attempts_exhaust_and_reset() -> None:
    backoff = Backoff(config=BackoffConfig(max_attempts=2), rand_fn=lambda: 0.0)

    backoff.next_delay()
    assert not backoff.exhausted
    backoff.next_delay()
    assert backoff.exhausted

    backoff.reset()
    assert backoff.attempts == 0
    assert not backoff.exhausted


def test_unbounded_by_default() -> None:
    backoff = Backoff(rand_fn=lambda: 0.0)
    for _ in range(50):
        backoff.next_delay()
    assert not backoff.exhausted


@pytest.mark.asyncio
async def test_wait_sleeps_for_computed_delay() -> None:
    sleeps: list[float] = []

    async def sleep(delay: float) -> None:
        sleeps.append(delay)

    backoff = Backoff(
        config=BackoffConfig(base_delay_s=1.0), sleep_fn=sleep, rand_fn=lambda: 0.5
    )

    assert await backoff.wait() == pytest.approx(0.5)
    assert await backoff.wait() == pytest.approx(1.0)
    assert sleeps == [pytest.approx(0.5), pytest.approx(1.0)]
