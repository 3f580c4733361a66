from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass


@dataclass
class BackoffConfig:
    base_delay_s: float = 0.5
    max_delay_s: float = 10.0
    max_attempts: int = 0  # 0 means unbounded


class Backoff:
    """Exponential backoff with full jitter.

    Tracks consecutive failures; callers ``reset()`` after a success.
    """

    def __init__(
        self,
        *,
        config: BackoffConfig | None = None,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
        rand_fn: Callable[[], float] = random.random,
    ) -> None:
        self._config = config or BackoffConfig()
        self._sleep = sleep_fn or asyncio.sleep
        self._rand = rand_fn
        self._attempts = 0

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def exhausted(self) -> bool:
        limit = self._config.max_attempts
        return limit > 0 and self._attempts >= limit

    def reset(self) -> None:
        self._attempts = 0

    def next_delay(self) -> float:
        self._attempts += 1
        cap = min(
            self._config.max_delay_s,
            self._config.base_delay_s * (2 ** max(self._attempts - 1, 0)),
        )
        rand_value = float(self._rand())
        return float(max(0.0, rand_value * cap))

    async def wait(self) -> float:
        delay = self.next_delay()
        if delay > 0:
            await self._sleep(delay)
        return delay
