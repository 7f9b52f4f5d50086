"""Randomised spacing between consecutive sends."""

import asyncio
import random
from typing import Awaitable, Callable, Optional

SleepCallable = Callable[[float], Awaitable[None]]


class JitterThrottle:
    """Wait a random delay drawn uniformly from ``[min_seconds, max_seconds)``.

    Spacing sends irregularly keeps bulk traffic under the transport's
    throttling thresholds.
    """

    def __init__(
        self,
        min_seconds: float = 20.0,
        max_seconds: float = 50.0,
        *,
        sleep: Optional[SleepCallable] = None,
        rng: Optional[random.Random] = None,
    ):
        if min_seconds < 0 or max_seconds < min_seconds:
            raise ValueError("expected 0 <= min_seconds <= max_seconds")
        self.min_seconds = float(min_seconds)
        self.max_seconds = float(max_seconds)
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

    def next_delay(self) -> float:
        """Return the next delay, in seconds."""
        return self.min_seconds + self._rng.random() * (self.max_seconds - self.min_seconds)

    async def wait(self) -> float:
        """Sleep for the next delay and return it."""
        delay = self.next_delay()
        await self._sleep(delay)
        return delay
