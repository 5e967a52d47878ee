"""Readiness tracking.

Unexpected failures at a route boundary raise the gauge, a background task lets it
decay, and the readiness probe fails while it sits above the threshold. A burst of
errors from a misbehaving authorization server or an unreachable Redis takes the
instance out of rotation until things calm down.
"""

import asyncio
from time import time
from typing import Optional


class HealthGauge:
    def __init__(
        self, value: int = 0, health_threshold: int = 100, decay: int = 1
    ) -> None:
        self._value = value
        self._health_threshold = health_threshold
        self._decay = decay
        self._last_failure_at: Optional[int] = None
        self._lock = asyncio.Lock()

    async def womp(self, d=1) -> int:
        """Record ``d`` failures and return the new value."""
        async with self._lock:
            self._value += int(d)
            self._last_failure_at = int(time() * 1000)
            return self._value

    async def tick(self) -> None:
        async with self._lock:
            self._value = max(0, self._value - self._decay)

    async def value(self) -> int:
        async with self._lock:
            return self._value

    async def last_failure_at(self) -> Optional[int]:
        """Epoch milliseconds of the most recent failure, None if there was none."""
        async with self._lock:
            return self._last_failure_at

    async def is_healthy(self) -> bool:
        async with self._lock:
            return self._value <= self._health_threshold
