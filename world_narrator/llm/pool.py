from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from loguru import logger

from world_narrator.domain.errors import CapacityError


class InferencePool:
    """Bounded set of in-flight model calls shared by every world.

    Waiters are served in arrival order. A waiter that cannot obtain a slot
    within ``wait_timeout_s`` is rejected with :class:`CapacityError`.
    """

    def __init__(self, max_in_flight: int, wait_timeout_s: float | None = None):
        if max_in_flight <= 0:
            raise ValueError("max_in_flight must be positive")
        self.max_in_flight = max_in_flight
        self.wait_timeout_s = wait_timeout_s
        self._semaphore = asyncio.Semaphore(max_in_flight)
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        try:
            if self.wait_timeout_s is None:
                await self._semaphore.acquire()
            else:
                await asyncio.wait_for(self._semaphore.acquire(), timeout=self.wait_timeout_s)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "Inference pool exhausted in_flight={} max={} waited_s={}",
                self._in_flight,
                self.max_in_flight,
                self.wait_timeout_s,
            )
            raise CapacityError(
                f"No inference slot available within {self.wait_timeout_s}s ({self.max_in_flight} in flight)"
            ) from exc

        self._in_flight += 1
        try:
            yield
        finally:
            self._in_flight -= 1
            self._semaphore.release()
