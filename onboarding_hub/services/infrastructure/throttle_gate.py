"""
Throttle Gate
Spaces out calls to a rate-limited upstream. One instance is shared by every
caller of a client, so the spacing holds across concurrent tasks.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable

from onboarding_hub.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ThrottleGate:
    """
    Async context manager enforcing a minimum interval between request starts.

    Usage:
        gate = ThrottleGate(min_interval=1.0)
        async with gate:
            await client.post(...)
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if min_interval < 0:
            raise ValueError("min_interval must not be negative")
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_start: float | None = None

    async def acquire(self) -> None:
        async with self._lock:
            if self._last_start is not None:
                wait = self.min_interval - (self._clock() - self._last_start)
                if wait > 0:
                    logger.debug("Throttling upstream request", wait_seconds=round(wait, 3))
                    await self._sleep(wait)
            self._last_start = self._clock()

    async def __aenter__(self) -> "ThrottleGate":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None
