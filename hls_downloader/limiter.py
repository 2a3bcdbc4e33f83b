"""Bounded counting permit pool for segment workers."""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from .constants import MIN_CONCURRENCY, MAX_CONCURRENCY

logger = logging.getLogger(__name__)


def clamp_concurrency(value: int) -> int:
    """Clamps a requested concurrency into the supported range."""
    clamped = max(MIN_CONCURRENCY, min(MAX_CONCURRENCY, int(value)))
    if clamped != value:
        logger.warning(f"Concurrency {value} is out of range, using {clamped}.")
    return clamped


class ConcurrencyLimiter:
    """
    A counting permit pool.

    ``acquire()`` suspends until a permit is free and ``release()`` hands it
    back. The number of outstanding permits never exceeds ``max_permits``.
    """

    def __init__(self, max_permits: int):
        """
        Initializes the ConcurrencyLimiter.

        Args:
            max_permits: Requested pool size, clamped to [1, 16].
        """
        self.max_permits = clamp_concurrency(max_permits)
        self._semaphore = asyncio.Semaphore(self.max_permits)
        self.in_use = 0
        self.peak_in_use = 0

    @property
    def available(self) -> int:
        return self.max_permits - self.in_use

    async def acquire(self):
        await self._semaphore.acquire()
        self.in_use += 1
        self.peak_in_use = max(self.peak_in_use, self.in_use)

    def release(self):
        if self.in_use <= 0:
            raise RuntimeError("ConcurrencyLimiter released more permits than were acquired.")
        self.in_use -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        """Holds one permit for the duration of the block."""
        await self.acquire()
        try:
            yield
        finally:
            self.release()
