"""Polite delay between category page fetches."""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional

from shopcrawl.config import settings

logger = logging.getLogger(__name__)


class PoliteDelay:
    """Fixed delay plus a small random jitter, applied between page fetches."""

    def __init__(
        self,
        enabled: Optional[bool] = None,
        delay: Optional[float] = None,
        jitter: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            enabled: Turn throttling on/off (defaults to settings.throttle_enabled)
            delay: Fixed seconds to wait
            jitter: Upper bound of the random extra seconds
            sleep: Sleep coroutine (injectable for tests)
        """
        self.enabled = settings.throttle_enabled if enabled is None else enabled
        self.delay = settings.throttle_delay_seconds if delay is None else delay
        self.jitter = settings.throttle_jitter_seconds if jitter is None else jitter
        self._sleep = sleep

    def next_interval(self) -> float:
        return self.delay + (random.uniform(0, self.jitter) if self.jitter > 0 else 0.0)

    async def wait(self) -> float:
        """Sleep for the next interval; returns the seconds waited."""
        if not self.enabled:
            return 0.0
        interval = self.next_interval()
        logger.debug(f"Throttling for {interval:.2f}s before next page")
        await self._sleep(interval)
        return interval
