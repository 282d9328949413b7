import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger("rate_limiter")


class ApiRateLimiter:
    """Spacing + per-minute counter for broker API calls.

    - min_interval_ms: minimum gap between two calls (150ms ~ 6.7 calls/s,
      under the broker's 10/s ceiling)
    - per_minute: hard cap of calls in a rolling one-minute window

    Batch rotation in the scheduler keeps normal traffic well below both
    limits; this is the backstop for bursts (warm-ups, exits, retries).
    """

    WINDOW_SEC = 60.0

    def __init__(self,
                 *,
                 min_interval_ms: int = 150,
                 per_minute: int = 200,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.min_interval = max(0, min_interval_ms) / 1000.0
        self.per_minute = max(1, int(per_minute))
        self._clock = clock
        self._sleep = sleep
        self._last_call = None
        self._window_start = None
        self._count = 0
        self._lock = asyncio.Lock()

    @property
    def calls_in_window(self) -> int:
        self._roll_window(self._clock())
        return self._count

    def _roll_window(self, now: float) -> None:
        if self._window_start is None or now - self._window_start >= self.WINDOW_SEC:
            if self._count:
                logger.debug("API call count reset after %d calls", self._count)
            self._window_start = now
            self._count = 0

    def delay_needed(self) -> float:
        now = self._clock()
        self._roll_window(now)
        delay = 0.0
        if self._last_call is not None:
            delay = max(delay, self.min_interval - (now - self._last_call))
        if self._count >= self.per_minute:
            delay = max(delay, self.WINDOW_SEC - (now - self._window_start))
        return max(0.0, delay)

    def allow(self) -> bool:
        """Non-blocking: record a call and return True only if no wait is needed."""
        if self.delay_needed() > 0:
            return False
        self._record()
        return True

    async def acquire(self) -> float:
        """Wait until a call is permitted, record it and return the seconds waited."""
        async with self._lock:
            waited = 0.0
            delay = self.delay_needed()
            while delay > 0:
                if self._count >= self.per_minute:
                    logger.warning("Per-minute API limit (%d) reached, waiting %.2fs", self.per_minute, delay)
                await self._sleep(delay)
                waited += delay
                delay = self.delay_needed()
            self._record()
            return waited

    def _record(self) -> None:
        now = self._clock()
        self._roll_window(now)
        self._last_call = now
        self._count += 1
        if self._count % 10 == 0:
            logger.debug("API calls: %d in current minute", self._count)

    def reset(self) -> None:
        self._last_call = None
        self._window_start = None
        self._count = 0
