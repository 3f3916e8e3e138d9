"""
Bandwidth limiter for byte streams
"""

import asyncio
import time
from typing import AsyncIterable, AsyncIterator, Awaitable, Callable, Optional

import structlog

from ..core.cancellation import CancellationToken

logger = structlog.get_logger(__name__)


class BandwidthLimiter:
    """
    Fixed-window token accounting: at most ``rate`` bytes are released per
    ``window`` seconds; callers that would exceed the budget sleep out the rest of
    the window. ``rate=None`` is a pass-through.
    """

    def __init__(self,
                 rate: Optional[int] = None,
                 window: float = 1.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Optional[Callable[[float], Awaitable[None]]] = None,
                 cancel_token: Optional[CancellationToken] = None):
        if rate is not None and rate <= 0:
            raise ValueError("Bandwidth rate must be positive")
        self.rate = rate
        self.window = window
        self._clock = clock
        self._sleep = sleep or (cancel_token.sleep if cancel_token else asyncio.sleep)
        self._window_start: Optional[float] = None
        self._window_bytes = 0
        self.total_bytes = 0
        self.total_wait = 0.0

    @property
    def enabled(self) -> bool:
        return self.rate is not None

    @property
    def budget(self) -> int:
        return max(1, int(self.rate * self.window))

    async def consume(self, size: int) -> None:
        """Account for size bytes, waiting when the window budget is spent"""
        self.total_bytes += size
        if self.rate is None or size <= 0:
            return
        remaining = size
        while remaining > 0:
            now = self._clock()
            if self._window_start is None or now - self._window_start >= self.window:
                self._window_start = now
                self._window_bytes = 0
            available = self.budget - self._window_bytes
            if available <= 0:
                delay = self.window - (now - self._window_start)
                if delay > 0:
                    self.total_wait += delay
                    await self._sleep(delay)
                self._window_start = None
                continue
            take = min(available, remaining)
            self._window_bytes += take
            remaining -= take

    async def throttle(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
        """Re-yield chunks no faster than the configured rate"""
        async for chunk in chunks:
            await self.consume(len(chunk))
            yield chunk


def format_rate(rate: Optional[int]) -> str:
    """Human readable bytes/second"""
    if rate is None:
        return "unlimited"
    for unit, factor in (("GB", 1024 ** 3), ("MB", 1024 ** 2), ("KB", 1024)):
        if rate >= factor:
            return f"{rate / factor:.1f} {unit}/s"
    return f"{rate} B/s"
