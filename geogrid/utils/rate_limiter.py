"""Sliding-window rate limiter shared by every caller of one provider client."""

import asyncio
import logging
import threading
import time

logger = logging.getLogger(__name__)


class RateLimiter:
    """Reserve request slots under a per-minute cap and a minimum spacing.

    Slots are reserved under a thread lock and then awaited, so concurrent
    scans (in one event loop or in scheduler threads with their own loops)
    queue up in order instead of bursting past the limit.

    Usage::

        limiter = RateLimiter(requests_per_minute=2000, min_interval=0.034)

        async with limiter:
            await make_request()
    """

    def __init__(
        self,
        requests_per_minute: int = 2000,
        min_interval: float = 0.034,
        name: str = "default",
    ):
        if requests_per_minute < 1:
            raise ValueError("requests_per_minute must be at least 1")
        self._rpm = requests_per_minute
        self._min_interval = max(0.0, min_interval)
        self._name = name
        self._window: list[float] = []
        self._lock = threading.Lock()

    def _clean_window(self, now: float) -> None:
        """Drop reservations older than 60 seconds."""
        self._window = [t for t in self._window if now - t < 60.0]

    def reserve(self) -> float:
        """Reserve the next free slot and return how long to wait for it."""
        with self._lock:
            now = time.monotonic()
            self._clean_window(now)
            slot = now
            if self._window:
                slot = max(slot, self._window[-1] + self._min_interval)
            if len(self._window) >= self._rpm:
                slot = max(slot, self._window[-self._rpm] + 60.0)
            self._window.append(slot)
            return slot - now

    async def acquire(self) -> None:
        """Wait until a reserved request slot is reached."""
        wait = self.reserve()
        if wait > 0:
            logger.debug("RateLimiter(%s) sleeping %.3fs", self._name, wait)
            await asyncio.sleep(wait)

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, *args):
        pass

    @property
    def requests_in_last_minute(self) -> int:
        """Number of slots reserved in the last 60 seconds."""
        with self._lock:
            self._clean_window(time.monotonic())
            return len(self._window)
