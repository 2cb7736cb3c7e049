"""Tests for the shared sliding-window rate limiter."""

import threading

import pytest

from geogrid.utils.rate_limiter import RateLimiter


class TestRateLimiter:
    """Slot reservation, spacing, and the per-minute cap."""

    def test_rejects_zero_rpm(self):
        with pytest.raises(ValueError):
            RateLimiter(requests_per_minute=0)

    def test_first_slot_is_immediate(self):
        limiter = RateLimiter(requests_per_minute=10, min_interval=0.5)
        assert limiter.reserve() == 0

    def test_min_interval_spacing(self):
        limiter = RateLimiter(requests_per_minute=10, min_interval=0.5)
        limiter.reserve()
        wait = limiter.reserve()
        assert 0.4 < wait <= 0.5, "Second slot should wait ~0.5s, got " + str(wait)
        third = limiter.reserve()
        assert 0.9 < third <= 1.0

    def test_per_minute_cap(self):
        limiter = RateLimiter(requests_per_minute=2, min_interval=0)
        assert limiter.reserve() == 0
        assert limiter.reserve() == 0
        wait = limiter.reserve()
        assert 59.0 < wait <= 60.0, "Third slot should wait ~60s, got " + str(wait)

    def test_requests_in_last_minute(self):
        limiter = RateLimiter(requests_per_minute=100, min_interval=0)
        for _ in range(5):
            limiter.reserve()
        assert limiter.requests_in_last_minute == 5

    def test_concurrent_threads_get_distinct_slots(self):
        limiter = RateLimiter(requests_per_minute=1000, min_interval=0.01)
        waits = []
        lock = threading.Lock()

        def worker():
            wait = limiter.reserve()
            with lock:
                waits.append(wait)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert limiter.requests_in_last_minute == 20
        # Each reservation is at least one interval after the previous one
        assert max(waits) >= 0.18

    @pytest.mark.asyncio
    async def test_acquire_without_wait(self):
        limiter = RateLimiter(requests_per_minute=100, min_interval=0)
        await limiter.acquire()
        await limiter.acquire()
        assert limiter.requests_in_last_minute == 2

    @pytest.mark.asyncio
    async def test_async_context_manager(self):
        limiter = RateLimiter(requests_per_minute=100, min_interval=0)
        async with limiter as entered:
            assert entered is limiter
        assert limiter.requests_in_last_minute == 1
