"""
Unit tests for per-workspace rate limiting.
"""

import asyncio
import gc
import os
import shutil
import sqlite3
import tempfile
from unittest.mock import patch

import pytest

from ai_quota_proxy.core.errors import InfrastructureError
from ai_quota_proxy.core.rate_limiter import RateLimitConfig, RateLimiter
from ai_quota_proxy.storage.models import WindowType
from ai_quota_proxy.storage.repository import RateLimitRepository, initialize_schema


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestRateLimitConfig:
    """Test ceiling validation."""

    def test_defaults(self):
        limits = RateLimitConfig()
        assert limits.ceilings() == {WindowType.MINUTE: 20, WindowType.HOUR: 100, WindowType.DAY: 1000}

    @pytest.mark.parametrize("value", [0, -1, 1.5, True])
    def test_rejects_invalid_ceiling(self, value):
        with pytest.raises(ValueError, match="minute_limit"):
            RateLimitConfig(minute_limit=value)


class TestRateLimiter:
    """Test window accounting against a real SQLite store."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repository = RateLimitRepository(self.db_path)
        self.clock = FakeClock()
        self.limiter = RateLimiter(self.repository, clock=self.clock)
        self.limits = RateLimitConfig(minute_limit=3, hour_limit=100, day_limit=1000)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    async def test_allows_up_to_ceiling_then_denies(self):
        """N requests pass, the (N+1)-th is refused."""
        for _ in range(3):
            assert (await self.limiter.check_rate_limit("ws-1", self.limits)).allowed
            await self.limiter.increment_counter("ws-1")

        status = await self.limiter.check_rate_limit("ws-1", self.limits)

        assert not status.allowed
        assert status.remaining[WindowType.MINUTE] == 0

    async def test_retry_after_is_time_to_reset(self):
        for _ in range(3):
            await self.limiter.increment_counter("ws-1")
        self.clock.now += 20.5

        status = await self.limiter.check_rate_limit("ws-1", self.limits)

        assert status.retry_after_seconds == 40

    async def test_retry_after_is_shortest_violated_window(self):
        """With minute and hour both full, the minute reset is reported."""
        limits = RateLimitConfig(minute_limit=2, hour_limit=2, day_limit=1000)
        await self.limiter.increment_counter("ws-1")
        await self.limiter.increment_counter("ws-1")

        status = await self.limiter.check_rate_limit("ws-1", limits)

        assert not status.allowed
        assert status.retry_after_seconds == 60

    async def test_window_rolls_over(self):
        """After the minute elapses the minute window starts again at 1."""
        for _ in range(3):
            await self.limiter.increment_counter("ws-1")
        self.clock.now += 61

        assert (await self.limiter.check_rate_limit("ws-1", self.limits)).allowed
        await self.limiter.increment_counter("ws-1")

        windows = self.repository.get_windows("ws-1")
        assert windows[WindowType.MINUTE].request_count == 1
        assert windows[WindowType.MINUTE].window_start == self.clock.now
        assert windows[WindowType.HOUR].request_count == 4

    async def test_hour_ceiling_survives_minute_rollover(self):
        limits = RateLimitConfig(minute_limit=10, hour_limit=2, day_limit=1000)
        await self.limiter.increment_counter("ws-1")
        self.clock.now += 120
        await self.limiter.increment_counter("ws-1")
        self.clock.now += 120

        status = await self.limiter.check_rate_limit("ws-1", limits)

        assert not status.allowed
        assert status.retry_after_seconds == 3600 - 240

    async def test_workspaces_independent(self):
        for _ in range(3):
            await self.limiter.increment_counter("ws-1")

        assert (await self.limiter.check_rate_limit("ws-2", self.limits)).allowed

    async def test_reservations_count_against_ceiling(self):
        """Held slots are visible to later checks until released."""
        held = [await self.limiter.reserve("ws-1", self.limits) for _ in range(3)]
        assert all(r.allowed for r in held)

        denied = await self.limiter.reserve("ws-1", self.limits)
        assert not denied.allowed
        assert self.limiter.pending("ws-1") == 3

        await held[0].release()
        assert (await self.limiter.reserve("ws-1", self.limits)).allowed

    async def test_reserve_counts_in_store(self):
        reservation = await self.limiter.reserve("ws-1", self.limits)

        assert self.repository.get_windows("ws-1")[WindowType.MINUTE].request_count == 1
        assert reservation.status.remaining[WindowType.MINUTE] == 2

    async def test_commit_keeps_count(self):
        reservation = await self.limiter.reserve("ws-1", self.limits)

        reservation.commit()
        reservation.commit()
        await reservation.release()

        assert self.limiter.pending("ws-1") == 0
        assert self.repository.get_windows("ws-1")[WindowType.MINUTE].request_count == 1

    async def test_release_takes_count_back(self):
        reservation = await self.limiter.reserve("ws-1", self.limits)

        await reservation.release()
        await reservation.release()

        assert self.limiter.pending("ws-1") == 0
        windows = self.repository.get_windows("ws-1")
        assert all(w.request_count == 0 for w in windows.values())

    async def test_release_after_rollover_keeps_new_window(self):
        """A slot counted in an expired minute window is not taken from the next one."""
        stale = await self.limiter.reserve("ws-1", self.limits)
        self.clock.now += 61
        fresh = await self.limiter.reserve("ws-1", self.limits)
        fresh.commit()

        await stale.release()

        windows = self.repository.get_windows("ws-1")
        assert windows[WindowType.MINUTE].request_count == 1
        assert windows[WindowType.HOUR].request_count == 1

    async def test_release_store_failure_raises(self):
        reservation = await self.limiter.reserve("ws-1", self.limits)

        with patch.object(self.repository, "release_slot", side_effect=sqlite3.OperationalError("locked")):
            with pytest.raises(InfrastructureError, match="release rate limit slot"):
                await reservation.release()

        assert self.limiter.pending("ws-1") == 0

    async def test_concurrent_reservations_admit_exactly_ceiling(self):
        """N+5 simultaneous requests: exactly N get a slot."""
        results = await asyncio.gather(*(self.limiter.reserve("ws-1", self.limits) for _ in range(8)))

        assert sum(r.allowed for r in results) == 3
        assert self.repository.get_windows("ws-1")[WindowType.MINUTE].request_count == 3

    async def test_concurrent_acquire_counts_exactly_ceiling(self):
        results = await asyncio.gather(*(self.limiter.acquire("ws-1", self.limits) for _ in range(8)))

        assert sum(s.allowed for s in results) == 3
        assert self.repository.get_windows("ws-1")[WindowType.MINUTE].request_count == 3

    async def test_acquire_respects_other_writers(self):
        """A second limiter on the same store sees the first one's counts."""
        other = RateLimiter(RateLimitRepository(self.db_path), clock=self.clock)
        for _ in range(3):
            assert (await other.acquire("ws-1", self.limits)).allowed

        status = await self.limiter.acquire("ws-1", self.limits)

        assert not status.allowed

    async def test_limiters_sharing_a_store_share_the_ceiling(self):
        """Two limiters on one database never admit more than the ceiling between them."""
        limits = RateLimitConfig(minute_limit=2)
        other = RateLimiter(RateLimitRepository(self.db_path), clock=self.clock)

        reservations = []
        for limiter in (self.limiter, other, self.limiter, other):
            reservations.append(await limiter.reserve("ws-1", limits))
        for reservation in reservations:
            reservation.commit()

        assert sum(r.allowed for r in reservations) == 2
        assert self.repository.get_windows("ws-1")[WindowType.MINUTE].request_count == 2

    async def test_release_frees_slot_for_other_limiter(self):
        limits = RateLimitConfig(minute_limit=1)
        other = RateLimiter(RateLimitRepository(self.db_path), clock=self.clock)
        held = await self.limiter.reserve("ws-1", limits)

        assert not (await other.reserve("ws-1", limits)).allowed
        await held.release()
        assert (await other.reserve("ws-1", limits)).allowed

    async def test_locks_do_not_accumulate(self):
        for i in range(20):
            (await self.limiter.reserve(f"ws-{i}", self.limits)).commit()
        gc.collect()

        assert len(self.limiter._locks) == 0

    async def test_store_failure_raises(self):
        with patch.object(self.repository, "get_windows", side_effect=sqlite3.OperationalError("locked")):
            with pytest.raises(InfrastructureError, match="read rate limits"):
                await self.limiter.check_rate_limit("ws-1", self.limits)
