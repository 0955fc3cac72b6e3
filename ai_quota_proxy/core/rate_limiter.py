"""
Per-workspace request-rate limiting over minute, hour and day windows.

Counters live in the shared store. A reservation counts its request in the
store at gate time, through a conditional compare-and-increment, so every
process sharing the store sees it immediately. Releasing a reservation
takes the count back out; committing keeps it.
"""

import asyncio
import logging
import math
import time
import weakref
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from .errors import run_store_call
from ai_quota_proxy.storage.models import RateLimitWindow, WindowType
from ai_quota_proxy.storage.repository import RateLimitRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    """Request ceilings per window. Supplied per call site."""
    minute_limit: int = 20
    hour_limit: int = 100
    day_limit: int = 1000

    def __post_init__(self):
        for name in ("minute_limit", "hour_limit", "day_limit"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(f"{name} must be a positive integer")

    def ceilings(self) -> Dict[WindowType, int]:
        return {
            WindowType.MINUTE: self.minute_limit,
            WindowType.HOUR: self.hour_limit,
            WindowType.DAY: self.day_limit,
        }


DEFAULT_RATE_LIMITS = RateLimitConfig()


@dataclass(frozen=True)
class RateLimitStatus:
    allowed: bool
    retry_after_seconds: Optional[int] = None
    remaining: Dict[WindowType, int] = field(default_factory=dict)


class RateLimitReservation:
    """A request counted in the store on behalf of one in-flight call.

    ``commit()`` keeps the count; ``release()`` takes it back out of the
    store. Either may be called once; later calls are no-ops.
    """

    def __init__(
        self,
        limiter: "RateLimiter",
        workspace_id: str,
        status: RateLimitStatus,
        window_starts: Optional[Dict[WindowType, float]] = None,
    ):
        self._limiter = limiter
        self.workspace_id = workspace_id
        self.status = status
        self._window_starts = window_starts or {}
        self._open = status.allowed

    @property
    def allowed(self) -> bool:
        return self.status.allowed

    def commit(self) -> None:
        if not self._open:
            return
        self._open = False
        self._limiter._close(self.workspace_id)

    async def release(self) -> None:
        """Give the slot back.

        Raises:
            InfrastructureError: If the store write fails; the slot then
                stays counted until its windows roll over
        """
        if not self._open:
            return
        self._open = False
        try:
            await run_store_call(
                "release rate limit slot",
                self._limiter.repository.release_slot,
                self.workspace_id,
                self._window_starts,
            )
        finally:
            self._limiter._close(self.workspace_id)


class RateLimiter:
    """Enforces minute/hour/day request ceilings per workspace."""

    def __init__(self, repository: RateLimitRepository, clock: Callable[[], float] = time.time):
        self.repository = repository
        self.clock = clock
        # Entries disappear once no coroutine holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._open: Dict[str, int] = {}

    def pending(self, workspace_id: str) -> int:
        """Reservations of a workspace neither committed nor released yet."""
        return self._open.get(workspace_id, 0)

    def _lock_for(self, workspace_id: str) -> asyncio.Lock:
        lock = self._locks.get(workspace_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[workspace_id] = lock
        return lock

    def _evaluate(
        self,
        windows: Dict[WindowType, RateLimitWindow],
        limits: RateLimitConfig,
        now: float,
    ) -> RateLimitStatus:
        remaining = {}
        retry_after = []

        for window_type, ceiling in limits.ceilings().items():
            window = windows.get(window_type)
            used = window.effective_count(now) if window else 0
            remaining[window_type] = max(0, ceiling - used)

            if used + 1 > ceiling:
                wait = window.seconds_until_reset(now) if window else window_type.duration_seconds
                retry_after.append(max(1, math.ceil(wait)))

        if retry_after:
            return RateLimitStatus(allowed=False, retry_after_seconds=min(retry_after), remaining=remaining)
        return RateLimitStatus(allowed=True, remaining=remaining)

    async def check_rate_limit(
        self,
        workspace_id: str,
        limits: RateLimitConfig = DEFAULT_RATE_LIMITS,
    ) -> RateLimitStatus:
        """Check whether one more request fits in every window.

        Read-only: expired windows are treated as empty here and only rolled
        over by a write. Open reservations are already part of the stored
        counts.

        Args:
            workspace_id: Workspace to check
            limits: Ceilings for this call site

        Returns:
            RateLimitStatus; when denied, ``retry_after_seconds`` is the
            shortest wait among the violated windows

        Raises:
            InfrastructureError: If the store cannot be read
        """
        windows = await run_store_call("read rate limits", self.repository.get_windows, workspace_id)
        return self._evaluate(windows, limits, self.clock())

    async def increment_counter(self, workspace_id: str) -> None:
        """Count one request in all three windows, rolling expired ones over.

        Raises:
            InfrastructureError: If the store write fails
        """
        await run_store_call(
            "increment rate limits", self.repository.try_increment, workspace_id, self.clock()
        )

    async def reserve(
        self,
        workspace_id: str,
        limits: RateLimitConfig = DEFAULT_RATE_LIMITS,
    ) -> RateLimitReservation:
        """Count one request if it fits under every ceiling.

        The store checks and increments in one transaction, so processes
        sharing it can never both take the last slot. The returned
        reservation is denied (``allowed`` False, nothing counted) when a
        ceiling would be exceeded.

        Raises:
            InfrastructureError: If the store cannot be read or written
        """
        async with self._lock_for(workspace_id):
            now = self.clock()
            counted, windows = await run_store_call(
                "reserve rate limit slot",
                self.repository.try_increment,
                workspace_id,
                now,
                limits.ceilings(),
            )

        if not counted:
            return RateLimitReservation(self, workspace_id, self._evaluate(windows, limits, now))

        self._open[workspace_id] = self._open.get(workspace_id, 0) + 1
        status = RateLimitStatus(
            allowed=True,
            remaining={
                window_type: max(0, ceiling - windows[window_type].request_count)
                for window_type, ceiling in limits.ceilings().items()
            },
        )
        starts = {window_type: window.window_start for window_type, window in windows.items()}
        return RateLimitReservation(self, workspace_id, status, starts)

    async def acquire(
        self,
        workspace_id: str,
        limits: RateLimitConfig = DEFAULT_RATE_LIMITS,
    ) -> RateLimitStatus:
        """Check and count one request in a single atomic step.

        Raises:
            InfrastructureError: If the store cannot be read or written
        """
        reservation = await self.reserve(workspace_id, limits)
        reservation.commit()
        return reservation.status

    def _close(self, workspace_id: str) -> None:
        count = self._open.get(workspace_id, 0) - 1
        if count > 0:
            self._open[workspace_id] = count
        else:
            self._open.pop(workspace_id, None)
