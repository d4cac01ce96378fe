# orchestration/rate_limiter.py
"""Per-role token buckets with a process-wide bound on queued waiters."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass

import structlog
from config import settings
from core.errors import ThrottledError

from models import UserRole

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BucketConfig:
    capacity: int
    refill_per_second: float


def buckets_from_settings() -> dict[UserRole, BucketConfig]:
    return {
        UserRole.STUDENT: BucketConfig(
            settings.RATE_LIMIT_STUDENT_CAPACITY,
            settings.RATE_LIMIT_STUDENT_REFILL_PER_SECOND,
        ),
        UserRole.FACULTY: BucketConfig(
            settings.RATE_LIMIT_FACULTY_CAPACITY,
            settings.RATE_LIMIT_FACULTY_REFILL_PER_SECOND,
        ),
    }


class _TokenBucket:
    def __init__(self, config: BucketConfig, clock: Callable[[], float]) -> None:
        if config.capacity < 1 or config.refill_per_second <= 0:
            raise ValueError(f"Invalid bucket configuration: {config}")
        self.capacity = config.capacity
        self.refill_rate = config.refill_per_second
        self.tokens = float(config.capacity)
        self.waiters = 0
        # Queued callers take turns in arrival order.
        self.turn = asyncio.Lock()
        self._clock = clock
        self._updated = clock()

    def refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self._updated = now

    def try_take(self) -> bool:
        self.refill()
        if self.tokens >= 1:
            self.tokens -= 1
            return True
        return False

    def wait_time(self, position: int = 1) -> float:
        """Seconds until ``position`` tokens will be available."""
        self.refill()
        deficit = position - self.tokens
        return max(0.0, deficit / self.refill_rate)

    def refund(self) -> None:
        self.refill()
        self.tokens = min(self.capacity, self.tokens + 1)


class RateLimiter:
    """Grant, delay or refuse requests according to the caller's role.

    ``acquire`` returns at once when the role's bucket has a token and nobody
    is queued for it, otherwise suspends the caller until its turn comes and
    a token has refilled (first come, first served), and raises
    :class:`ThrottledError` when the process-wide waiter bound is reached.
    """

    def __init__(
        self,
        buckets: Mapping[UserRole, BucketConfig] | None = None,
        max_waiters: int = settings.RATE_LIMIT_MAX_WAITERS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        configs = buckets or buckets_from_settings()
        missing = [role for role in UserRole if role not in configs]
        if missing:
            raise ValueError(f"No rate limit configured for roles: {missing}")
        self._buckets = {role: _TokenBucket(cfg, clock) for role, cfg in configs.items()}
        self.max_waiters = max_waiters
        self._waiting = 0
        self._sleep = sleep

    @property
    def waiting(self) -> int:
        return self._waiting

    def available(self, role: UserRole) -> float:
        bucket = self._buckets[role]
        bucket.refill()
        return bucket.tokens

    async def acquire(self, role: UserRole) -> None:
        bucket = self._buckets[role]
        # New arrivals never overtake callers already queued on this bucket.
        if not bucket.waiters and bucket.try_take():
            return
        if self._waiting >= self.max_waiters:
            retry_after = bucket.wait_time(bucket.waiters + 1)
            logger.warning(
                "Rate limiter queue full.",
                role=role.value,
                waiting=self._waiting,
                retry_after=round(retry_after, 3),
            )
            raise ThrottledError(retry_after)

        self._waiting += 1
        bucket.waiters += 1
        try:
            async with bucket.turn:
                while not bucket.try_take():
                    await self._sleep(bucket.wait_time())
        finally:
            self._waiting -= 1
            bucket.waiters -= 1

    def release(self, role: UserRole) -> None:
        """Return an unused token, e.g. when a request is cancelled."""
        self._buckets[role].refund()
