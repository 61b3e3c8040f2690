"""
Fixed-window attempt limiters.

``InMemoryRateLimiter`` keeps a process-wide counter map swept on a timer;
``RedisRateLimiter`` shares counters between broker instances.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.logging import get_logger


KEY_PREFIX = "rate_limit"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: int  # epoch milliseconds


@dataclass
class _Window:
    count: int
    reset_time: int


def _now_ms() -> int:
    return int(time.time() * 1000)


class InMemoryRateLimiter:
    """Fixed-window counters per identifier.

    Each check is one lookup, one increment and one compare; concurrent
    requests may race and miscount by a little.
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        self._clock = clock or _now_ms
        self._windows: Dict[str, _Window] = {}
        self._sweeper: Optional[asyncio.Task] = None
        self.logger = get_logger("broker.rate_limiter")

    def hit(self, identifier: str, max_attempts: int, window_ms: int) -> RateLimitResult:
        key = f"{KEY_PREFIX}:{identifier}"
        now = self._clock()

        window = self._windows.get(key)
        if window is None or now > window.reset_time:
            window = _Window(count=0, reset_time=now + window_ms)
            self._windows[key] = window

        window.count += 1
        return RateLimitResult(
            allowed=window.count <= max_attempts,
            remaining=max(0, max_attempts - window.count),
            reset_time=window.reset_time,
        )

    async def check_rate_limit(self, identifier: str, max_attempts: int, window_ms: int) -> RateLimitResult:
        return self.hit(identifier, max_attempts, window_ms)

    def sweep(self) -> int:
        """Drop expired windows. Returns the number removed."""
        now = self._clock()
        expired = [key for key, window in self._windows.items() if now > window.reset_time]
        for key in expired:
            self._windows.pop(key, None)
        return len(expired)

    def __len__(self) -> int:
        return len(self._windows)

    def start_sweeper(self, interval_seconds: float) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever(interval_seconds))

    async def _sweep_forever(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            removed = self.sweep()
            if removed:
                self.logger.debug("Swept expired rate limit windows", removed=removed)

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None


class RedisRateLimiter:
    """Fixed-window counters in Redis (``INCR`` + ``PEXPIRE``).

    If Redis cannot be reached the request is allowed and the error logged.
    """

    def __init__(self, redis_url: str, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self._redis = client
        self.logger = get_logger("broker.rate_limiter")

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    async def check_rate_limit(self, identifier: str, max_attempts: int, window_ms: int) -> RateLimitResult:
        key = f"{KEY_PREFIX}:{identifier}"
        now = _now_ms()

        try:
            client = await self._get_redis()
            async with client.pipeline(transaction=True) as pipeline:
                pipeline.incr(key)
                pipeline.pttl(key)
                count, ttl = await pipeline.execute()

            if ttl is None or ttl < 0:
                await client.pexpire(key, window_ms)
                ttl = window_ms
        except RedisError as e:
            self.logger.error("Rate limit check error", error=str(e))
            return RateLimitResult(allowed=True, remaining=max_attempts, reset_time=now + window_ms)

        count = int(count)
        return RateLimitResult(
            allowed=count <= max_attempts,
            remaining=max(0, max_attempts - count),
            reset_time=now + int(ttl),
        )

    def start_sweeper(self, interval_seconds: float) -> None:
        """Redis expires keys on its own."""

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
