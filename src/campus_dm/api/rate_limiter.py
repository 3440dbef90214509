"""Rate limiting behind a small capability interface.

``SlidingWindowRateLimiter`` keeps timestamps in process memory and is only
correct for a single server process. ``RedisRateLimiter`` keeps fixed-window
counters in a shared Redis so every instance sees the same budget.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, Dict, Optional

import redis.asyncio as redis
from fastapi import Request
from structlog import get_logger

logger = get_logger()


class RateLimiter(ABC):
    """Counts requests per key inside a time window."""

    def __init__(self, rate_limit: int = 60, time_window: int = 60):
        self.rate_limit = rate_limit
        self.time_window = time_window  # in seconds

    async def start(self) -> None:
        """Start background work, if any."""

    async def stop(self) -> None:
        """Stop background work, if any."""

    @abstractmethod
    async def check_and_increment(self, key: str, window: float, max_requests: int) -> bool:
        """Record a request for ``key`` and return whether it is allowed."""
        pass

    async def allow(self, key: str) -> bool:
        """Check ``key`` against the configured defaults."""
        return await self.check_and_increment(key, self.time_window, self.rate_limit)


class SlidingWindowRateLimiter(RateLimiter):
    """In-process sliding window limiter."""

    def __init__(self, rate_limit: int = 60, time_window: int = 60):
        super().__init__(rate_limit, time_window)
        self.requests: Dict[str, Deque[float]] = {}
        self._lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None
        logger.info(
            "rate_limiter_initialized",
            backend="memory",
            rate_limit=rate_limit,
            time_window=time_window,
        )

    async def start(self):
        """Start the periodic cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._periodic_cleanup())

    async def stop(self):
        """Stop the periodic cleanup task."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    async def _periodic_cleanup(self):
        """Drop keys whose timestamps have all left the window."""
        while True:
            try:
                await asyncio.sleep(self.time_window)
                async with self._lock:
                    cutoff_time = time.monotonic() - self.time_window
                    for key in list(self.requests.keys()):
                        timestamps = self.requests[key]
                        while timestamps and timestamps[0] <= cutoff_time:
                            timestamps.popleft()
                        if not timestamps:
                            del self.requests[key]
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("rate_limiter_cleanup_error", error=str(e))

    async def check_and_increment(self, key: str, window: float, max_requests: int) -> bool:
        now = time.monotonic()
        async with self._lock:
            timestamps = self.requests.setdefault(key, deque())
            while timestamps and now - timestamps[0] >= window:
                timestamps.popleft()

            if len(timestamps) >= max_requests:
                logger.warning(
                    "rate_limit_exceeded",
                    key=key,
                    current_requests=len(timestamps),
                    rate_limit=max_requests,
                )
                return False

            timestamps.append(now)
            return True

    async def get_remaining_requests(self, key: str) -> int:
        """Get remaining requests for the key under the default limits."""
        now = time.monotonic()
        async with self._lock:
            timestamps = self.requests.get(key)
            if not timestamps:
                return self.rate_limit
            recent = [ts for ts in timestamps if now - ts < self.time_window]
            return max(0, self.rate_limit - len(recent))


class RedisRateLimiter(RateLimiter):
    """Fixed window limiter on a shared ``redis.asyncio`` client."""

    def __init__(self, client, rate_limit: int = 60, time_window: int = 60, prefix: str = "ratelimit"):
        super().__init__(rate_limit, time_window)
        self.client = client
        self.prefix = prefix
        logger.info(
            "rate_limiter_initialized",
            backend="redis",
            rate_limit=rate_limit,
            time_window=time_window,
        )

    @classmethod
    def from_url(cls, url: str, rate_limit: int = 60, time_window: int = 60) -> "RedisRateLimiter":
        client = redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=5.0,
            socket_connect_timeout=5.0,
        )
        return cls(client, rate_limit=rate_limit, time_window=time_window)

    async def stop(self):
        await self.client.aclose()

    async def check_and_increment(self, key: str, window: float, max_requests: int) -> bool:
        window = max(1, int(window))
        bucket = int(time.time() // window)
        redis_key = f"{self.prefix}:{key}:{bucket}"

        async with self.client.pipeline(transaction=True) as pipe:
            pipe.incr(redis_key)
            pipe.expire(redis_key, window)
            count, _ = await pipe.execute()

        if int(count) > max_requests:
            logger.warning(
                "rate_limit_exceeded",
                key=key,
                current_requests=int(count),
                rate_limit=max_requests,
            )
            return False
        return True


def rate_limit_key(request: Request) -> str:
    """Key requests by client address and path."""
    client_ip = request.client.host if request.client else "unknown"
    return f"{client_ip}:{request.url.path}"
