"""
Upload rate limiting, fixed window per client.
With REDIS_URL set the counters live in Redis (INCR + EXPIRE), shared by all workers and expired by
TTL. Without Redis, or when a Redis call fails, a per-process counter map is used; expired windows
are purged so the map does not grow without bound.
"""
import logging
import time
from typing import Any

from fastapi import status

from coursecompass.core import errors
from coursecompass.core.errors import UploadError

logger = logging.getLogger(__name__)

RATE_KEY_PREFIX = "ratelimit:upload:"
# Purge expired in-process windows once the map holds this many clients.
PURGE_THRESHOLD = 1024


def _key(client_id: str) -> str:
    return f"{RATE_KEY_PREFIX}{client_id}"


class InMemoryWindowCounter:
    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._windows: dict[str, tuple[int, float]] = {}  # key -> (count, window_start)

    def hit(self, key: str, window_seconds: int) -> int:
        """Count one attempt, return the count in the current window."""
        now = self._clock()
        if len(self._windows) >= PURGE_THRESHOLD:
            self.purge(window_seconds, now)
        count, start = self._windows.get(key, (0, now))
        if now - start >= window_seconds:
            count, start = 0, now
        count += 1
        self._windows[key] = (count, start)
        return count

    def purge(self, window_seconds: int, now: float | None = None) -> int:
        now = self._clock() if now is None else now
        expired = [k for k, (_, start) in self._windows.items() if now - start >= window_seconds]
        for k in expired:
            del self._windows[k]
        return len(expired)

    def __len__(self) -> int:
        return len(self._windows)


class UploadRateLimiter:
    """
    check() raises RATE_LIMIT_EXCEEDED (429) when a client goes over `limit` attempts per window.
    Redis errors are logged and the in-process counter takes over for that call.
    """

    def __init__(self, limit: int, window_seconds: int, redis_client: Any = None):
        self.limit = limit
        self.window_seconds = window_seconds
        self._redis = redis_client
        self._local = InMemoryWindowCounter()

    async def _hit_redis(self, key: str) -> int | None:
        if not self._redis:
            return None
        try:
            count = await self._redis.incr(key)
            if count == 1:
                await self._redis.expire(key, self.window_seconds)
            return int(count)
        except Exception as e:
            logger.warning("Redis rate limit failed for %s: %s", key, e, exc_info=False)
            return None

    async def hit(self, client_id: str) -> int:
        key = _key(client_id)
        count = await self._hit_redis(key)
        if count is None:
            count = self._local.hit(key, self.window_seconds)
        return count

    async def check(self, client_id: str) -> None:
        count = await self.hit(client_id)
        if count > self.limit:
            raise UploadError(
                errors.RATE_LIMIT_EXCEEDED,
                f"Rate limit exceeded: {count} attempts in {self.window_seconds}s",
                status.HTTP_429_TOO_MANY_REQUESTS,
                details={"attempts": count, "windowSeconds": self.window_seconds},
            )
