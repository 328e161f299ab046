import asyncio

import pytest

from coursecompass.core import errors
from coursecompass.core.errors import UploadError
from coursecompass.services import rate_limiter
from coursecompass.services.rate_limiter import InMemoryWindowCounter, UploadRateLimiter


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeRedis:
    def __init__(self):
        self.counts = {}
        self.ttls = {}

    async def incr(self, key):
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    async def expire(self, key, seconds):
        self.ttls[key] = seconds


class BrokenRedis:
    async def incr(self, key):
        raise ConnectionError("redis down")

    async def expire(self, key, seconds):
        raise ConnectionError("redis down")


def test_window_counter_resets_after_window():
    clock = FakeClock()
    counter = InMemoryWindowCounter(clock=clock)
    assert [counter.hit("u1", 60) for _ in range(3)] == [1, 2, 3]
    assert counter.hit("u2", 60) == 1
    clock.now += 61
    assert counter.hit("u1", 60) == 1


def test_window_counter_purges_expired_entries(monkeypatch):
    monkeypatch.setattr(rate_limiter, "PURGE_THRESHOLD", 3)
    clock = FakeClock()
    counter = InMemoryWindowCounter(clock=clock)
    for key in ("a", "b", "c"):
        counter.hit(key, 10)
    assert len(counter) == 3
    clock.now += 11
    counter.hit("d", 10)
    assert len(counter) == 1


def test_limiter_raises_after_limit():
    limiter = UploadRateLimiter(limit=2, window_seconds=60)

    async def run():
        await limiter.check("user-1")
        await limiter.check("user-1")
        await limiter.check("user-2")
        with pytest.raises(UploadError) as exc:
            await limiter.check("user-1")
        return exc.value

    err = asyncio.run(run())
    assert err.code == errors.RATE_LIMIT_EXCEEDED
    assert err.status_code == 429
    assert err.details == {"attempts": 3, "windowSeconds": 60}


def test_limiter_uses_redis_counters_with_ttl():
    redis = FakeRedis()
    limiter = UploadRateLimiter(limit=5, window_seconds=30, redis_client=redis)

    counts = asyncio.run(_hits(limiter, "user-1", 3))

    assert counts == [1, 2, 3]
    assert redis.counts == {"ratelimit:upload:user-1": 3}
    assert redis.ttls == {"ratelimit:upload:user-1": 30}
    assert len(limiter._local) == 0


def test_limiter_falls_back_when_redis_fails():
    limiter = UploadRateLimiter(limit=5, window_seconds=30, redis_client=BrokenRedis())
    assert asyncio.run(_hits(limiter, "user-1", 2)) == [1, 2]
    assert len(limiter._local) == 1


async def _hits(limiter, client_id, n):
    return [await limiter.hit(client_id) for _ in range(n)]
