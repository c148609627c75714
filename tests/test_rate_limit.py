"""
Rate limiter tests against the in-memory counter store.
"""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from changeflow.errors import RateLimitError
from changeflow.services.rate_limit import (
    CounterStore,
    MemoryCounterStore,
    RateLimiter,
    RedisCounterStore,
    counter_store_from_url,
)


class FakeTime:
    def __init__(self, now=1_000_020.0):
        self.now = now

    def __call__(self):
        return self.now


class UnreachableCounters(CounterStore):
    async def increment(self, key, ttl_seconds):
        raise RedisConnectionError("connection refused")


@pytest.fixture()
def fake_time():
    return FakeTime()


@pytest.fixture()
def limiter(fake_time):
    return RateLimiter(MemoryCounterStore(clock=fake_time), limit=3, window_seconds=60, clock=fake_time)


class TestRateLimiter:
    @pytest.mark.anyio
    async def test_allows_up_to_limit(self, limiter):
        counts = [await limiter.hit("org-acme:u-1") for _ in range(3)]
        assert counts == [1, 2, 3]

    @pytest.mark.anyio
    async def test_rejects_over_limit(self, limiter):
        for _ in range(3):
            await limiter.hit("org-acme:u-1")
        with pytest.raises(RateLimitError) as exc:
            await limiter.hit("org-acme:u-1")
        assert exc.value.details == {"limit": 3, "window_seconds": 60}

    @pytest.mark.anyio
    async def test_keys_are_per_actor(self, limiter):
        for _ in range(3):
            await limiter.hit("org-acme:u-1")
        assert await limiter.hit("org-acme:u-2") == 1

    @pytest.mark.anyio
    async def test_new_window_resets(self, limiter, fake_time):
        for _ in range(3):
            await limiter.hit("org-acme:u-1")
        fake_time.now += 60
        assert await limiter.hit("org-acme:u-1") == 1

    def test_key_format(self, limiter):
        assert limiter.key_for("org-acme:u-1") == "ratelimit:org-acme:u-1:16667"

    @pytest.mark.anyio
    async def test_unreachable_counters_allow(self):
        limiter = RateLimiter(UnreachableCounters(), limit=1)
        assert await limiter.hit("org-acme:u-1") == 0
        assert await limiter.hit("org-acme:u-1") == 0


class TestCounterStoreSelection:
    def test_memory_by_default(self):
        assert isinstance(counter_store_from_url(""), MemoryCounterStore)
        assert isinstance(counter_store_from_url("memory://"), MemoryCounterStore)

    def test_redis_url(self):
        assert isinstance(counter_store_from_url("redis://localhost:6379/0"), RedisCounterStore)
