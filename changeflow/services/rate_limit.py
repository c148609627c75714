"""
Fixed-window rate limiting on a shared counter store.

Keys: ``ratelimit:{actor}:{window}`` where window = epoch seconds // window size.
Counters live in Redis so every API instance sees the same totals; the
in-memory store is for development and tests only.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..errors import RateLimitError

logger = logging.getLogger(__name__)


class CounterStore(ABC):

    @abstractmethod
    async def increment(self, key: str, ttl_seconds: int) -> int:
        """Atomically increment ``key`` and return the new value."""

    async def close(self) -> None:
        pass


class MemoryCounterStore(CounterStore):
    """Single-process counters. Not shared across instances."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._counters: Dict[str, Tuple[int, float]] = {}  # key -> (count, expires_at)
        self._clock = clock

    async def increment(self, key: str, ttl_seconds: int) -> int:
        now = self._clock()
        count, expires_at = self._counters.get(key, (0, now + ttl_seconds))
        if expires_at <= now:
            count, expires_at = 0, now + ttl_seconds
        count += 1
        self._counters[key] = (count, expires_at)
        self._purge(now)
        return count

    def _purge(self, now: float) -> None:
        expired = [k for k, (_, expires_at) in self._counters.items() if expires_at <= now]
        for key in expired:
            del self._counters[key]


class RedisCounterStore(CounterStore):
    """INCR + EXPIRE in one MULTI block."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCounterStore":
        logger.info("Rate limit counters: using Redis at %s", url.split("@")[-1])
        return cls(aioredis.from_url(url, decode_responses=True, socket_timeout=2))

    async def increment(self, key: str, ttl_seconds: int) -> int:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, ttl_seconds)
            count, _ = await pipe.execute()
        return int(count)

    async def close(self) -> None:
        await self.client.aclose()


def counter_store_from_url(url: str) -> CounterStore:
    if url and not url.startswith("memory://"):
        return RedisCounterStore.from_url(url)
    return MemoryCounterStore()


class RateLimiter:
    """
    Allows ``limit`` hits per key per window.

    When the counter store is unreachable the hit is allowed and a warning
    is logged.
    """

    def __init__(
        self,
        counters: CounterStore,
        limit: int,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.time
    ):
        self.counters = counters
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock

    def key_for(self, actor_key: str) -> str:
        window = int(self.clock() // self.window_seconds)
        return f"ratelimit:{actor_key}:{window}"

    async def hit(self, actor_key: str) -> int:
        """Count one hit; raise RateLimitError once the window is exhausted."""
        key = self.key_for(actor_key)
        try:
            count = await self.counters.increment(key, self.window_seconds)
        except RedisError as exc:
            logger.warning("Rate limit counter unavailable (%s), allowing request", exc)
            return 0

        if count > self.limit:
            logger.info("Rate limit exceeded for %s (%d/%d)", actor_key, count, self.limit)
            raise RateLimitError(key, self.limit, self.window_seconds)
        return count
