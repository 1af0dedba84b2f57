"""Sliding-window rate limiting for the ingestion endpoints."""

import logging
import time
import uuid
from collections import deque
from collections.abc import Callable
from threading import Lock
from typing import Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from portfolio_analytics.core.config import settings

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 100
DEFAULT_WINDOW_SECONDS = 60
REDIS_KEY_PREFIX = "ratelimit:ingest:"
SWEEP_EVERY = 1000  # full sweep of idle keys every N checks


class RateLimiter(Protocol):
    """Anything that can decide whether one more request for ``key`` is allowed."""

    async def allow(self, key: str) -> bool: ...


class SlidingWindowRateLimiter:
    """In-process sliding-window counter keyed by client IP.

    State is per process and is lost on restart. Each key keeps a deque of
    request times; entries older than ``now - window`` are purged on every
    check of that key, and idle keys are swept periodically.
    """

    def __init__(
        self,
        limit: int = DEFAULT_LIMIT,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._history: dict[str, deque[float]] = {}
        self._checks = 0
        self._lock = Lock()

    def _purge_key(self, key: str, cutoff: float) -> None:
        hits = self._history.get(key)
        if hits is None:
            return
        while hits and hits[0] < cutoff:
            hits.popleft()
        if not hits:
            del self._history[key]

    def _purge(self, now: float, key: str) -> None:
        cutoff = now - self.window_seconds
        self._checks += 1
        if self._checks % SWEEP_EVERY == 0:
            for stale in list(self._history):
                self._purge_key(stale, cutoff)
        else:
            self._purge_key(key, cutoff)

    def check(self, key: str) -> bool:
        """Record a request for ``key`` and return False if it exceeds the cap."""
        if self.limit <= 0:
            return False

        with self._lock:
            now = self._clock()
            self._purge(now, key)
            hits = self._history.get(key)
            if hits is not None and len(hits) >= self.limit:
                return False
            self._history.setdefault(key, deque()).append(now)
            return True

    async def allow(self, key: str) -> bool:
        return self.check(key)

    def count(self, key: str) -> int:
        """Number of requests currently counted against ``key``."""
        with self._lock:
            self._purge(self._clock(), key)
            return len(self._history.get(key, ()))

    def reset(self) -> None:
        with self._lock:
            self._history.clear()
            self._checks = 0


class RedisSlidingWindowRateLimiter:
    """Sliding window on a Redis sorted set, shared by all app processes.

    Fails open: if Redis is unreachable the request is allowed, so analytics
    outages never block page tracking.
    """

    def __init__(
        self,
        redis: Redis,
        limit: int = DEFAULT_LIMIT,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock

    async def allow(self, key: str) -> bool:
        if self.limit <= 0:
            return False

        redis_key = f"{REDIS_KEY_PREFIX}{key}"
        now = self._clock()
        try:
            pipe = self.redis.pipeline(transaction=True)
            pipe.zremrangebyscore(redis_key, "-inf", f"({now - self.window_seconds}")
            pipe.zcard(redis_key)
            _, count = await pipe.execute()
            if int(count) >= self.limit:
                return False

            pipe = self.redis.pipeline(transaction=True)
            pipe.zadd(redis_key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
            pipe.expire(redis_key, int(self.window_seconds) + 1)
            await pipe.execute()
            return True
        except (RedisError, OSError) as exc:
            logger.warning("Rate limiter unavailable, allowing request for %s: %s", key, exc)
            return True


def build_ingest_rate_limiter(redis: Redis | None = None) -> RateLimiter:
    """Build the ingestion limiter selected by ``INGEST_RATE_LIMIT_BACKEND``."""
    if settings.INGEST_RATE_LIMIT_BACKEND == "redis":
        if redis is None:
            raise ValueError("Redis client required for the redis rate limit backend")
        return RedisSlidingWindowRateLimiter(
            redis,
            limit=settings.INGEST_RATE_LIMIT,
            window_seconds=settings.INGEST_RATE_WINDOW_SECONDS,
        )
    return SlidingWindowRateLimiter(
        limit=settings.INGEST_RATE_LIMIT,
        window_seconds=settings.INGEST_RATE_WINDOW_SECONDS,
    )
