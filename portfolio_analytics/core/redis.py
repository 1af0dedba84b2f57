"""Redis connections for the page-view stream and the shared ingest limiter."""

import logging

import redis.asyncio as redis
from redis.asyncio import ConnectionPool

from portfolio_analytics.core.config import settings

logger = logging.getLogger(__name__)

POOL_OPTIONS = {
    "decode_responses": True,
    "socket_timeout": 5.0,
    "socket_connect_timeout": 5.0,
    "retry_on_timeout": True,
    "max_connections": 10,
}

# Process-wide client used by the stream helpers and the worker
_client: redis.Redis | None = None
_pool: ConnectionPool | None = None


def create_redis_client(url: str | None = None) -> redis.Redis:
    """Client with its own pool; the caller closes it.

    The app lifespan uses this for the Redis-backed ingest limiter.
    """
    pool = ConnectionPool.from_url(url or settings.REDIS_URL, **POOL_OPTIONS)
    return redis.Redis(connection_pool=pool)


async def get_redis() -> redis.Redis:
    """Lazily created process-wide client."""
    global _client, _pool
    if _client is None:
        _pool = ConnectionPool.from_url(settings.REDIS_URL, **POOL_OPTIONS)
        _client = redis.Redis(connection_pool=_pool)
        logger.debug("Opened process-wide Redis pool")
    return _client


async def close_redis() -> None:
    global _client, _pool
    if _client is not None:
        await _client.close()
        _client = None
    if _pool is not None:
        await _pool.disconnect()
        _pool = None
