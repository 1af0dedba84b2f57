"""Redis stream carrying tracked page views from the API to the worker.

Each message has a single ``data`` field holding the JSON page view.
Every helper reports Redis trouble as an empty or ``None`` result so the
caller can fall back instead of failing the request.
"""

import asyncio
import json
import logging
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from portfolio_analytics.core.config import settings
from portfolio_analytics.core.redis import get_redis

logger = logging.getLogger(__name__)

STREAM_KEY = "analytics:ingest"
GROUP_NAME = "analytics_workers"
STREAM_MAXLEN = 100_000  # approximate trim, keeps a stalled worker from growing the stream

StreamMessage = tuple[str, dict[str, str]]


async def _client(redis: Redis | None) -> Redis:
    return redis if redis is not None else await get_redis()


def decode_page_view(fields: dict[str, str]) -> dict[str, Any]:
    """Payload of one stream message. Raises KeyError or ValueError if malformed."""
    data = json.loads(fields["data"])
    if not isinstance(data, dict):
        raise ValueError("stream payload is not an object")
    return data


async def push_page_view(page_view: dict[str, Any], *, redis: Redis | None = None) -> str | None:
    """Append a page view; returns the message id, or None when Redis is down.

    The push is bounded by ``INGEST_PUSH_TIMEOUT_SECONDS`` so a hung server
    costs the request at most that long.
    """
    try:
        r = await _client(redis)
        msg_id: str = await asyncio.wait_for(
            r.xadd(
                STREAM_KEY,
                {"data": json.dumps(page_view, default=str)},  # type: ignore[dict-item]
                maxlen=STREAM_MAXLEN,
                approximate=True,
            ),
            timeout=settings.INGEST_PUSH_TIMEOUT_SECONDS,
        )
        return msg_id
    except asyncio.TimeoutError:
        logger.warning("Queueing page view on %s timed out", STREAM_KEY)
        return None
    except (RedisError, OSError) as exc:
        logger.warning("Could not queue page view on %s: %s", STREAM_KEY, exc)
        return None


async def ensure_consumer_group(*, redis: Redis | None = None) -> None:
    try:
        r = await _client(redis)
        await r.xgroup_create(STREAM_KEY, GROUP_NAME, id="0", mkstream=True)
        logger.info("Created consumer group %s on %s", GROUP_NAME, STREAM_KEY)
    except RedisError as exc:
        # BUSYGROUP: already created by another worker
        if "BUSYGROUP" not in str(exc):
            logger.warning("Could not create consumer group %s: %s", GROUP_NAME, exc)
    except OSError as exc:
        logger.warning("Could not create consumer group %s: %s", GROUP_NAME, exc)


async def read_stream_batch(
    consumer_name: str,
    count: int = 100,
    block_ms: int = 2000,
    *,
    redis: Redis | None = None,
) -> list[StreamMessage]:
    """Up to ``count`` new messages for ``consumer_name``, oldest first."""
    try:
        r = await _client(redis)
        response = await r.xreadgroup(
            GROUP_NAME, consumer_name, {STREAM_KEY: ">"}, count=count, block=block_ms
        )
    except (RedisError, OSError) as exc:
        logger.warning("Reading %s failed: %s", STREAM_KEY, exc)
        return []
    if not response:
        return []
    _stream, messages = response[0]
    return list(messages)


async def ack_messages(message_ids: list[str], *, redis: Redis | None = None) -> int:
    if not message_ids:
        return 0
    try:
        r = await _client(redis)
        return int(await r.xack(STREAM_KEY, GROUP_NAME, *message_ids))
    except (RedisError, OSError) as exc:
        logger.warning("Acking %d messages failed: %s", len(message_ids), exc)
        return 0
