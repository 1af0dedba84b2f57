"""Background worker: drains the page-view stream into the database and
runs the periodic retention sweep.

Run as a separate process:
    python -m portfolio_analytics.worker
"""

import asyncio
import logging
import os
import signal
import socket

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from portfolio_analytics.core.config import settings, setup_logging
from portfolio_analytics.core.redis import close_redis
from portfolio_analytics.core.stream import (
    StreamMessage,
    ack_messages,
    decode_page_view,
    ensure_consumer_group,
    read_stream_batch,
)
from portfolio_analytics.schemas.retention import RetentionResult
from portfolio_analytics.schemas.tracking import PageViewEvent
from portfolio_analytics.services.ingest_service import PageViewIngestor
from portfolio_analytics.services.retention_service import RetentionService
from portfolio_analytics.services.visitor_service import VisitorResolver

logger = logging.getLogger(__name__)

BATCH_SIZE = 200
POLL_INTERVAL_MS = 2000

_shutdown = asyncio.Event()


def _handle_signal(*_):
    logger.info("Shutdown signal received")
    _shutdown.set()


def parse_message(fields: dict[str, str]) -> tuple[PageViewEvent, str | None, str | None]:
    """Stream fields -> (event, user_agent, ip_address)."""
    data = decode_page_view(fields)
    event = PageViewEvent.model_validate(data)
    return event, data.get("user_agent"), data.get("ip_address")


async def persist_batch(
    session_factory: async_sessionmaker[AsyncSession],
    resolver: VisitorResolver,
    messages: list[StreamMessage],
) -> list[str]:
    """Track each stream message as a page view.

    Returns the IDs to ack. Malformed and failed messages are acked too so a
    poison message can't stall the group.
    """
    acked_ids: list[str] = []
    stored = 0

    async with session_factory() as session:
        ingestor = PageViewIngestor(session)
        for msg_id, fields in messages:
            try:
                event, user_agent, ip_address = parse_message(fields)
            except (KeyError, ValueError):
                logger.exception("Failed to parse stream message %s", msg_id)
                acked_ids.append(msg_id)
                continue

            visitor = await resolver.resolve(user_agent, ip_address)
            if await ingestor.track(event, visitor):
                stored += 1
            acked_ids.append(msg_id)

    if stored:
        logger.info("Persisted %d page views", stored)
    return acked_ids


async def run_retention(
    session_factory: async_sessionmaker[AsyncSession],
    retention_days: int | None = None,
) -> RetentionResult | None:
    """One retention sweep; errors are logged and the next interval retries."""
    try:
        async with session_factory() as session:
            days = retention_days or settings.RETENTION_DAYS
            return await RetentionService(session).cleanup(days)
    except Exception:
        logger.exception("Scheduled retention sweep failed")
        return None


async def run_worker() -> None:
    """Main worker loop."""
    setup_logging()
    logger.info("Starting page-view stream worker")

    engine = create_async_engine(settings.DATABASE_URL)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    resolver = VisitorResolver()

    consumer_name = f"worker-{socket.gethostname()}-{os.getpid()}"

    await ensure_consumer_group()

    loop = asyncio.get_running_loop()
    last_sweep: float | None = None

    while not _shutdown.is_set():
        messages = await read_stream_batch(
            consumer_name=consumer_name,
            count=BATCH_SIZE,
            block_ms=POLL_INTERVAL_MS,
        )

        if messages:
            acked = await persist_batch(session_factory, resolver, messages)
            await ack_messages(acked)

        now_ts = loop.time()
        if last_sweep is None or now_ts - last_sweep >= settings.RETENTION_INTERVAL_SECONDS:
            await run_retention(session_factory)
            last_sweep = now_ts

    await close_redis()
    await engine.dispose()
    logger.info("Worker shut down cleanly")


if __name__ == "__main__":
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handle_signal)
    asyncio.run(run_worker())
