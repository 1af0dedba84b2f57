import logging
from datetime import datetime, timezone

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from portfolio_analytics.api.deps import get_ingest_rate_limiter, get_resolver
from portfolio_analytics.core.config import settings
from portfolio_analytics.core.exceptions import NotFoundError, RateLimitedError
from portfolio_analytics.core.rate_limit import RateLimiter
from portfolio_analytics.core.stream import push_page_view
from portfolio_analytics.db.session import get_db, get_session_factory
from portfolio_analytics.schemas.tracking import (
    PageViewEvent,
    SessionRequest,
    SessionResponse,
    TrackRequest,
    TrackResponse,
)
from portfolio_analytics.services.ingest_service import PageViewIngestor, ingest_page_view
from portfolio_analytics.services.visitor_service import (
    VisitorResolver,
    derive_page_title,
    extract_client_ip,
    generate_session_id,
)

logger = logging.getLogger(__name__)

router = APIRouter()


async def _enforce_rate_limit(rate_limiter: RateLimiter, ip_address: str) -> None:
    if not await rate_limiter.allow(ip_address):
        logger.warning("Ingest rate limit exceeded for %s", ip_address)
        raise RateLimitedError(retry_after=settings.INGEST_RATE_WINDOW_SECONDS)


@router.post("/track", response_model=TrackResponse)
async def track_page_view(
    request: Request,
    data: TrackRequest,
    background_tasks: BackgroundTasks,
    rate_limiter: RateLimiter = Depends(get_ingest_rate_limiter),
    resolver: VisitorResolver = Depends(get_resolver),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Record a page view without blocking on storage.

    The view is pushed to the Redis ingest stream for the worker. If the
    stream is unavailable it is written by a background task after the
    response is sent.
    """
    ip_address = extract_client_ip(request.headers)
    await _enforce_rate_limit(rate_limiter, ip_address)

    user_agent = request.headers.get("user-agent", "")
    session_id = data.session_id or generate_session_id(ip_address, user_agent)
    event = PageViewEvent(
        page_url=data.page_url,
        session_id=session_id,
        page_title=data.page_title or derive_page_title(data.page_url),
        referrer=data.referrer,
        occurred_at=datetime.now(timezone.utc),
    )

    if settings.INGEST_STREAM_ENABLED:
        msg_id = await push_page_view(
            {**event.model_dump(mode="json"), "user_agent": user_agent, "ip_address": ip_address}
        )
        if msg_id is not None:
            return TrackResponse(session_id=session_id)
        logger.info("Redis stream unavailable, falling back to background write")

    background_tasks.add_task(
        ingest_page_view, session_factory, resolver, event, user_agent, ip_address
    )
    return TrackResponse(session_id=session_id)


@router.post("/session", response_model=SessionResponse)
async def track_session(
    request: Request,
    data: SessionRequest,
    rate_limiter: RateLimiter = Depends(get_ingest_rate_limiter),
    resolver: VisitorResolver = Depends(get_resolver),
    db: AsyncSession = Depends(get_db),
):
    """Start, keep alive or end a visitor session without counting a page view."""
    ip_address = extract_client_ip(request.headers)
    await _enforce_rate_limit(rate_limiter, ip_address)

    user_agent = request.headers.get("user-agent", "")
    session_id = data.session_id or generate_session_id(ip_address, user_agent)
    visitor = await resolver.resolve(user_agent, ip_address)

    touched = await PageViewIngestor(db).touch_session(session_id, visitor, data.action)
    if not touched:
        raise NotFoundError("Session not found")
    return SessionResponse(session_id=session_id, action=data.action)
