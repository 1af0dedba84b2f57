import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from typing import Literal

from sqlalchemy import func, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from portfolio_analytics.models.analytics import Event, PageView, VisitorSession
from portfolio_analytics.schemas.tracking import BatchResult, PageViewEvent, VisitorInfo
from portfolio_analytics.services.visitor_service import VisitorResolver

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


class PageViewIngestor:
    """Records page views: session upsert, raw event and slim page view."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _is_sqlite(self) -> bool:
        return self.db.get_bind().dialect.name == "sqlite"

    def _insert(self):
        if self._is_sqlite():
            return sqlite_insert(VisitorSession)
        return pg_insert(VisitorSession)

    def _later(self, a, b):
        return func.max(a, b) if self._is_sqlite() else func.greatest(a, b)

    def _earlier(self, a, b):
        return func.min(a, b) if self._is_sqlite() else func.least(a, b)

    async def _upsert_session(
        self,
        session_id: str,
        visitor: VisitorInfo,
        now: datetime,
        increment: int,
    ) -> None:
        """Create the session row or widen its ``[start_time, end_time]`` span.

        Events may arrive out of order, so the stored span only ever grows.
        """
        stmt = self._insert().values(
            session_id=session_id,
            user_agent=visitor.user_agent,
            ip_address=visitor.ip_address,
            country=visitor.country,
            city=visitor.city,
            device=visitor.device,
            browser=visitor.browser,
            start_time=now,
            end_time=now,
            page_views=increment,
        )
        set_ = {
            "start_time": self._earlier(VisitorSession.start_time, stmt.excluded.start_time),
            "end_time": self._later(VisitorSession.end_time, stmt.excluded.end_time),
            "updated_at": now,
        }
        if increment:
            set_["page_views"] = VisitorSession.page_views + increment
        stmt = stmt.on_conflict_do_update(index_elements=["session_id"], set_=set_)
        await self.db.execute(stmt)

    async def record(self, event: PageViewEvent, visitor: VisitorInfo) -> None:
        """Stage one page view in the current transaction. Caller commits."""
        now = event.occurred_at or datetime.now(timezone.utc)
        await self._upsert_session(event.session_id, visitor, now, increment=1)

        self.db.add(
            Event(
                page_url=event.page_url,
                page_title=event.page_title,
                referrer=event.referrer,
                user_agent=visitor.user_agent,
                ip_address=visitor.ip_address,
                country=visitor.country,
                city=visitor.city,
                device=visitor.device,
                browser=visitor.browser,
                session_id=event.session_id,
                timestamp=now,
            )
        )
        self.db.add(PageView(page_url=event.page_url, session_id=event.session_id, timestamp=now))
        await self.db.flush()

    async def track(self, event: PageViewEvent, visitor: VisitorInfo) -> bool:
        """Record and commit one page view; failures are logged, never raised."""
        try:
            await self.record(event, visitor)
            await self.db.commit()
            return True
        except Exception:
            logger.exception("Failed to track page view for session %s", event.session_id)
            await self.db.rollback()
            return False

    async def track_batch(
        self,
        items: Sequence[tuple[PageViewEvent, VisitorInfo]],
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> BatchResult:
        """Track many page views, committing once per chunk of ``batch_size``.

        A failing chunk is rolled back and counted as failed; later chunks
        still run.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")

        processed = failed = 0
        for start in range(0, len(items), batch_size):
            chunk = items[start : start + batch_size]
            try:
                for event, visitor in chunk:
                    await self.record(event, visitor)
                await self.db.commit()
                processed += len(chunk)
            except Exception:
                logger.exception("Batch of %d page views failed", len(chunk))
                await self.db.rollback()
                failed += len(chunk)

        return BatchResult(
            total=len(items), processed=processed, failed=failed, batch_size=batch_size
        )

    async def touch_session(
        self,
        session_id: str,
        visitor: VisitorInfo,
        action: Literal["start", "heartbeat", "end"] = "heartbeat",
    ) -> bool:
        """Session lifecycle ping without counting a page view.

        ``start`` and ``heartbeat`` create the session if needed; ``end``
        only touches an existing one and returns False when it is unknown.
        """
        now = datetime.now(timezone.utc)
        if action == "end":
            result = await self.db.execute(
                update(VisitorSession)
                .where(VisitorSession.session_id == session_id)
                .values(end_time=self._later(VisitorSession.end_time, now), updated_at=now)
            )
            await self.db.commit()
            return result.rowcount > 0

        await self._upsert_session(session_id, visitor, now, increment=0)
        await self.db.commit()
        return True


async def ingest_page_view(
    session_factory: async_sessionmaker[AsyncSession],
    resolver: VisitorResolver,
    event: PageViewEvent,
    user_agent: str | None,
    ip_address: str | None,
) -> bool:
    """Resolve the visitor and track one page view in a fresh session.

    Used off the request path (background tasks and the stream worker).
    """
    visitor = await resolver.resolve(user_agent, ip_address)
    async with session_factory() as session:
        return await PageViewIngestor(session).track(event, visitor)


async def ingest_many(
    session_factory: async_sessionmaker[AsyncSession],
    items: Iterable[tuple[PageViewEvent, VisitorInfo]],
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> BatchResult:
    async with session_factory() as session:
        return await PageViewIngestor(session).track_batch(list(items), batch_size)
