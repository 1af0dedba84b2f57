import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from portfolio_analytics.models.analytics import Event, PageView, VisitorSession
from portfolio_analytics.schemas.retention import RetentionResult

logger = logging.getLogger(__name__)


class RetentionService:
    """Deletes analytics rows older than a retention cutoff."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def cleanup(
        self,
        retention_days: int,
        aggressive: bool = False,
        compact: bool = False,
        now: datetime | None = None,
    ) -> RetentionResult:
        """Delete events, page views and sessions older than ``retention_days``.

        All three deletes share one transaction: either the whole sweep is
        committed or nothing is. ``aggressive`` and ``compact`` are recorded
        on the result but do not move the cutoff. Running it twice with the
        same ``retention_days`` deletes nothing the second time.
        """
        if retention_days < 1:
            raise ValueError("retention_days must be >= 1")

        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=retention_days)

        try:
            events = await self.db.execute(delete(Event).where(Event.timestamp < cutoff))
            page_views = await self.db.execute(delete(PageView).where(PageView.timestamp < cutoff))
            sessions = await self.db.execute(
                delete(VisitorSession).where(VisitorSession.start_time < cutoff)
            )
            await self.db.commit()
        except Exception:
            logger.exception("Retention sweep failed (cutoff=%s); rolled back", cutoff.isoformat())
            await self.db.rollback()
            raise

        result = RetentionResult(
            deleted_events=events.rowcount,
            deleted_page_views=page_views.rowcount,
            deleted_sessions=sessions.rowcount,
            total=events.rowcount + page_views.rowcount + sessions.rowcount,
            cutoff=cutoff,
            aggressive=aggressive,
            compact=compact,
        )
        logger.info(
            "Retention sweep removed %d rows older than %s", result.total, cutoff.isoformat()
        )
        return result
