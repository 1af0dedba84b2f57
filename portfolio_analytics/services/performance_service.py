import logging
import time
from datetime import datetime

from sqlalchemy import extract, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from portfolio_analytics.core.config import settings
from portfolio_analytics.models.analytics import Event
from portfolio_analytics.schemas.analytics import AnalyticsFilters
from portfolio_analytics.schemas.performance import (
    PeakHour,
    PerformanceMetrics,
    Recommendation,
)
from portfolio_analytics.services.analytics_service import event_conditions

logger = logging.getLogger(__name__)

BYTES_PER_RECORD = 512
SLOW_QUERY_MS = 1000
LARGE_DATASET_RECORDS = 100_000
PEAK_HOUR_ALERT = 1000


class PerformanceService:
    """Reports table size and the latency of its own event queries."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_metrics(
        self,
        start: datetime,
        end: datetime,
        filters: AnalyticsFilters | None = None,
    ) -> PerformanceMetrics:
        filters = filters or AnalyticsFilters()
        conds = [
            Event.timestamp >= start,
            Event.timestamp <= end,
            *event_conditions(filters),
        ]
        timings: list[float] = []

        try:
            t0 = time.perf_counter()
            total = (
                await self.db.execute(select(func.count(Event.id)).where(*conds))
            ).scalar_one()
            timings.append(time.perf_counter() - t0)

            hour = extract("hour", Event.timestamp).label("hour")
            cnt = func.count(Event.id).label("cnt")
            t0 = time.perf_counter()
            peak_row = (
                await self.db.execute(
                    select(hour, cnt)
                    .where(*conds)
                    .group_by(hour)
                    .order_by(cnt.desc(), hour.asc())
                    .limit(1)
                )
            ).first()
            timings.append(time.perf_counter() - t0)
        except (SQLAlchemyError, OSError):
            logger.exception("Performance metrics query failed")
            await self.db.rollback()
            return PerformanceMetrics()

        size = total * BYTES_PER_RECORD
        return PerformanceMetrics(
            total_records=total,
            avg_response_time_ms=round(sum(timings) / len(timings) * 1000, 3),
            peak_hour=PeakHour(hour=int(peak_row[0]), count=peak_row[1]) if peak_row else None,
            estimated_size_bytes=size,
            estimated_data_size_kb=round(size / 1024, 2),
        )

    @staticmethod
    def recommend(metrics: PerformanceMetrics, days: int) -> list[Recommendation]:
        """Advisory notes derived from ``metrics``; always ends with a maintenance note."""
        recs: list[Recommendation] = []

        if metrics.avg_response_time_ms > SLOW_QUERY_MS:
            recs.append(
                Recommendation(
                    type="performance",
                    priority="high",
                    issue="Slow query response time",
                    recommendation="Check the timestamp, session_id and page_url indexes",
                    impact="High - dashboard requests wait on these queries",
                )
            )

        if (
            days > settings.ANALYTICS_AGGREGATE_AFTER_DAYS
            or metrics.total_records > settings.ANALYTICS_MAX_RECORDS
        ):
            recs.append(
                Recommendation(
                    type="performance",
                    priority="medium",
                    issue="Large query range",
                    recommendation="Query with aggregate_only=true to get weekly buckets",
                    impact="Medium - smaller payloads and fewer rows scanned",
                )
            )

        if metrics.total_records > LARGE_DATASET_RECORDS:
            recs.append(
                Recommendation(
                    type="scalability",
                    priority="medium",
                    issue="Large dataset size",
                    recommendation=(
                        f"Run the retention sweep (currently {settings.RETENTION_DAYS} days) "
                        "or shorten the retention window"
                    ),
                    impact="Medium - table growth slows every range query",
                )
            )

        if metrics.peak_hour and metrics.peak_hour.count > PEAK_HOUR_ALERT:
            recs.append(
                Recommendation(
                    type="capacity",
                    priority="medium",
                    issue="High peak hour traffic",
                    recommendation=(
                        "Keep the ingest stream worker scaled for hour "
                        f"{metrics.peak_hour.hour}:00 UTC"
                    ),
                    impact="Medium - ingestion backlog during peak times",
                )
            )

        recs.append(
            Recommendation(
                type="maintenance",
                priority="low",
                issue="Continuous improvement",
                recommendation="Monitor query timings and revisit indexes as usage changes",
                impact="Low - preventive maintenance",
            )
        )
        return recs
