import logging
import math
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import desc, distinct, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from portfolio_analytics.core.config import settings
from portfolio_analytics.models.analytics import Event, PageView, VisitorSession
from portfolio_analytics.schemas.analytics import (
    AnalyticsFilters,
    AnalyticsResult,
    AnalyticsSummary,
    BrowserCount,
    CountryCount,
    DailyViews,
    DeviceCount,
    FlowTransition,
    HourlyPoint,
    PageCount,
    PopularPage,
    QueryOptions,
    RealtimeActivity,
    RealtimeResponse,
    RecentVisitor,
    ReferrerCount,
    StrategyThresholds,
    WeeklyViews,
)
from portfolio_analytics.schemas.common import DateRange

logger = logging.getLogger(__name__)

STORAGE_ERRORS = (SQLAlchemyError, OSError)

TOP_PAGES_LIMIT = 10
RECENT_VISITORS_LIMIT = 50
SUMMARY_TOP_LIMIT = 10
POPULAR_PAGES_LIMIT = 20
FLOW_LIMIT = 50
REALTIME_ACTIVITY_LIMIT = 20
ACTIVE_WINDOW = timedelta(minutes=30)


def thresholds_from_settings() -> StrategyThresholds:
    return StrategyThresholds(
        aggregate_after_days=settings.ANALYTICS_AGGREGATE_AFTER_DAYS,
        min_exact_records=settings.ANALYTICS_MIN_EXACT_RECORDS,
    )


def days_between(start: datetime, end: datetime) -> int:
    """Whole days covered by ``[start, end]``, rounded up."""
    return math.ceil((end - start).total_seconds() / 86400)


def _as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _as_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def page_conditions(filters: AnalyticsFilters) -> list:
    if filters.page:
        return [PageView.page_url.ilike(f"%{filters.page}%")]
    return []


def session_conditions(filters: AnalyticsFilters) -> list:
    conds = []
    if filters.country:
        conds.append(VisitorSession.country.ilike(f"%{filters.country}%"))
    if filters.device:
        conds.append(VisitorSession.device.ilike(f"%{filters.device}%"))
    if filters.browser:
        conds.append(VisitorSession.browser.ilike(f"%{filters.browser}%"))
    return conds


def event_conditions(filters: AnalyticsFilters) -> list:
    """Case-insensitive substring match on every supplied filter."""
    conds = []
    if filters.country:
        conds.append(Event.country.ilike(f"%{filters.country}%"))
    if filters.device:
        conds.append(Event.device.ilike(f"%{filters.device}%"))
    if filters.browser:
        conds.append(Event.browser.ilike(f"%{filters.browser}%"))
    if filters.page:
        conds.append(Event.page_url.ilike(f"%{filters.page}%"))
    return conds


def fold_weeks(days: list[DailyViews]) -> list[WeeklyViews]:
    """Fold day buckets into ISO weeks (Monday start), ascending."""
    weeks: dict[date, int] = {}
    for day in days:
        monday = day.date - timedelta(days=day.date.weekday())
        weeks[monday] = weeks.get(monday, 0) + day.views

    result = []
    for monday in sorted(weeks):
        iso = monday.isocalendar()
        result.append(
            WeeklyViews(week_start=monday, week=f"{iso[0]}-W{iso[1]:02d}", views=weeks[monday])
        )
    return result


class AnalyticsService:
    """Read side of the pipeline: dashboard queries over stored page views."""

    def __init__(self, db: AsyncSession, thresholds: StrategyThresholds | None = None):
        self.db = db
        self.thresholds = thresholds or thresholds_from_settings()

    def _is_sqlite(self) -> bool:
        return self.db.get_bind().dialect.name == "sqlite"

    def use_aggregated(self, start: datetime, end: datetime, options: QueryOptions) -> bool:
        return (
            days_between(start, end) > self.thresholds.aggregate_after_days
            or options.aggregate_only
            or options.max_records < self.thresholds.min_exact_records
        )

    # --- main query ---

    async def query(
        self,
        start: datetime,
        end: datetime,
        filters: AnalyticsFilters | None = None,
        options: QueryOptions | None = None,
    ) -> AnalyticsResult:
        """Dashboard data for ``[start, end]``.

        Long ranges, ``aggregate_only`` or a small ``max_records``
        select the aggregated path (weekly buckets, no recent visitors).
        Storage errors yield a zero-valued result of the selected shape.
        """
        filters = filters or AnalyticsFilters()
        options = options or QueryOptions(max_records=settings.ANALYTICS_MAX_RECORDS)
        aggregated = self.use_aggregated(start, end, options)
        extra = {
            "date_range": DateRange(start_date=start, end_date=end),
            "filters": filters.active(),
        }

        try:
            if aggregated:
                return await self._aggregated(start, end, filters, extra)
            return await self._exact(start, end, filters, options, extra)
        except STORAGE_ERRORS:
            logger.exception("Analytics query failed for %s - %s", start, end)
            await self.db.rollback()
            return AnalyticsResult.empty(aggregated, **extra)

    async def _common(self, start: datetime, end: datetime, filters: AnalyticsFilters) -> dict:
        page_conds = page_conditions(filters)
        session_conds = session_conditions(filters)
        pv_range = (PageView.timestamp >= start, PageView.timestamp <= end)
        s_range = (VisitorSession.start_time >= start, VisitorSession.start_time <= end)

        total = await self.db.execute(
            select(func.count(PageView.id)).where(*pv_range, *page_conds)
        )
        visitors = await self.db.execute(
            select(func.count(VisitorSession.id)).where(*s_range, *session_conds)
        )

        views = func.count(PageView.id).label("views")
        top = await self.db.execute(
            select(PageView.page_url, views)
            .where(*pv_range, *page_conds)
            .group_by(PageView.page_url)
            .order_by(views.desc(), PageView.page_url.asc())
            .limit(TOP_PAGES_LIMIT)
        )

        device_cnt = func.count(VisitorSession.id).label("cnt")
        devices = await self.db.execute(
            select(VisitorSession.device, device_cnt)
            .where(*s_range, *session_conds)
            .group_by(VisitorSession.device)
            .order_by(device_cnt.desc(), VisitorSession.device.asc())
        )

        browser_cnt = func.count(VisitorSession.id).label("cnt")
        browsers = await self.db.execute(
            select(VisitorSession.browser, browser_cnt)
            .where(*s_range, *session_conds)
            .group_by(VisitorSession.browser)
            .order_by(browser_cnt.desc(), VisitorSession.browser.asc())
        )

        return {
            "total_views": total.scalar_one(),
            "unique_visitors": visitors.scalar_one(),
            "top_pages": [PageCount(url=row[0], views=row[1]) for row in top.all()],
            "device_stats": [
                DeviceCount(device=row[0] or "Unknown", count=row[1]) for row in devices.all()
            ],
            "browser_stats": [
                BrowserCount(browser=row[0] or "Unknown", count=row[1]) for row in browsers.all()
            ],
        }

    async def daily_views(
        self, start: datetime, end: datetime, filters: AnalyticsFilters | None = None
    ) -> list[DailyViews]:
        """Page views per calendar day, ascending. Empty on storage errors."""
        try:
            return await self._daily_views(start, end, filters or AnalyticsFilters())
        except STORAGE_ERRORS:
            logger.exception("Daily views query failed")
            await self.db.rollback()
            return []

    async def _daily_views(
        self, start: datetime, end: datetime, filters: AnalyticsFilters
    ) -> list[DailyViews]:
        day = func.date(PageView.timestamp).label("day")
        result = await self.db.execute(
            select(day, func.count(PageView.id))
            .where(
                PageView.timestamp >= start,
                PageView.timestamp <= end,
                *page_conditions(filters),
            )
            .group_by(day)
            .order_by(day)
        )
        return [DailyViews(date=_as_date(row[0]), views=row[1]) for row in result.all()]

    async def _exact(
        self,
        start: datetime,
        end: datetime,
        filters: AnalyticsFilters,
        options: QueryOptions,
        extra: dict,
    ) -> AnalyticsResult:
        common = await self._common(start, end, filters)

        recent = await self.db.execute(
            select(Event.page_url, Event.country, Event.city, Event.timestamp)
            .where(Event.timestamp >= start, Event.timestamp <= end, *event_conditions(filters))
            .order_by(Event.timestamp.desc(), Event.id.desc())
            .limit(min(RECENT_VISITORS_LIMIT, options.max_records))
        )
        recent_visitors = [
            RecentVisitor(page_url=row[0], country=row[1], city=row[2], timestamp=row[3])
            for row in recent.all()
        ]

        return AnalyticsResult(
            **common,
            recent_visitors=recent_visitors,
            daily_views=await self._daily_views(start, end, filters),
            aggregated=False,
            **extra,
        )

    async def _aggregated(
        self, start: datetime, end: datetime, filters: AnalyticsFilters, extra: dict
    ) -> AnalyticsResult:
        common = await self._common(start, end, filters)
        days = await self._daily_views(start, end, filters)
        return AnalyticsResult(
            **common,
            weekly_views=fold_weeks(days),
            aggregated=True,
            **extra,
        )

    # --- dashboard extras ---

    async def summary(self, days: int = 30) -> AnalyticsSummary:
        """Headline numbers for the last ``days`` days.

        Bounce rate is the share of sessions with exactly one page view.
        """
        end = datetime.now(timezone.utc)
        start = end - timedelta(days=days)
        s_range = (VisitorSession.start_time >= start, VisitorSession.start_time <= end)

        try:
            total = await self.db.execute(
                select(func.count(PageView.id)).where(
                    PageView.timestamp >= start, PageView.timestamp <= end
                )
            )
            visitors = await self.db.execute(select(func.count(VisitorSession.id)).where(*s_range))
            avg_pages = await self.db.execute(
                select(func.avg(VisitorSession.page_views)).where(*s_range)
            )
            bounced = await self.db.execute(
                select(func.count(VisitorSession.id)).where(
                    *s_range, VisitorSession.page_views == 1
                )
            )

            country_cnt = func.count(VisitorSession.id).label("cnt")
            countries = await self.db.execute(
                select(VisitorSession.country, country_cnt)
                .where(*s_range, VisitorSession.country.isnot(None))
                .group_by(VisitorSession.country)
                .order_by(country_cnt.desc(), VisitorSession.country.asc())
                .limit(SUMMARY_TOP_LIMIT)
            )

            ref_cnt = func.count(Event.id).label("cnt")
            referrers = await self.db.execute(
                select(Event.referrer, ref_cnt)
                .where(Event.timestamp >= start, Event.timestamp <= end, Event.referrer.isnot(None))
                .group_by(Event.referrer)
                .order_by(ref_cnt.desc(), Event.referrer.asc())
                .limit(SUMMARY_TOP_LIMIT)
            )

            unique_visitors = visitors.scalar_one()
            bounce_count = bounced.scalar_one()
            bounce_rate = (bounce_count / unique_visitors * 100) if unique_visitors else 0.0
            return AnalyticsSummary(
                days=days,
                total_views=total.scalar_one(),
                unique_visitors=unique_visitors,
                avg_pages_per_session=round(float(avg_pages.scalar_one() or 0), 2),
                bounce_rate=round(bounce_rate, 2),
                top_countries=[
                    CountryCount(country=row[0], visitors=row[1]) for row in countries.all()
                ],
                top_referrers=[
                    ReferrerCount(referrer=row[0], visits=row[1]) for row in referrers.all()
                ],
            )
        except STORAGE_ERRORS:
            logger.exception("Analytics summary failed")
            await self.db.rollback()
            return AnalyticsSummary(
                days=days,
                total_views=0,
                unique_visitors=0,
                avg_pages_per_session=0.0,
                bounce_rate=0.0,
                top_countries=[],
                top_referrers=[],
            )

    async def hourly(self, hours: int = 24) -> list[HourlyPoint]:
        """Views and distinct sessions per hour for the last ``hours`` hours."""
        start = datetime.now(timezone.utc) - timedelta(hours=hours)
        if self._is_sqlite():
            bucket = func.strftime("%Y-%m-%d %H:00:00", PageView.timestamp)
        else:
            bucket = func.date_trunc("hour", PageView.timestamp)
        bucket = bucket.label("bucket")

        try:
            result = await self.db.execute(
                select(
                    bucket,
                    func.count(PageView.id),
                    func.count(distinct(PageView.session_id)),
                )
                .where(PageView.timestamp >= start)
                .group_by(bucket)
                .order_by(bucket)
            )
            return [
                HourlyPoint(hour=_as_datetime(row[0]), views=row[1], visitors=row[2])
                for row in result.all()
            ]
        except STORAGE_ERRORS:
            logger.exception("Hourly analytics failed")
            await self.db.rollback()
            return []

    async def popular_pages(
        self, days: int = 30, limit: int = POPULAR_PAGES_LIMIT
    ) -> list[PopularPage]:
        """Top pages with distinct sessions and mean session length in seconds."""
        start = datetime.now(timezone.utc) - timedelta(days=days)
        if self._is_sqlite():
            duration = (
                func.julianday(VisitorSession.end_time) - func.julianday(VisitorSession.start_time)
            ) * 86400
        else:
            duration = func.extract("epoch", VisitorSession.end_time - VisitorSession.start_time)
        views = func.count(PageView.id).label("views")

        try:
            result = await self.db.execute(
                select(
                    PageView.page_url,
                    views,
                    func.count(distinct(PageView.session_id)),
                    func.avg(duration),
                )
                .outerjoin(VisitorSession, VisitorSession.session_id == PageView.session_id)
                .where(PageView.timestamp >= start)
                .group_by(PageView.page_url)
                .order_by(views.desc(), PageView.page_url.asc())
                .limit(limit)
            )
            return [
                PopularPage(
                    url=row[0],
                    views=row[1],
                    unique_visitors=row[2],
                    avg_time_on_page=round(float(row[3] or 0)),
                )
                for row in result.all()
            ]
        except STORAGE_ERRORS:
            logger.exception("Popular pages query failed")
            await self.db.rollback()
            return []

    async def visitor_flow(self, days: int = 30, limit: int = FLOW_LIMIT) -> list[FlowTransition]:
        """Most common previous-page -> page transitions within a session."""
        start = datetime.now(timezone.utc) - timedelta(days=days)
        prev_page = (
            func.lag(PageView.page_url)
            .over(partition_by=PageView.session_id, order_by=(PageView.timestamp, PageView.id))
            .label("prev_page")
        )
        sequences = (
            select(PageView.page_url.label("page_url"), prev_page)
            .where(PageView.timestamp >= start)
            .subquery()
        )
        transitions = func.count().label("transitions")

        try:
            result = await self.db.execute(
                select(sequences.c.prev_page, sequences.c.page_url, transitions)
                .where(sequences.c.prev_page.isnot(None))
                .group_by(sequences.c.prev_page, sequences.c.page_url)
                .order_by(desc("transitions"), sequences.c.prev_page, sequences.c.page_url)
                .limit(limit)
            )
            return [
                FlowTransition(from_page=row[0], to_page=row[1], transitions=row[2])
                for row in result.all()
            ]
        except STORAGE_ERRORS:
            logger.exception("Visitor flow query failed")
            await self.db.rollback()
            return []

    async def realtime(self) -> RealtimeResponse:
        now = datetime.now(timezone.utc)
        last_day = now - timedelta(hours=24)

        try:
            active = await self.db.execute(
                select(func.count(VisitorSession.id)).where(
                    VisitorSession.end_time >= now - ACTIVE_WINDOW
                )
            )
            views = await self.db.execute(
                select(func.count(PageView.id)).where(PageView.timestamp >= last_day)
            )
            recent = await self.db.execute(
                select(Event)
                .where(Event.timestamp >= last_day)
                .order_by(Event.timestamp.desc(), Event.id.desc())
                .limit(REALTIME_ACTIVITY_LIMIT)
            )
            return RealtimeResponse(
                active_visitors=active.scalar_one(),
                views_last_24h=views.scalar_one(),
                recent_activity=[
                    RealtimeActivity(
                        page_url=e.page_url,
                        page_title=e.page_title,
                        country=e.country,
                        city=e.city,
                        device=e.device,
                        browser=e.browser,
                        timestamp=e.timestamp,
                    )
                    for e in recent.scalars().all()
                ],
            )
        except STORAGE_ERRORS:
            logger.exception("Realtime analytics failed")
            await self.db.rollback()
            return RealtimeResponse(active_visitors=0, views_last_24h=0, recent_activity=[])
