from datetime import date, datetime

from pydantic import BaseModel, Field, field_validator

from portfolio_analytics.schemas.common import DateRange
from portfolio_analytics.schemas.performance import PerformanceMetrics


class AnalyticsFilters(BaseModel):
    """Optional substring filters, matched case-insensitively."""

    country: str | None = None
    device: str | None = None
    browser: str | None = None
    page: str | None = None

    @field_validator("country", "device", "browser", "page")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None

    def active(self) -> dict[str, str]:
        """Return only the filters that were actually supplied."""
        return {k: v for k, v in self.model_dump().items() if v is not None}


class QueryOptions(BaseModel):
    aggregate_only: bool = False
    max_records: int = Field(10000, ge=1)


class StrategyThresholds(BaseModel):
    """Cut-over points between the exact and the aggregated query path."""

    aggregate_after_days: int = 90
    min_exact_records: int = 1000


class PageCount(BaseModel):
    url: str
    views: int


class RecentVisitor(BaseModel):
    page_url: str
    country: str | None
    city: str | None
    timestamp: datetime


class DeviceCount(BaseModel):
    device: str
    count: int


class BrowserCount(BaseModel):
    browser: str
    count: int


class DailyViews(BaseModel):
    date: date
    views: int


class WeeklyViews(BaseModel):
    """Views for one ISO week; ``week_start`` is the Monday."""

    week_start: date
    week: str  # e.g. "2024-W07"
    views: int


class AnalyticsResult(BaseModel):
    """Dashboard payload for one date range.

    Exact results carry ``recent_visitors`` and ``daily_views``; aggregated
    results carry ``weekly_views`` instead and set ``aggregated``.
    """

    total_views: int = 0
    unique_visitors: int = 0
    top_pages: list[PageCount] = []
    recent_visitors: list[RecentVisitor] | None = None
    device_stats: list[DeviceCount] = []
    browser_stats: list[BrowserCount] = []
    daily_views: list[DailyViews] | None = None
    weekly_views: list[WeeklyViews] | None = None
    aggregated: bool = False
    date_range: DateRange | None = None
    filters: dict[str, str] = {}

    @classmethod
    def empty(cls, aggregated: bool, **extra) -> "AnalyticsResult":
        """Zero-valued result in the shape of the selected strategy."""
        if aggregated:
            return cls(aggregated=True, weekly_views=[], **extra)
        return cls(aggregated=False, recent_visitors=[], daily_views=[], **extra)


class CountryCount(BaseModel):
    country: str
    visitors: int


class ReferrerCount(BaseModel):
    referrer: str
    visits: int


class AnalyticsSummary(BaseModel):
    """Headline numbers for the last ``days`` days."""

    days: int
    total_views: int
    unique_visitors: int
    avg_pages_per_session: float
    bounce_rate: float  # percent of single-page sessions
    top_countries: list[CountryCount]
    top_referrers: list[ReferrerCount]


class HourlyPoint(BaseModel):
    hour: datetime
    views: int
    visitors: int


class PopularPage(BaseModel):
    url: str
    views: int
    unique_visitors: int
    avg_time_on_page: float  # seconds


class FlowTransition(BaseModel):
    from_page: str
    to_page: str
    transitions: int


class RealtimeActivity(BaseModel):
    page_url: str
    page_title: str | None
    country: str | None
    city: str | None
    device: str
    browser: str
    timestamp: datetime


class RealtimeResponse(BaseModel):
    active_visitors: int
    views_last_24h: int
    recent_activity: list[RealtimeActivity]


class BreakdownItem(BaseModel):
    name: str
    count: int
    percentage: float


class ExportReport(BaseModel):
    """Everything the export endpoint writes out, as one document."""

    generated_at: datetime
    days: int
    date_range: DateRange
    filters: dict[str, str] = {}
    summary: AnalyticsSummary
    daily_views: list[DailyViews]
    popular_pages: list[PopularPage]
    devices: list[BreakdownItem]
    browsers: list[BreakdownItem]
    visitor_flow: list[FlowTransition]
    performance: PerformanceMetrics

