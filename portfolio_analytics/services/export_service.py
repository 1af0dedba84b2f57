import csv
import io
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from portfolio_analytics.schemas.analytics import (
    AnalyticsFilters,
    BreakdownItem,
    ExportReport,
    QueryOptions,
)
from portfolio_analytics.schemas.common import DateRange
from portfolio_analytics.services.analytics_service import AnalyticsService
from portfolio_analytics.services.performance_service import PerformanceService

FLOW_EXPORT_LIMIT = 20


def _breakdown(pairs: list[tuple[str, int]]) -> list[BreakdownItem]:
    total = sum(count for _, count in pairs)
    return [
        BreakdownItem(
            name=name,
            count=count,
            percentage=round(count / total * 100, 1) if total else 0.0,
        )
        for name, count in pairs
    ]


async def build_report(
    db: AsyncSession, days: int, filters: AnalyticsFilters | None = None
) -> ExportReport:
    filters = filters or AnalyticsFilters()
    end = datetime.now(timezone.utc)
    start = end - timedelta(days=days)

    analytics = AnalyticsService(db)
    data = await analytics.query(start, end, filters, QueryOptions(aggregate_only=True))

    return ExportReport(
        generated_at=end,
        days=days,
        date_range=DateRange(start_date=start, end_date=end),
        filters=filters.active(),
        summary=await analytics.summary(days),
        daily_views=await analytics.daily_views(start, end, filters),
        popular_pages=await analytics.popular_pages(days),
        devices=_breakdown([(d.device, d.count) for d in data.device_stats]),
        browsers=_breakdown([(b.browser, b.count) for b in data.browser_stats]),
        visitor_flow=await analytics.visitor_flow(days),
        performance=await PerformanceService(db).get_metrics(start, end, filters),
    )


def report_to_csv(report: ExportReport) -> str:
    """Render the report as sectioned CSV: a title row, a header row, data rows."""
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    s = report.summary

    writer.writerow(["Analytics Export Report"])
    writer.writerow(["Export Date", report.generated_at.isoformat()])
    writer.writerow(
        [
            "Date Range",
            f"{report.date_range.start_date.date()} to {report.date_range.end_date.date()}",
        ]
    )
    writer.writerow(["Applied Filters", ", ".join(f"{k}:{v}" for k, v in report.filters.items())])
    writer.writerow([])

    writer.writerow(["Summary Metrics"])
    writer.writerow(["Metric", "Value"])
    writer.writerow(["Total Page Views", s.total_views])
    writer.writerow(["Unique Visitors", s.unique_visitors])
    writer.writerow(["Average Pages per Session", f"{s.avg_pages_per_session:.2f}"])
    writer.writerow(["Bounce Rate", f"{s.bounce_rate}%"])
    writer.writerow([])

    writer.writerow(["Daily Page Views"])
    writer.writerow(["Date", "Views"])
    for day in report.daily_views:
        writer.writerow([day.date.isoformat(), day.views])
    writer.writerow([])

    writer.writerow(["Popular Pages"])
    writer.writerow(["Page URL", "Views", "Unique Visitors", "Avg Time on Page (seconds)"])
    for page in report.popular_pages:
        writer.writerow([page.url, page.views, page.unique_visitors, page.avg_time_on_page])
    writer.writerow([])

    writer.writerow(["Top Countries"])
    writer.writerow(["Country", "Visitors"])
    for c in s.top_countries:
        writer.writerow([c.country, c.visitors])
    writer.writerow([])

    writer.writerow(["Top Referrers"])
    writer.writerow(["Referrer", "Count"])
    for r in s.top_referrers:
        writer.writerow([r.referrer, r.visits])
    writer.writerow([])

    for title, label, items in (
        ("Device Breakdown", "Device", report.devices),
        ("Browser Breakdown", "Browser", report.browsers),
    ):
        writer.writerow([title])
        writer.writerow([label, "Count", "Percentage"])
        for item in items:
            writer.writerow([item.name, item.count, f"{item.percentage}%"])
        writer.writerow([])

    writer.writerow(["Visitor Flow (Top Transitions)"])
    writer.writerow(["From Page", "To Page", "Transitions"])
    for flow in report.visitor_flow[:FLOW_EXPORT_LIMIT]:
        writer.writerow([flow.from_page, flow.to_page, flow.transitions])
    writer.writerow([])

    perf = report.performance
    writer.writerow(["Performance Metrics"])
    writer.writerow(["Metric", "Value"])
    writer.writerow(["Total Records", perf.total_records])
    writer.writerow(["Query Response Time (ms)", perf.avg_response_time_ms])
    if perf.peak_hour:
        writer.writerow(["Peak Hour", f"{perf.peak_hour.hour}:00"])
        writer.writerow(["Peak Hour Traffic", perf.peak_hour.count])
    writer.writerow(["Estimated Data Size (KB)", perf.estimated_data_size_kb])

    return buf.getvalue()


def export_filename(report: ExportReport, extension: str) -> str:
    return (
        f"analytics-{report.date_range.start_date.date()}"
        f"-to-{report.date_range.end_date.date()}.{extension}"
    )
