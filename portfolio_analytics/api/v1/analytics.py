import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from portfolio_analytics.api.deps import require_admin
from portfolio_analytics.core.config import settings
from portfolio_analytics.core.exceptions import BadRequestError, ServiceUnavailableError
from portfolio_analytics.core.limiter import limiter
from portfolio_analytics.db.session import get_db
from portfolio_analytics.schemas.analytics import (
    AnalyticsFilters,
    AnalyticsResult,
    AnalyticsSummary,
    FlowTransition,
    HourlyPoint,
    PopularPage,
    QueryOptions,
    RealtimeResponse,
)
from portfolio_analytics.schemas.performance import PerformanceReport
from portfolio_analytics.schemas.retention import CleanupRequest, RetentionResult
from portfolio_analytics.services.analytics_service import AnalyticsService
from portfolio_analytics.services.export_service import (
    build_report,
    export_filename,
    report_to_csv,
)
from portfolio_analytics.services.performance_service import PerformanceService
from portfolio_analytics.services.retention_service import RetentionService

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])

MAX_RANGE_DAYS = 730
RATE = f"{settings.RATE_LIMIT_PER_MINUTE}/minute"


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _resolve_range(
    start_date: datetime | None, end_date: datetime | None, days: int
) -> tuple[datetime, datetime]:
    """Explicit ``[start_date, end_date]`` or the last ``days`` days."""
    if start_date is not None or end_date is not None:
        if start_date is None or end_date is None:
            raise BadRequestError("start_date and end_date must be given together")
        start, end = _utc(start_date), _utc(end_date)
        if start > end:
            raise BadRequestError("Start date must be before end date")
        if end - start > timedelta(days=MAX_RANGE_DAYS):
            raise BadRequestError("Date range cannot exceed 2 years")
        return start, end

    if not 1 <= days <= MAX_RANGE_DAYS:
        raise BadRequestError(f"Days parameter must be between 1 and {MAX_RANGE_DAYS}")
    end = datetime.now(timezone.utc)
    return end - timedelta(days=days), end


def _filters(
    country: str | None = Query(None),
    device: str | None = Query(None),
    browser: str | None = Query(None),
    page: str | None = Query(None),
) -> AnalyticsFilters:
    return AnalyticsFilters(country=country, device=device, browser=browser, page=page)


@router.get("/data", response_model=AnalyticsResult, response_model_exclude_none=True)
@limiter.limit(RATE)
async def get_analytics_data(
    request: Request,
    start_date: datetime | None = Query(None),
    end_date: datetime | None = Query(None),
    days: int = Query(30),
    aggregate_only: bool = Query(False),
    max_records: int = Query(settings.ANALYTICS_MAX_RECORDS, ge=1),
    filters: AnalyticsFilters = Depends(_filters),
    db: AsyncSession = Depends(get_db),
):
    """Dashboard data for a date range, exact or aggregated by range size."""
    start, end = _resolve_range(start_date, end_date, days)
    options = QueryOptions(aggregate_only=aggregate_only, max_records=max_records)
    return await AnalyticsService(db).query(start, end, filters, options)


@router.get("/summary", response_model=AnalyticsSummary)
@limiter.limit(RATE)
async def get_summary(
    request: Request,
    days: int = Query(30, ge=1, le=MAX_RANGE_DAYS),
    db: AsyncSession = Depends(get_db),
):
    return await AnalyticsService(db).summary(days)


@router.get("/hourly", response_model=list[HourlyPoint])
@limiter.limit(RATE)
async def get_hourly(
    request: Request,
    hours: int = Query(24, ge=1, le=168),
    db: AsyncSession = Depends(get_db),
):
    return await AnalyticsService(db).hourly(hours)


@router.get("/pages", response_model=list[PopularPage])
@limiter.limit(RATE)
async def get_popular_pages(
    request: Request,
    days: int = Query(30, ge=1, le=MAX_RANGE_DAYS),
    db: AsyncSession = Depends(get_db),
):
    return await AnalyticsService(db).popular_pages(days)


@router.get("/flow", response_model=list[FlowTransition])
@limiter.limit(RATE)
async def get_visitor_flow(
    request: Request,
    days: int = Query(30, ge=1, le=MAX_RANGE_DAYS),
    db: AsyncSession = Depends(get_db),
):
    return await AnalyticsService(db).visitor_flow(days)


@router.get("/realtime", response_model=RealtimeResponse)
@limiter.limit(RATE)
async def get_realtime(request: Request, db: AsyncSession = Depends(get_db)):
    return await AnalyticsService(db).realtime()


@router.get("/performance", response_model=PerformanceReport)
@limiter.limit(RATE)
async def get_performance(
    request: Request,
    days: int = Query(30, ge=1, le=365),
    filters: AnalyticsFilters = Depends(_filters),
    db: AsyncSession = Depends(get_db),
):
    """Event table size, query timings and advisory recommendations."""
    end = datetime.now(timezone.utc)
    metrics = await PerformanceService(db).get_metrics(end - timedelta(days=days), end, filters)
    return PerformanceReport(
        days=days,
        metrics=metrics,
        recommendations=PerformanceService.recommend(metrics, days),
    )


@router.post("/cleanup", response_model=RetentionResult)
@limiter.limit(RATE)
async def cleanup_analytics(
    request: Request,
    data: CleanupRequest,
    db: AsyncSession = Depends(get_db),
):
    """Delete analytics data older than ``retention_days``. Safe to retry."""
    try:
        return await RetentionService(db).cleanup(
            data.retention_days, aggressive=data.aggressive, compact=data.compact
        )
    except (SQLAlchemyError, OSError):
        raise ServiceUnavailableError("Retention sweep failed, retry later") from None


@router.get("/export")
@limiter.limit(RATE)
async def export_analytics(
    request: Request,
    days: int = Query(30),
    format: str = Query("csv", pattern="^(csv|json)$"),
    filters: AnalyticsFilters = Depends(_filters),
    db: AsyncSession = Depends(get_db),
):
    """Download the full report as CSV or JSON."""
    if not 1 <= days <= MAX_RANGE_DAYS:
        raise BadRequestError(f"Days parameter must be between 1 and {MAX_RANGE_DAYS}")

    report = await build_report(db, days, filters)
    disposition = {
        "Content-Disposition": f'attachment; filename="{export_filename(report, format)}"'
    }
    if format == "json":
        return JSONResponse(report.model_dump(mode="json"), headers=disposition)
    return Response(report_to_csv(report), media_type="text/csv", headers=disposition)
