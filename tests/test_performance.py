from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError

from portfolio_analytics.schemas.analytics import AnalyticsFilters
from portfolio_analytics.schemas.performance import PeakHour, PerformanceMetrics
from portfolio_analytics.services.performance_service import PerformanceService

DAY = datetime(2026, 3, 1, tzinfo=timezone.utc)


@pytest.fixture
async def hourly_traffic(record_view):
    for minute in (5, 20, 40):
        await record_view("/", session_id=f"pm-{minute}", when=DAY.replace(hour=14, minute=minute))
    await record_view("/about", session_id="am", when=DAY.replace(hour=9), device="mobile")


@pytest.mark.asyncio
async def test_metrics(db_session, hourly_traffic):
    metrics = await PerformanceService(db_session).get_metrics(
        DAY - timedelta(days=1), DAY + timedelta(days=1)
    )
    assert metrics.total_records == 4
    assert metrics.peak_hour == PeakHour(hour=14, count=3)
    assert metrics.estimated_size_bytes == 2048
    assert metrics.estimated_data_size_kb == 2.0
    assert metrics.avg_response_time_ms >= 0


@pytest.mark.asyncio
async def test_metrics_with_filters(db_session, hourly_traffic):
    metrics = await PerformanceService(db_session).get_metrics(
        DAY - timedelta(days=1), DAY + timedelta(days=1), AnalyticsFilters(device="mobile")
    )
    assert metrics.total_records == 1
    assert metrics.estimated_size_bytes == 512
    assert metrics.estimated_data_size_kb == 0.5
    assert metrics.peak_hour == PeakHour(hour=9, count=1)


@pytest.mark.asyncio
async def test_metrics_empty_range(db_session):
    metrics = await PerformanceService(db_session).get_metrics(DAY, DAY + timedelta(days=1))
    assert metrics.total_records == 0
    assert metrics.peak_hour is None
    assert metrics.estimated_size_bytes == 0


@pytest.mark.asyncio
async def test_metrics_storage_error(db_session):
    error = OperationalError("SELECT count(*)", {}, Exception("no such table"))
    with patch.object(db_session, "execute", AsyncMock(side_effect=error)):
        metrics = await PerformanceService(db_session).get_metrics(DAY, DAY + timedelta(days=1))
    assert metrics == PerformanceMetrics()


class TestRecommendations:
    def test_quiet_system_gets_maintenance_note_only(self):
        recs = PerformanceService.recommend(PerformanceMetrics(total_records=10), days=30)
        assert [(r.type, r.priority) for r in recs] == [("maintenance", "low")]

    def test_slow_queries(self):
        recs = PerformanceService.recommend(PerformanceMetrics(avg_response_time_ms=1500), days=7)
        assert (recs[0].type, recs[0].priority) == ("performance", "high")

    def test_long_range_suggests_aggregation(self):
        recs = PerformanceService.recommend(PerformanceMetrics(), days=120)
        assert "aggregate_only" in recs[0].recommendation
        assert recs[0].priority == "medium"

    def test_large_dataset_and_peak_traffic(self):
        metrics = PerformanceMetrics(
            total_records=150_000, peak_hour=PeakHour(hour=18, count=5000)
        )
        recs = PerformanceService.recommend(metrics, days=30)
        assert [r.type for r in recs] == ["performance", "scalability", "capacity", "maintenance"]
        assert "18:00" in recs[2].recommendation


@pytest.mark.asyncio
async def test_performance_endpoint(client: AsyncClient, admin_headers, record_view):
    await record_view("/", session_id="p1")
    response = await client.get(
        "/api/v1/analytics/performance", params={"days": 7}, headers=admin_headers
    )
    assert response.status_code == 200
    data = response.json()
    assert data["days"] == 7
    assert data["metrics"]["total_records"] == 1
    assert data["recommendations"][-1]["type"] == "maintenance"

    response = await client.get(
        "/api/v1/analytics/performance", params={"days": 366}, headers=admin_headers
    )
    assert response.status_code == 422
