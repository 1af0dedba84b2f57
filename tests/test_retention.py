from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from portfolio_analytics.models.analytics import Event, PageView, VisitorSession
from portfolio_analytics.services.retention_service import RetentionService


@pytest.fixture
async def aged_data(record_view):
    now = datetime.now(timezone.utc)
    await record_view("/", session_id="old", when=now - timedelta(days=400))
    await record_view("/about", session_id="old", when=now - timedelta(days=399))
    await record_view("/", session_id="new", when=now - timedelta(days=5))


async def _counts(session_factory) -> tuple[int, int, int]:
    async with session_factory() as session:
        counts = []
        for model in (Event, PageView, VisitorSession):
            result = await session.execute(select(func.count()).select_from(model))
            counts.append(result.scalar_one())
        return tuple(counts)


@pytest.mark.asyncio
async def test_cleanup_deletes_rows_past_cutoff(db_session, session_factory, aged_data):
    result = await RetentionService(db_session).cleanup(365)

    assert result.deleted_events == 2
    assert result.deleted_page_views == 2
    assert result.deleted_sessions == 1
    assert result.total == 5
    assert result.aggressive is False
    assert await _counts(session_factory) == (1, 1, 1)


@pytest.mark.asyncio
async def test_cleanup_is_idempotent(db_session, aged_data):
    service = RetentionService(db_session)
    now = datetime.now(timezone.utc)

    first = await service.cleanup(365, now=now)
    second = await service.cleanup(365, now=now)

    assert first.total == 5
    assert second.total == 0
    assert second.cutoff == first.cutoff


@pytest.mark.asyncio
async def test_cleanup_cutoff_and_hints(db_session):
    now = datetime(2026, 6, 1, tzinfo=timezone.utc)
    result = await RetentionService(db_session).cleanup(30, aggressive=True, compact=True, now=now)

    assert result.cutoff == now - timedelta(days=30)
    assert result.aggressive is True
    assert result.compact is True
    assert result.total == 0


@pytest.mark.asyncio
async def test_cleanup_rejects_non_positive_days(db_session):
    with pytest.raises(ValueError):
        await RetentionService(db_session).cleanup(0)


@pytest.mark.asyncio
async def test_cleanup_rolls_back_on_failure(db_session, session_factory, aged_data):
    service = RetentionService(db_session)
    real_execute = db_session.execute
    calls = 0

    async def fail_on_sessions(stmt, *args, **kwargs):
        nonlocal calls
        calls += 1
        if calls == 3:
            raise OperationalError("DELETE FROM sessions", {}, Exception("disk I/O error"))
        return await real_execute(stmt, *args, **kwargs)

    with patch.object(db_session, "execute", side_effect=fail_on_sessions):
        with pytest.raises(OperationalError):
            await service.cleanup(365)

    assert await _counts(session_factory) == (3, 3, 2)


class TestCleanupApi:
    @pytest.mark.asyncio
    async def test_cleanup(self, client: AsyncClient, admin_headers, aged_data):
        response = await client.post(
            "/api/v1/analytics/cleanup",
            json={"retention_days": 365, "aggressive": True},
            headers=admin_headers,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 5
        assert data["deleted_sessions"] == 1
        assert data["aggressive"] is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("days", [10, 29, 1096])
    async def test_cleanup_bounds(self, client: AsyncClient, admin_headers, days):
        response = await client.post(
            "/api/v1/analytics/cleanup", json={"retention_days": days}, headers=admin_headers
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_cleanup_requires_admin(self, client: AsyncClient):
        response = await client.post("/api/v1/analytics/cleanup", json={"retention_days": 365})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_cleanup_failure_is_503(self, client: AsyncClient, admin_headers):
        error = OperationalError("DELETE FROM events", {}, Exception("database is locked"))
        with patch.object(RetentionService, "cleanup", AsyncMock(side_effect=error)):
            response = await client.post(
                "/api/v1/analytics/cleanup", json={"retention_days": 90}, headers=admin_headers
            )
        assert response.status_code == 503
        assert response.json()["detail"] == "Retention sweep failed, retry later"
