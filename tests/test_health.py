from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError

LEAKY_ERROR = "could not connect to db.internal.corp:5432 - password authentication failed"


@pytest.mark.asyncio
async def test_liveness(client: AsyncClient):
    response = await client.get("/api/v1/health/")
    assert response.status_code == 200
    assert response.json() == {"message": "healthy"}


@pytest.mark.asyncio
async def test_readiness_pings_database(client: AsyncClient):
    response = await client.get("/api/v1/health/ready")
    assert response.status_code == 200
    assert response.json() == {"message": "ready"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [OSError(LEAKY_ERROR), OperationalError("SELECT 1", {}, Exception(LEAKY_ERROR))],
)
async def test_readiness_failure_is_generic(client: AsyncClient, db_session, error):
    """A dead database yields 503 without echoing connection details."""
    with patch.object(db_session, "execute", AsyncMock(side_effect=error)):
        response = await client.get("/api/v1/health/ready")

    assert response.status_code == 503
    body = response.text.lower()
    assert "not ready" in body
    for secret in ("db.internal", "5432", "password"):
        assert secret not in body


@pytest.mark.asyncio
async def test_health_needs_no_admin_key(client: AsyncClient):
    response = await client.get("/api/v1/health/ready", headers={"X-Admin-Key": "wrong"})
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_root(client: AsyncClient):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json() == {"message": "Portfolio Analytics is running"}


@pytest.mark.asyncio
async def test_security_headers(client: AsyncClient):
    response = await client.post("/api/v1/analytics/track", json={"page_url": "/"})
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    csp = response.headers["Content-Security-Policy"]
    assert csp == "default-src 'none'; frame-ancestors 'none'"
    assert "Strict-Transport-Security" in response.headers
