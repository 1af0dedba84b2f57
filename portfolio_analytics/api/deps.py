import secrets

from fastapi import Header, Request

from portfolio_analytics.core.config import settings
from portfolio_analytics.core.exceptions import UnauthorizedError
from portfolio_analytics.core.rate_limit import RateLimiter
from portfolio_analytics.services.visitor_service import VisitorResolver


async def require_admin(
    x_admin_key: str | None = Header(None, alias="X-Admin-Key"),
) -> None:
    """Dependency guarding dashboard routes with the shared admin key."""
    if not x_admin_key or not secrets.compare_digest(x_admin_key, settings.ADMIN_API_KEY):
        raise UnauthorizedError("Invalid admin key")


def get_ingest_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.ingest_limiter


def get_resolver(request: Request) -> VisitorResolver:
    return request.app.state.resolver
