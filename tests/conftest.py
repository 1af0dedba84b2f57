import os
from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from unittest.mock import patch

import fakeredis
import fakeredis.aioredis
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

TEST_DATABASE_URL = "sqlite+aiosqlite:///./test.db"
ADMIN_KEY = "test-admin-key-must-be-at-least-32-characters-long"

# Must be set before any portfolio_analytics import reads settings
os.environ["ADMIN_API_KEY"] = ADMIN_KEY
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["REDIS_URL"] = "memory://"
os.environ["INGEST_RATE_LIMIT_BACKEND"] = "memory"
os.environ["GEO_LOOKUP_ENABLED"] = "false"

# One in-memory Redis server for the session; clients are created per test
# so each is bound to that test's event loop.
_fake_server = fakeredis.FakeServer()


def _make_fake_redis():
    return fakeredis.aioredis.FakeRedis(server=_fake_server, decode_responses=True)


async def _stream_redis_unavailable():
    raise ConnectionError("Redis stream not available in tests")


# /track falls back to the background write unless a test hands the stream
# helpers a fakeredis client explicitly.
patch("portfolio_analytics.core.stream.get_redis", _stream_redis_unavailable).start()

engine = create_async_engine(TEST_DATABASE_URL, echo=False)
TestingSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(autouse=True)
async def setup_database():
    import portfolio_analytics.models  # noqa: F401
    from portfolio_analytics.core.limiter import limiter
    from portfolio_analytics.db.base import Base

    # Disable dashboard rate limiting in tests; ingest limits are tested explicitly
    limiter.enabled = False

    r = _make_fake_redis()
    await r.flushall()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def fake_redis():
    """Provide a fakeredis instance for direct use in tests."""
    return _make_fake_redis()


@pytest.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture
def session_factory() -> async_sessionmaker[AsyncSession]:
    return TestingSessionLocal


@pytest.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    from portfolio_analytics.core.rate_limit import SlidingWindowRateLimiter
    from portfolio_analytics.db.session import get_db, get_session_factory
    from portfolio_analytics.main import app

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal

    # Fresh ingest limiter per test so counts never leak between tests
    app.state.ingest_limiter = SlidingWindowRateLimiter(limit=100, window_seconds=60)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict:
    return {"X-Admin-Key": ADMIN_KEY}


@pytest.fixture
def visitor():
    from portfolio_analytics.schemas.tracking import VisitorInfo

    return VisitorInfo(
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0.0.0",
        ip_address="203.0.113.7",
        device="desktop",
        browser="Chrome 120.0.0",
        country="Germany",
        city="Berlin",
    )


@pytest.fixture
def record_view(db_session: AsyncSession, visitor):
    """Store one page view through the ingestor; returns True on success."""
    from portfolio_analytics.schemas.tracking import PageViewEvent
    from portfolio_analytics.services.ingest_service import PageViewIngestor

    async def _record(
        page_url: str,
        session_id: str = "s1",
        when: datetime | None = None,
        **visitor_fields,
    ) -> bool:
        event = PageViewEvent(
            page_url=page_url,
            session_id=session_id,
            occurred_at=when or datetime.now(timezone.utc),
        )
        who = visitor.model_copy(update=visitor_fields) if visitor_fields else visitor
        return await PageViewIngestor(db_session).track(event, who)

    return _record
