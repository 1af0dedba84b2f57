import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from portfolio_analytics.core.exceptions import ServiceUnavailableError
from portfolio_analytics.db.session import get_db
from portfolio_analytics.schemas.common import MessageResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=MessageResponse)
async def health_check():
    """Liveness probe."""
    return {"message": "healthy"}


@router.get("/ready", response_model=MessageResponse)
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Readiness probe: the database must answer."""
    try:
        await db.execute(text("SELECT 1"))
        return {"message": "ready"}
    except (SQLAlchemyError, OSError):
        logger.error("Readiness check failed: database connection error")
        raise ServiceUnavailableError(detail="Service not ready") from None
