from fastapi import APIRouter

from portfolio_analytics.api.v1 import analytics, health, tracking

api_router = APIRouter()

api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(tracking.router, prefix="/analytics", tags=["tracking"])
api_router.include_router(analytics.router, prefix="/analytics", tags=["analytics"])
