"""slowapi limiter for dashboard (read) routes.

Ingestion uses the sliding-window limiter in ``core.rate_limit`` instead.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from portfolio_analytics.core.config import settings

limiter = Limiter(key_func=get_remote_address, storage_uri=settings.REDIS_URL)
