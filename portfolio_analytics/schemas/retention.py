from datetime import datetime

from pydantic import BaseModel, Field


class CleanupRequest(BaseModel):
    """Body of the retention sweep endpoint."""

    retention_days: int = Field(365, ge=30, le=1095)
    aggressive: bool = False
    compact: bool = False


class RetentionResult(BaseModel):
    deleted_events: int
    deleted_page_views: int
    deleted_sessions: int
    total: int
    cutoff: datetime
    aggressive: bool = False
    compact: bool = False
