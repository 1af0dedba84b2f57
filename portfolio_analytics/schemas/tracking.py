from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class TrackRequest(BaseModel):
    """Payload for a single tracked page view."""

    page_url: str = Field(..., min_length=1, max_length=2048)
    page_title: str | None = Field(None, max_length=512)
    referrer: str | None = Field(None, max_length=2048)
    session_id: str | None = Field(None, min_length=1, max_length=64)

    @field_validator("page_url")
    @classmethod
    def page_url_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("page_url must not be blank")
        return v


class TrackResponse(BaseModel):
    success: bool = True
    session_id: str


class SessionRequest(BaseModel):
    """Session lifecycle ping sent by the tracker script."""

    session_id: str | None = Field(None, min_length=1, max_length=64)
    action: Literal["start", "heartbeat", "end"] = "heartbeat"


class SessionResponse(BaseModel):
    success: bool = True
    session_id: str
    action: str


class VisitorInfo(BaseModel):
    """Coarse visitor attributes derived from request metadata."""

    user_agent: str
    ip_address: str
    device: str = "desktop"
    browser: str = "Unknown"
    country: str | None = None
    city: str | None = None


class PageViewEvent(BaseModel):
    """A page view ready to be recorded by the ingestor."""

    page_url: str
    session_id: str
    page_title: str | None = None
    referrer: str | None = None
    occurred_at: datetime | None = None


class BatchResult(BaseModel):
    total: int
    processed: int
    failed: int
    batch_size: int
