from datetime import datetime

from pydantic import BaseModel


class MessageResponse(BaseModel):
    """Simple message response."""

    message: str


class DateRange(BaseModel):
    """Inclusive period a report covers."""

    start_date: datetime
    end_date: datetime
