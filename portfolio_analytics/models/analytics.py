from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from portfolio_analytics.db.base import Base
from portfolio_analytics.models.base import TimestampMixin


class VisitorSession(Base, TimestampMixin):
    """One row per visitor session; bumped on every tracked page view."""

    __tablename__ = "sessions"

    id: Mapped[int] = mapped_column(primary_key=True)
    session_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    country: Mapped[str | None] = mapped_column(String(128), nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    device: Mapped[str] = mapped_column(String(32), nullable=False, default="desktop")
    browser: Mapped[str] = mapped_column(String(128), nullable=False, default="Unknown")
    start_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True, server_default=func.now()
    )
    end_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    page_views: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Event(Base):
    """Raw page-view fact: append-only, never updated."""

    __tablename__ = "events"

    id: Mapped[int] = mapped_column(primary_key=True)
    page_url: Mapped[str] = mapped_column(Text, nullable=False)
    page_title: Mapped[str | None] = mapped_column(Text, nullable=True)
    referrer: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    country: Mapped[str | None] = mapped_column(String(128), nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    device: Mapped[str] = mapped_column(String(32), nullable=False, default="desktop")
    browser: Mapped[str] = mapped_column(String(128), nullable=False, default="Unknown")
    # Lookup key only; sessions may be pruned independently.
    session_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True, server_default=func.now()
    )

    __table_args__ = (Index("ix_events_page_url", "page_url"),)


class PageView(Base):
    """Slim projection of Event that keeps counts and group-bys cheap."""

    __tablename__ = "page_views"

    id: Mapped[int] = mapped_column(primary_key=True)
    page_url: Mapped[str] = mapped_column(Text, nullable=False)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True, server_default=func.now()
    )

    __table_args__ = (Index("ix_page_views_page_url", "page_url"),)
