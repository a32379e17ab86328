from datetime import datetime, timezone

from sqlalchemy import Column, DateTime
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookCacheEntry(SQLModel, table=True):
    """One enrichment record per normalized (title, author) key."""

    __tablename__ = "book_cache"  # pyright: ignore[reportAssignmentType, reportIncompatibleVariableOverride]

    key: str = Field(primary_key=True, max_length=512)
    title: str
    author: str
    isbn: str | None = Field(default=None, max_length=30, index=True)
    cover_url: str | None = None
    rating: str | None = Field(default=None, max_length=10)
    summary: str | None = None
    rating_source: str = Field(default="unset", max_length=20)
    summary_source: str = Field(default="unset", max_length=20)
    source: str = Field(default="unset", max_length=20)
    rating_expires_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    summary_expires_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class RateWindowEntry(SQLModel, table=True):
    """Persisted rate limiter counters for one named resource."""

    __tablename__ = "rate_window"  # pyright: ignore[reportAssignmentType, reportIncompatibleVariableOverride]

    resource: str = Field(primary_key=True, max_length=100)
    window_start: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    window_count: int = 0
    window_seconds: int
    daily_count: int = 0
    daily_limit: int
    daily_reset_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    alert_sent: bool = False
