"""
Pytest configuration and fixtures for the shelfscan test suite.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Generator

import pytest
from sqlmodel import Session, SQLModel, create_engine

from shelfscan.internal import models  # noqa: F401
from shelfscan.internal.enrichment.cache import EnrichmentCache
from shelfscan.internal.enrichment.coalescer import Coalescer
from shelfscan.internal.enrichment.orchestrator import EnrichmentOrchestrator
from shelfscan.internal.enrichment.persistence import InMemoryRecordStore
from shelfscan.internal.enrichment.types import BookInput
from shelfscan.internal.rate_limiter import RateLimiter, RateLimitPolicy

RESOURCE = "external-model"

LONG_SUMMARY = (
    "Bilbo Baggins is swept out of his comfortable hobbit-hole by Gandalf and a company "
    "of dwarves on a quest to reclaim their mountain home from the dragon Smaug, and "
    "finds unexpected courage along the way."
)
assert len(LONG_SUMMARY) > 100


class FakeClock:
    """Deterministic clock; only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


class FakeModel:
    """
    Instrumented ExternalModelPort.

    ``rating_result`` / ``summary_result`` may be a string to return or an
    exception instance to raise. ``delay`` makes each call sleep first.
    """

    def __init__(
        self,
        rating_result: str | Exception = "4.3",
        summary_result: str | Exception = LONG_SUMMARY,
        delay: float = 0.0,
    ):
        self.rating_result = rating_result
        self.summary_result = summary_result
        self.delay = delay
        self.rating_calls: list[str] = []
        self.summary_calls: list[str] = []
        self.rating_overrides: dict[str, str | Exception] = {}

    @property
    def total_calls(self) -> int:
        return len(self.rating_calls) + len(self.summary_calls)

    async def _respond(self, result: str | Exception) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        else:
            await asyncio.sleep(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def get_rating(self, title: str, author: str, isbn: str | None = None) -> str:
        self.rating_calls.append(title)
        return await self._respond(self.rating_overrides.get(title, self.rating_result))

    async def get_summary(self, title: str, author: str) -> str:
        self.summary_calls.append(title)
        return await self._respond(self.summary_result)


# Database fixtures
@pytest.fixture(scope="function")
def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Provide a database session for tests."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


# Enrichment fixtures
@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def record_store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def cache(record_store, clock) -> EnrichmentCache:
    return EnrichmentCache(
        record_store,
        clock=clock,
        ttl=timedelta(days=90),
        fallback_ttl=timedelta(hours=1),
    )


@pytest.fixture
def rate_limiter(clock) -> RateLimiter:
    limiter = RateLimiter(clock=clock)
    limiter.configure(
        RESOURCE, RateLimitPolicy(window_capacity=60, window_seconds=60, daily_limit=15000)
    )
    return limiter


@pytest.fixture
def coalescer(cache) -> Coalescer:
    return Coalescer(cache, timeout_seconds=1.0)


@pytest.fixture
def model() -> FakeModel:
    return FakeModel()


@pytest.fixture
def orchestrator(cache, coalescer, rate_limiter, model) -> EnrichmentOrchestrator:
    return EnrichmentOrchestrator(cache, coalescer, rate_limiter, model, resource=RESOURCE)


@pytest.fixture
def sample_books() -> list[BookInput]:
    """Books as they come out of shelf detection."""
    return [
        BookInput(
            title="The Hobbit",
            author="J.R.R. Tolkien",
            cover_url="https://example.com/hobbit.jpg",
        ),
        BookInput(
            title="Dune",
            author="Frank Herbert",
            isbn="9780441013593",
            cover_url="https://example.com/dune.jpg",
        ),
    ]
