"""
Admission control for rate-limited external resources.

Each named resource gets a sliding window (``window_capacity`` calls per
``window_seconds``) and a daily quota that resets on a rolling day boundary
anchored at first use. Counters live in a pluggable ``RateCounterStore`` so
they can survive a process restart; any failure of that store makes the
limiter deny calls rather than allow unbounded spend.
"""
import threading
from datetime import datetime, timedelta
from typing import Protocol

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from shelfscan.internal.env_settings import RateLimitSettings
from shelfscan.internal.models import RateWindowEntry
from shelfscan.util.clock import ClockPort, SystemClock, ensure_utc
from shelfscan.util.exceptions import (
    PersistenceUnavailable,
    QuotaExceeded,
    handle_database_error,
)
from shelfscan.util.log import logger

DAY = timedelta(days=1)


class RateLimitPolicy(BaseModel):
    window_capacity: int
    window_seconds: int
    daily_limit: int


class RateWindow(BaseModel):
    resource: str
    window_start: datetime
    window_count: int = 0
    window_seconds: int
    daily_count: int = 0
    daily_limit: int
    daily_reset_at: datetime
    alert_sent: bool = False


class RateLimiterStats(BaseModel):
    window_usage: int
    window_seconds: int
    daily_usage: int
    daily_limit: int
    within_limits: bool


class RateCounterStore(Protocol):
    def load(self, resource: str) -> RateWindow | None: ...

    def save(self, window: RateWindow) -> None: ...


class InMemoryRateCounterStore:
    """Process-local counters. Lost on restart."""

    _windows: dict[str, RateWindow]
    _lock: threading.Lock

    def __init__(self):
        self._windows = {}
        self._lock = threading.Lock()

    def load(self, resource: str) -> RateWindow | None:
        with self._lock:
            window = self._windows.get(resource)
            return window.model_copy() if window else None

    def save(self, window: RateWindow) -> None:
        with self._lock:
            self._windows[window.resource] = window.model_copy()


class SQLRateCounterStore:
    """Counters stored in the ``rate_window`` table."""

    session: Session

    def __init__(self, session: Session):
        self.session = session

    def load(self, resource: str) -> RateWindow | None:
        try:
            row = self.session.get(RateWindowEntry, resource)
        except SQLAlchemyError as e:
            handle_database_error(e, "load rate window", rollback_session=self.session, resource=resource)
            raise PersistenceUnavailable("rate_window") from e
        if row is None:
            return None
        return RateWindow(
            resource=row.resource,
            window_start=ensure_utc(row.window_start),
            window_count=row.window_count,
            window_seconds=row.window_seconds,
            daily_count=row.daily_count,
            daily_limit=row.daily_limit,
            daily_reset_at=ensure_utc(row.daily_reset_at),
            alert_sent=row.alert_sent,
        )

    def save(self, window: RateWindow) -> None:
        try:
            row = self.session.get(RateWindowEntry, window.resource)
            if row is None:
                row = RateWindowEntry(**window.model_dump())
            else:
                for field, value in window.model_dump(exclude={"resource"}).items():
                    setattr(row, field, value)
            self.session.add(row)
            self.session.commit()
        except SQLAlchemyError as e:
            handle_database_error(e, "save rate window", rollback_session=self.session, resource=window.resource)
            raise PersistenceUnavailable("rate_window") from e


class RateLimiter:
    _clock: ClockPort
    _store: RateCounterStore
    _policies: dict[str, RateLimitPolicy]
    _default_policy: RateLimitPolicy
    alert_threshold: float
    critical_threshold: float

    def __init__(
        self,
        clock: ClockPort | None = None,
        store: RateCounterStore | None = None,
        default_policy: RateLimitPolicy | None = None,
        alert_threshold: float = 0.8,
        critical_threshold: float = 0.9,
    ):
        self._clock = clock or SystemClock()
        self._store = store or InMemoryRateCounterStore()
        self._policies = {}
        self._default_policy = default_policy or RateLimitPolicy(
            window_capacity=60, window_seconds=60, daily_limit=15000
        )
        self.alert_threshold = alert_threshold
        self.critical_threshold = critical_threshold

    @classmethod
    def from_settings(
        cls,
        settings: RateLimitSettings,
        clock: ClockPort | None = None,
        store: RateCounterStore | None = None,
    ) -> "RateLimiter":
        return cls(
            clock=clock,
            store=store,
            default_policy=RateLimitPolicy(
                window_capacity=settings.window_capacity,
                window_seconds=settings.window_seconds,
                daily_limit=settings.daily_limit,
            ),
            alert_threshold=settings.alert_threshold,
            critical_threshold=settings.critical_threshold,
        )

    def configure(self, resource: str, policy: RateLimitPolicy) -> None:
        self._policies[resource] = policy

    def policy_for(self, resource: str) -> RateLimitPolicy:
        return self._policies.get(resource, self._default_policy)

    def _current_window(self, resource: str) -> tuple[RateWindow, RateLimitPolicy]:
        """Load the stored window and roll it forward to now. Does not save."""
        policy = self.policy_for(resource)
        now = self._clock.now()
        window = self._store.load(resource)
        if window is None:
            window = RateWindow(
                resource=resource,
                window_start=now,
                window_seconds=policy.window_seconds,
                daily_limit=policy.daily_limit,
                daily_reset_at=now + DAY,
            )

        window.window_seconds = policy.window_seconds
        window.daily_limit = policy.daily_limit

        if now < window.window_start:
            # clock went backwards: re-anchor, keep the count
            window.window_start = now
        elif now - window.window_start >= timedelta(seconds=policy.window_seconds):
            window.window_start = now
            window.window_count = 0

        if now >= window.daily_reset_at:
            elapsed_days = (now - window.daily_reset_at) // DAY + 1
            window.daily_reset_at += DAY * elapsed_days
            window.daily_count = 0
            window.alert_sent = False
        elif window.daily_reset_at - now > DAY:
            window.daily_reset_at = now + DAY

        return window, policy

    def is_allowed(self, resource: str) -> bool:
        """Would a call to ``resource`` be admitted right now. Never raises."""
        try:
            window, policy = self._current_window(resource)
        except Exception as e:
            logger.warning(
                "Rate counter store unavailable, denying call",
                resource=resource,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False
        return (
            window.window_count < policy.window_capacity
            and window.daily_count < policy.daily_limit
        )

    def increment(self, resource: str) -> None:
        """Record one external call. Call exactly once per real call attempt."""
        window, policy = self._current_window(resource)
        window.window_count += 1
        window.daily_count += 1
        self._check_for_alerts(window)
        self._store.save(window)
        logger.debug(
            "External call recorded",
            resource=resource,
            window_usage=window.window_count,
            window_capacity=policy.window_capacity,
            daily_usage=window.daily_count,
            daily_limit=window.daily_limit,
        )

    def acquire(self, resource: str) -> None:
        """
        Admit and record one call, or raise QuotaExceeded.

        There is no await between the check and the increment, so two
        coroutines can never both take the last slot.
        """
        if not self.is_allowed(resource):
            logger.warning("Rate limit exceeded", resource=resource)
            raise QuotaExceeded(resource)
        try:
            self.increment(resource)
        except PersistenceUnavailable as e:
            raise QuotaExceeded(resource) from e

    def _check_for_alerts(self, window: RateWindow) -> None:
        if window.daily_limit <= 0:
            return
        usage = window.daily_count / window.daily_limit
        previous = (window.daily_count - 1) / window.daily_limit
        context = dict(
            resource=window.resource,
            daily_usage=window.daily_count,
            daily_limit=window.daily_limit,
            usage_percent=round(usage * 100, 1),
        )
        if usage >= self.critical_threshold > previous:
            logger.error("Daily API quota nearly exhausted", **context)
            window.alert_sent = True
        elif usage >= self.alert_threshold and not window.alert_sent:
            logger.warning("High daily API usage", **context)
            window.alert_sent = True

    def stats(self, resource: str) -> RateLimiterStats:
        try:
            window, policy = self._current_window(resource)
        except Exception as e:
            logger.warning(
                "Rate counter store unavailable, reporting resource as limited",
                resource=resource,
                error=str(e),
            )
            policy = self.policy_for(resource)
            return RateLimiterStats(
                window_usage=0,
                window_seconds=policy.window_seconds,
                daily_usage=0,
                daily_limit=policy.daily_limit,
                within_limits=False,
            )
        return RateLimiterStats(
            window_usage=window.window_count,
            window_seconds=window.window_seconds,
            daily_usage=window.daily_count,
            daily_limit=window.daily_limit,
            within_limits=window.window_count < policy.window_capacity
            and window.daily_count < policy.daily_limit,
        )

    def all_stats(self) -> dict[str, RateLimiterStats]:
        return {resource: self.stats(resource) for resource in self._policies}
