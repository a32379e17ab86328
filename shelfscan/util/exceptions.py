"""
Exception types and standard exception handling utilities for shelfscan.

The enrichment core never lets these escape to its callers: quota denials,
external model failures and persistence outages all end in a fallback value.
The helpers below give every failure path the same structured log shape.
"""
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from shelfscan.util.log import logger


class EnrichmentError(Exception):
    """Base class for every error raised inside the enrichment core."""


class QuotaExceeded(EnrichmentError):
    """Admission to a rate-limited resource was denied."""

    def __init__(self, resource: str):
        super().__init__(f"Rate limit reached for {resource}")
        self.resource = resource


class ExternalModelError(EnrichmentError):
    """The external model call failed."""


class TransientExternalFailure(ExternalModelError):
    """Network error or timeout. Worth retrying on a later request."""


class PermanentExternalFailure(ExternalModelError):
    """Malformed or unusable response. Retrying the same call will not help."""


class PersistenceUnavailable(EnrichmentError):
    """The backing store for cache rows or rate counters could not be reached."""


def handle_external_api_error(
    error: Exception,
    service: str,
    operation: str,
    **context: Any
) -> None:
    """
    Standard logging for external API failures.

    Args:
        error: The caught exception
        service: Name of the external service (e.g., "External model")
        operation: What operation was being attempted (e.g., "rating")
        **context: Additional context to log (e.g., title=..., author=...)

    Example:
        try:
            rating = await model.get_rating(title, author)
        except PermanentExternalFailure as e:
            handle_external_api_error(e, "External model", "rating", title=title)
            return fallback
    """
    logger.error(
        f"{service} {operation} failed",
        error=str(error),
        error_type=type(error).__name__,
        service=service,
        operation=operation,
        **context
    )


def handle_database_error(
    error: SQLAlchemyError,
    operation: str,
    rollback_session: Any = None,
    **context: Any
) -> None:
    """
    Standard logging and handling for database errors.

    Args:
        error: The caught SQLAlchemy exception
        operation: What database operation was being attempted
        rollback_session: Optional SQLModel Session to rollback
        **context: Additional context to log

    Example:
        try:
            session.add(row)
            session.commit()
        except SQLAlchemyError as e:
            handle_database_error(e, "upsert cache row", rollback_session=session, key=row.key)
            raise PersistenceUnavailable("book_cache") from e
    """
    logger.error(
        f"Database {operation} failed",
        error=str(error),
        error_type=type(error).__name__,
        operation=operation,
        **context
    )

    if rollback_session is not None:
        try:
            rollback_session.rollback()
        except SQLAlchemyError as rollback_error:
            logger.warning(
                "Failed to rollback session after database error",
                error=str(rollback_error)
            )


def handle_cache_error(
    error: Exception,
    operation: str,
    cache_key: str,
    **context: Any
) -> None:
    """
    Standard logging for cache operation failures.

    Args:
        error: The caught exception
        operation: What cache operation was being attempted (e.g., "find", "upsert")
        cache_key: The cache key involved
        **context: Additional context to log
    """
    logger.warning(
        f"Cache {operation} failed",
        error=str(error),
        error_type=type(error).__name__,
        operation=operation,
        cache_key=cache_key,
        **context
    )
