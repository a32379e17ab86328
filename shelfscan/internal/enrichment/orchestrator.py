"""
Batch enrichment of detected books with ratings and summaries.

For every book the cache is consulted first; each missing field (rating,
summary) is populated through the coalescer, rate limited, and falls back
to fixed values when the quota is exhausted or the model fails. A failure
for one book never affects the rest of the batch, and results come back in
input order.
"""
import asyncio
from collections.abc import Awaitable, Generator, Sequence
from contextlib import contextmanager
from functools import partial

from aiohttp import ClientError
from pydantic import ValidationError
from sqlmodel import Session

from shelfscan.internal.enrichment.cache import EnrichmentCache
from shelfscan.internal.enrichment.coalescer import Coalescer
from shelfscan.internal.enrichment.persistence import InMemoryRecordStore, SQLRecordStore
from shelfscan.internal.enrichment.policy import (
    FALLBACK_RATING,
    FALLBACK_SUMMARY,
    is_rating_present,
    is_summary_present,
    parse_rating,
)
from shelfscan.internal.enrichment.ports import ExternalModelPort, RecordStore
from shelfscan.internal.enrichment.types import (
    BookInput,
    CachedRecord,
    CacheUpdate,
    EnrichedBook,
    EnrichmentField,
    EnrichmentSource,
    overall_source,
)
from shelfscan.internal.env_settings import Settings
from shelfscan.internal.rate_limiter import (
    RateCounterStore,
    RateLimiter,
    RateLimiterStats,
    SQLRateCounterStore,
)
from shelfscan.util.clock import ClockPort
from shelfscan.util.db import create_db_engine, get_session, init_db
from shelfscan.util.exceptions import (
    PermanentExternalFailure,
    QuotaExceeded,
    TransientExternalFailure,
    handle_cache_error,
    handle_external_api_error,
)
from shelfscan.util.log import logger, setup_logging_from_settings

SERVICE_NAME = "External model"


class EnrichmentOrchestrator:
    _cache: EnrichmentCache
    _coalescer: Coalescer
    _rate_limiter: RateLimiter
    _model: ExternalModelPort
    resource: str

    def __init__(
        self,
        cache: EnrichmentCache,
        coalescer: Coalescer,
        rate_limiter: RateLimiter,
        model: ExternalModelPort,
        resource: str = "external-model",
    ):
        self._cache = cache
        self._coalescer = coalescer
        self._rate_limiter = rate_limiter
        self._model = model
        self.resource = resource

    async def enrich(self, books: Sequence[BookInput]) -> list[EnrichedBook]:
        """Enrich every book concurrently. Never raises; output order matches input."""
        results = await asyncio.gather(*(self._enrich_book(book) for book in books))
        logger.info(
            "Enriched batch",
            books=len(books),
            fallbacks=sum(1 for r in results if r.source == EnrichmentSource.fallback),
        )
        return list(results)

    def rate_limiter_stats(self, resource: str | None = None) -> RateLimiterStats:
        return self._rate_limiter.stats(resource or self.resource)

    async def _enrich_book(self, book: BookInput) -> EnrichedBook:
        try:
            return await self._enrich_from_cache_or_model(book)
        except Exception as e:
            handle_external_api_error(e, "Enrichment", "enrich book", title=book.title, author=book.author)
            return self._best_effort(book)

    async def _enrich_from_cache_or_model(self, book: BookInput) -> EnrichedBook:
        key = self._cache.key_for(book.title, book.author)
        record = self._cache.find(book.title, book.author)
        if record is None and book.isbn:
            record = self._cache.find_by_isbn(book.isbn)
        if record is None:
            # a record that went stale because one field expired may still
            # hold a fresh value for the other field
            record = self._cache.last_known(book.title, book.author)

        pending: dict[EnrichmentField, Awaitable[CachedRecord]] = {}
        if not self._cache.is_field_fresh(record, EnrichmentField.rating):
            pending[EnrichmentField.rating] = self._coalescer.populate(
                (key, EnrichmentField.rating), partial(self._produce_rating, key, book)
            )
        if not self._cache.is_field_fresh(record, EnrichmentField.summary):
            pending[EnrichmentField.summary] = self._coalescer.populate(
                (key, EnrichmentField.summary), partial(self._produce_summary, key, book)
            )

        rating, rating_source = _field_value(record, EnrichmentField.rating)
        summary, summary_source = _field_value(record, EnrichmentField.summary)
        if pending:
            outcomes = await asyncio.gather(*pending.values(), return_exceptions=True)
            for field, outcome in zip(pending, outcomes):
                if isinstance(outcome, Exception):
                    logger.warning(
                        "Population failed, using unstored fallback",
                        field=field.value,
                        title=book.title,
                        error=str(outcome),
                        error_type=type(outcome).__name__,
                    )
                    outcome = None
                elif isinstance(outcome, BaseException):
                    raise outcome
                value, source = _field_value(outcome, field)
                if field == EnrichmentField.rating:
                    rating, rating_source = value, source
                else:
                    summary, summary_source = value, source
            if record is None:
                record = self._cache.last_known(book.title, book.author)

        return self._build(book, record, rating, rating_source, summary, summary_source)

    async def _produce_rating(self, key: str, book: BookInput) -> CacheUpdate:
        fallback = self._fallback_update(key, book, EnrichmentField.rating)
        raw = await self._call_model(EnrichmentField.rating, book, fallback)
        if isinstance(raw, CacheUpdate):
            return raw
        rating = parse_rating(raw)
        if rating is None:
            logger.warning("Malformed rating from external model", title=book.title, response=str(raw)[:50])
            return fallback
        return self._base_update(key, book).model_copy(
            update={"rating": rating, "rating_source": EnrichmentSource.external_model}
        )

    async def _produce_summary(self, key: str, book: BookInput) -> CacheUpdate:
        fallback = self._fallback_update(key, book, EnrichmentField.summary)
        raw = await self._call_model(EnrichmentField.summary, book, fallback)
        if isinstance(raw, CacheUpdate):
            return raw
        summary = (raw or "").strip()
        if not is_summary_present(summary):
            logger.warning("Summary from external model too short", title=book.title, length=len(summary))
            return fallback
        return self._base_update(key, book).model_copy(
            update={"summary": summary, "summary_source": EnrichmentSource.external_model}
        )

    async def _call_model(
        self, field: EnrichmentField, book: BookInput, fallback: CacheUpdate
    ) -> str | CacheUpdate:
        """
        One rate-limited model call. Returns the raw response, or the stored
        fallback when the quota is exhausted or the response is unusable.
        Transport failures raise TransientExternalFailure so nothing is cached.
        """
        try:
            self._rate_limiter.acquire(self.resource)
        except QuotaExceeded:
            logger.info("Rate limit reached, using fallback", field=field.value, title=book.title)
            return fallback

        author = book.author or "Unknown"
        try:
            if field == EnrichmentField.rating:
                return await self._model.get_rating(book.title, author, book.isbn)
            return await self._model.get_summary(book.title, author)
        except (PermanentExternalFailure, ValidationError) as e:
            handle_external_api_error(e, SERVICE_NAME, field.value, title=book.title, author=author)
            return fallback
        except (ClientError, TimeoutError) as e:
            handle_external_api_error(e, SERVICE_NAME, field.value, title=book.title, author=author)
            raise TransientExternalFailure(str(e)) from e

    def _base_update(self, key: str, book: BookInput) -> CacheUpdate:
        return CacheUpdate(
            key=key,
            title=book.title,
            author=book.author or "Unknown",
            isbn=book.isbn,
            cover_url=book.cover_url,
        )

    def _fallback_update(self, key: str, book: BookInput, field: EnrichmentField) -> CacheUpdate:
        value = FALLBACK_RATING if field == EnrichmentField.rating else FALLBACK_SUMMARY
        return self._base_update(key, book).model_copy(
            update={field.value: value, f"{field.value}_source": EnrichmentSource.fallback}
        )

    def _best_effort(self, book: BookInput) -> EnrichedBook:
        try:
            record = self._cache.last_known(book.title, book.author)
        except Exception as e:
            handle_cache_error(e, "last_known", self._cache.key_for(book.title, book.author))
            record = None
        rating, rating_source = _field_value(record, EnrichmentField.rating)
        summary, summary_source = _field_value(record, EnrichmentField.summary)
        return self._build(book, record, rating, rating_source, summary, summary_source)

    def _build(
        self,
        book: BookInput,
        record: CachedRecord | None,
        rating: str,
        rating_source: EnrichmentSource,
        summary: str,
        summary_source: EnrichmentSource,
    ) -> EnrichedBook:
        # caller-supplied descriptive fields win over cached ones
        return EnrichedBook(
            title=book.title,
            author=book.author,
            isbn=book.isbn or (record.isbn if record else None),
            cover_url=book.cover_url or (record.cover_url if record else None),
            rating=rating,
            summary=summary,
            rating_source=rating_source,
            summary_source=summary_source,
            source=overall_source(rating_source, summary_source),
        )


def _field_value(
    record: CachedRecord | None, field: EnrichmentField
) -> tuple[str, EnrichmentSource]:
    if field == EnrichmentField.rating:
        if record is not None and is_rating_present(record.rating):
            return record.rating, record.rating_source  # pyright: ignore[reportReturnType]
        return FALLBACK_RATING, EnrichmentSource.fallback
    if record is not None and is_summary_present(record.summary):
        return record.summary, record.summary_source  # pyright: ignore[reportReturnType]
    return FALLBACK_SUMMARY, EnrichmentSource.fallback


def create_orchestrator(
    model: ExternalModelPort,
    settings: Settings | None = None,
    session: Session | None = None,
    record_store: RecordStore | None = None,
    counter_store: RateCounterStore | None = None,
    clock: ClockPort | None = None,
) -> EnrichmentOrchestrator:
    """
    Wire cache, rate limiter, coalescer and orchestrator from settings.

    With a session the SQL stores are used unless explicit stores are given;
    without one everything stays in memory.
    """
    settings = settings or Settings()
    if record_store is None:
        record_store = SQLRecordStore(session) if session is not None else InMemoryRecordStore()
    if counter_store is None and session is not None:
        counter_store = SQLRateCounterStore(session)

    cache = EnrichmentCache(
        record_store,
        clock=clock,
        ttl=settings.enrichment.cache_ttl(),
        fallback_ttl=settings.enrichment.fallback_ttl(),
    )
    resource = settings.enrichment.external_model_resource
    rate_limiter = RateLimiter.from_settings(settings.rate_limit, clock=clock, store=counter_store)
    rate_limiter.configure(resource, rate_limiter.policy_for(resource))
    coalescer = Coalescer(cache, timeout_seconds=settings.enrichment.external_call_timeout_seconds)
    return EnrichmentOrchestrator(
        cache,
        coalescer,
        rate_limiter,
        model,
        resource=resource,
    )


@contextmanager
def open_enrichment_service(
    model: ExternalModelPort,
    settings: Settings | None = None,
    clock: ClockPort | None = None,
) -> Generator[EnrichmentOrchestrator, None, None]:
    """
    Process-level entry point: configure logging, create the tables and
    yield an orchestrator backed by the configured database.
    """
    settings = settings or Settings()
    setup_logging_from_settings(settings)
    engine = create_db_engine(settings)
    init_db(engine)
    logger.info(
        "Enrichment service started",
        resource=settings.enrichment.external_model_resource,
        daily_limit=settings.rate_limit.daily_limit,
    )
    sessions = get_session(engine)
    try:
        yield create_orchestrator(model, settings=settings, session=next(sessions), clock=clock)
    finally:
        sessions.close()
        engine.dispose()
