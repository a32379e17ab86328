"""
Enrichment cache: normalized (title, author) key -> CachedRecord.

Reads treat expired records and records with neither a usable rating nor a
usable summary as misses. Writes merge into the existing record in a single
store call, so a reader sees either the old record or the new one.
Persistence failures never reach the caller: reads degrade to a miss,
writes are best effort.

Rating and summary expire independently. The record-level ``expires_at``
is the earliest expiry among the filled fields, so a short-lived fallback
makes the record stale while the other field can still be reused through
``is_field_fresh``.
"""
from datetime import datetime, timedelta

from shelfscan.internal.enrichment.keys import derive_cache_key
from shelfscan.internal.enrichment.policy import (
    MIN_ISBN_LENGTH,
    is_rating_present,
    is_summary_present,
)
from shelfscan.internal.enrichment.ports import RecordStore
from shelfscan.internal.enrichment.types import (
    CachedRecord,
    CacheUpdate,
    EnrichmentField,
    EnrichmentSource,
    overall_source,
)
from shelfscan.util.cache import CacheMetrics
from shelfscan.util.clock import ClockPort, SystemClock
from shelfscan.util.exceptions import PersistenceUnavailable, handle_cache_error
from shelfscan.util.log import logger


def _is_present(record: CachedRecord, field: EnrichmentField) -> bool:
    if field == EnrichmentField.rating:
        return is_rating_present(record.rating)
    return is_summary_present(record.summary)


class EnrichmentCache:
    _store: RecordStore
    _clock: ClockPort
    ttl: timedelta
    fallback_ttl: timedelta
    metrics: CacheMetrics

    def __init__(
        self,
        store: RecordStore,
        clock: ClockPort | None = None,
        ttl: timedelta = timedelta(days=90),
        fallback_ttl: timedelta = timedelta(hours=1),
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self.ttl = ttl
        self.fallback_ttl = fallback_ttl
        self.metrics = CacheMetrics()

    def key_for(self, title: str | None, author: str | None) -> str:
        return derive_cache_key(title, author)

    def is_expired(self, record: CachedRecord) -> bool:
        return record.expires_at <= self._clock.now()

    def field_expires_at(self, record: CachedRecord, field: EnrichmentField) -> datetime:
        expires_at = getattr(record, f"{field.value}_expires_at")
        return expires_at or record.expires_at

    def is_field_fresh(self, record: CachedRecord | None, field: EnrichmentField) -> bool:
        """Field is present and its own expiry has not passed."""
        if record is None or not _is_present(record, field):
            return False
        return self.field_expires_at(record, field) > self._clock.now()

    def _read(self, key: str) -> CachedRecord | None:
        try:
            return self._store.get_by_key(key)
        except PersistenceUnavailable as e:
            handle_cache_error(e, "find", key)
            return None

    def _usable(self, lookup: str, record: CachedRecord | None, count_misses: bool) -> CachedRecord | None:
        if record is None:
            if count_misses:
                self.metrics.record_miss()
            logger.debug("Cache miss", cache_key=lookup)
            return None
        if self.is_expired(record):
            if count_misses:
                self.metrics.record_stale()
            logger.debug("Cache entry expired", cache_key=lookup, expires_at=record.expires_at.isoformat())
            return None

        has_rating = is_rating_present(record.rating)
        has_summary = is_summary_present(record.summary)
        if not has_rating and not has_summary:
            if count_misses:
                self.metrics.record_miss()
            return None
        if has_rating and has_summary:
            self.metrics.record_hit()
            logger.debug("Cache hit", cache_key=lookup)
        else:
            self.metrics.record_partial_hit()
            logger.debug("Partial cache hit", cache_key=lookup, has_rating=has_rating, has_summary=has_summary)
        return record

    def find(self, title: str | None, author: str | None) -> CachedRecord | None:
        """Fresh record with at least one present field, or None."""
        key = self.key_for(title, author)
        return self._usable(key, self._read(key), count_misses=True)

    def find_by_isbn(self, isbn: str | None) -> CachedRecord | None:
        """
        Secondary lookup for books whose detected title or author differs
        from the cached one. Same expiry and presence rules as ``find``.
        Short ISBNs are ignored; a miss here is not counted again.
        """
        isbn = (isbn or "").strip()
        if len(isbn) < MIN_ISBN_LENGTH:
            return None
        try:
            record = self._store.find_by_isbn(isbn)
        except PersistenceUnavailable as e:
            handle_cache_error(e, "find_by_isbn", isbn)
            return None
        return self._usable(f"isbn:{isbn}", record, count_misses=False)

    def last_known(self, title: str | None, author: str | None) -> CachedRecord | None:
        """Whatever is stored for the key, expired or not."""
        return self._read(self.key_for(title, author))

    def _field_expiry(self, source: EnrichmentSource | None, now: datetime) -> datetime:
        if source == EnrichmentSource.fallback:
            return now + self.fallback_ttl
        return now + self.ttl

    def merge(self, existing: CachedRecord | None, update: CacheUpdate) -> CachedRecord:
        now = self._clock.now()
        changes = update.model_dump(exclude_none=True, exclude={"expires_at"})
        for field in EnrichmentField:
            if getattr(update, field.value) is None:
                continue
            # a value without provenance is treated as coming from the model
            source = getattr(update, f"{field.value}_source") or EnrichmentSource.external_model
            changes[f"{field.value}_source"] = source
            changes[f"{field.value}_expires_at"] = update.expires_at or self._field_expiry(source, now)

        if existing is None:
            merged = CachedRecord(
                **changes,
                expires_at=now,
                created_at=now,
                updated_at=now,
            )
        else:
            merged = existing.model_copy(update={**changes, "updated_at": now})

        field_expiries = [
            self.field_expires_at(merged, field) for field in EnrichmentField if _is_present(merged, field)
        ]
        expires_at = update.expires_at or min(field_expiries, default=now + self.ttl)
        sources = (merged.rating_source, merged.summary_source)
        return merged.model_copy(update={"source": overall_source(*sources), "expires_at": expires_at})

    def upsert(self, update: CacheUpdate) -> CachedRecord:
        """
        Merge ``update`` into the stored record and write it back once.

        Non-null fields overwrite, null fields keep the stored value. If the
        current record cannot be read the write is skipped, since writing a
        partial record would erase fields we could not see.
        """
        try:
            existing = self._store.get_by_key(update.key)
        except PersistenceUnavailable as e:
            handle_cache_error(e, "upsert", update.key, stage="read")
            self.metrics.record_write_failure()
            return self.merge(None, update)

        merged = self.merge(existing, update)
        try:
            stored = self._store.upsert(merged)
        except PersistenceUnavailable as e:
            handle_cache_error(e, "upsert", update.key, stage="write")
            self.metrics.record_write_failure()
            return merged
        logger.debug(
            "Cache updated",
            cache_key=stored.key,
            source=stored.source.value,
            expires_at=stored.expires_at.isoformat(),
        )
        return stored
