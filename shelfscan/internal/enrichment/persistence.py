import threading

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from shelfscan.internal.enrichment.types import CachedRecord, EnrichmentSource
from shelfscan.internal.models import BookCacheEntry
from shelfscan.util.clock import ensure_utc
from shelfscan.util.exceptions import PersistenceUnavailable, handle_database_error
from shelfscan.util.log import logger


class InMemoryRecordStore:
    _records: dict[str, CachedRecord]
    _lock: threading.Lock

    def __init__(self):
        self._records = {}
        self._lock = threading.Lock()

    def get_by_key(self, key: str) -> CachedRecord | None:
        with self._lock:
            return self._records.get(key)

    def find_by_isbn(self, isbn: str) -> CachedRecord | None:
        with self._lock:
            matches = [r for r in self._records.values() if r.isbn == isbn]
        return max(matches, key=lambda r: r.updated_at, default=None)

    def upsert(self, record: CachedRecord) -> CachedRecord:
        with self._lock:
            self._records[record.key] = record
            return record

    def size(self) -> int:
        with self._lock:
            return len(self._records)


def _to_record(row: BookCacheEntry) -> CachedRecord:
    return CachedRecord(
        key=row.key,
        title=row.title,
        author=row.author,
        isbn=row.isbn,
        cover_url=row.cover_url,
        rating=row.rating,
        summary=row.summary,
        rating_source=EnrichmentSource(row.rating_source),
        summary_source=EnrichmentSource(row.summary_source),
        source=EnrichmentSource(row.source),
        rating_expires_at=ensure_utc(row.rating_expires_at) if row.rating_expires_at else None,
        summary_expires_at=ensure_utc(row.summary_expires_at) if row.summary_expires_at else None,
        expires_at=ensure_utc(row.expires_at),
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


class SQLRecordStore:
    """Cached records in the ``book_cache`` table, one row per key."""

    session: Session

    def __init__(self, session: Session):
        self.session = session

    def get_by_key(self, key: str) -> CachedRecord | None:
        try:
            row = self.session.get(BookCacheEntry, key)
        except SQLAlchemyError as e:
            handle_database_error(e, "read cache row", rollback_session=self.session, cache_key=key)
            raise PersistenceUnavailable("book_cache") from e
        if row is None:
            return None
        return _to_record(row)

    def find_by_isbn(self, isbn: str) -> CachedRecord | None:
        statement = (
            select(BookCacheEntry)
            .where(BookCacheEntry.isbn == isbn)
            .order_by(col(BookCacheEntry.updated_at).desc())
        )
        try:
            row = self.session.exec(statement).first()
        except SQLAlchemyError as e:
            handle_database_error(e, "read cache row by isbn", rollback_session=self.session, isbn=isbn)
            raise PersistenceUnavailable("book_cache") from e
        if row is None:
            return None
        return _to_record(row)

    def upsert(self, record: CachedRecord) -> CachedRecord:
        values = record.model_dump(mode="python")
        try:
            row = self.session.get(BookCacheEntry, record.key)
            if row is None:
                row = BookCacheEntry(**values)
            else:
                for field, value in values.items():
                    if field != "key":
                        setattr(row, field, value)
            self.session.add(row)
            self.session.commit()
            self.session.refresh(row)
        except SQLAlchemyError as e:
            handle_database_error(e, "upsert cache row", rollback_session=self.session, cache_key=record.key)
            raise PersistenceUnavailable("book_cache") from e
        logger.debug("Stored cache row", cache_key=record.key)
        return _to_record(row)
