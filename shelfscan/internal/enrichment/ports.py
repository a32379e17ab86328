from typing import Protocol

from shelfscan.internal.enrichment.types import CachedRecord


class ExternalModelPort(Protocol):
    """
    The rating/summary model. Implementations may raise
    TransientExternalFailure, PermanentExternalFailure, aiohttp.ClientError
    or pydantic.ValidationError.
    """

    async def get_rating(self, title: str, author: str, isbn: str | None = None) -> str: ...

    async def get_summary(self, title: str, author: str) -> str: ...


class RecordStore(Protocol):
    """Key-value persistence for cached records. Raises PersistenceUnavailable."""

    def get_by_key(self, key: str) -> CachedRecord | None: ...

    def find_by_isbn(self, isbn: str) -> CachedRecord | None:
        """Most recently updated record carrying this ISBN, expired or not."""
        ...

    def upsert(self, record: CachedRecord) -> CachedRecord:
        """Atomically replace the record stored under record.key."""
        ...
