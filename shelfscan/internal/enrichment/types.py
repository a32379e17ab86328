from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class EnrichmentSource(StrEnum):
    external_model = "external-model"
    fallback = "fallback"
    unset = "unset"


class EnrichmentField(StrEnum):
    rating = "rating"
    summary = "summary"


def overall_source(*sources: EnrichmentSource) -> EnrichmentSource:
    """Record-level provenance: any fallback taints the record."""
    filled = {source for source in sources if source != EnrichmentSource.unset}
    if EnrichmentSource.fallback in filled:
        return EnrichmentSource.fallback
    if filled:
        return EnrichmentSource.external_model
    return EnrichmentSource.unset


class CachedRecord(BaseModel):
    """Stored enrichment state for one cache key. Immutable; upsert replaces it."""

    model_config = ConfigDict(frozen=True)

    key: str
    title: str
    author: str
    isbn: str | None = None
    cover_url: str | None = None
    rating: str | None = None
    summary: str | None = None
    rating_source: EnrichmentSource = EnrichmentSource.unset
    summary_source: EnrichmentSource = EnrichmentSource.unset
    source: EnrichmentSource = EnrichmentSource.unset
    rating_expires_at: datetime | None = None
    summary_expires_at: datetime | None = None
    expires_at: datetime
    created_at: datetime
    updated_at: datetime


class CacheUpdate(BaseModel):
    """Partial record handed to EnrichmentCache.upsert. None means leave as is."""

    key: str
    title: str
    author: str
    isbn: str | None = None
    cover_url: str | None = None
    rating: str | None = None
    rating_source: EnrichmentSource | None = None
    summary: str | None = None
    summary_source: EnrichmentSource | None = None
    expires_at: datetime | None = None


class BookInput(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    title: str
    author: str | None = None
    isbn: str | None = None
    cover_url: str | None = None


class EnrichedBook(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    title: str
    author: str | None = None
    isbn: str | None = None
    cover_url: str | None = None
    rating: str
    summary: str
    rating_source: EnrichmentSource
    summary_source: EnrichmentSource
    source: EnrichmentSource
