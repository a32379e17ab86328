"""
End-to-end tests for EnrichmentOrchestrator.enrich().

Covers:
1. Cache-aware call counting (full hit, miss, partial hit)
2. Ordering and caller-supplied descriptive fields
3. Quota exhaustion, permanent and transient model failures
4. Coalescing across concurrent batches
5. Persistence outages
6. Field-level expiry, ISBN lookup and service startup
"""
import asyncio
from datetime import timedelta

import pytest
from aiohttp import ClientConnectionError

from shelfscan.internal.enrichment.coalescer import Coalescer
from shelfscan.internal.enrichment.orchestrator import (
    EnrichmentOrchestrator,
    create_orchestrator,
    open_enrichment_service,
)
from shelfscan.internal.enrichment.cache import EnrichmentCache
from shelfscan.internal.enrichment.policy import (
    FALLBACK_RATING,
    FALLBACK_SUMMARY,
    MAX_RATING,
    MIN_RATING,
)
from shelfscan.internal.enrichment.types import BookInput, CacheUpdate, EnrichmentSource
from shelfscan.internal.env_settings import ApplicationSettings, DBSettings, Settings
from shelfscan.internal.rate_limiter import RateLimiter, RateLimitPolicy
from shelfscan.util.exceptions import PermanentExternalFailure, TransientExternalFailure

from tests.conftest import LONG_SUMMARY, RESOURCE, FakeModel
from tests.test_enrichment_cache import UnavailableStore


def seed(cache: EnrichmentCache, clock, title: str, author: str, **fields) -> None:
    cache.upsert(
        CacheUpdate(
            key=cache.key_for(title, author),
            title=title,
            author=author,
            expires_at=clock.now() + timedelta(days=30),
            **fields,
        )
    )


class TestCacheAwareness:
    @pytest.mark.asyncio
    async def test_cached_and_uncached_books(self, orchestrator, cache, clock, model, sample_books):
        seed(cache, clock, "The Hobbit", "J.R.R. Tolkien", rating="4.5", summary="s" * 200)

        results = await orchestrator.enrich(sample_books)

        assert model.total_calls == 2
        assert model.rating_calls == ["Dune"]
        assert model.summary_calls == ["Dune"]
        assert [r.title for r in results] == ["The Hobbit", "Dune"]
        assert results[0].rating == "4.5"
        assert results[0].summary == "s" * 200
        assert results[1].rating == "4.3"
        assert results[1].summary == LONG_SUMMARY
        assert results[0].cover_url == "https://example.com/hobbit.jpg"
        assert results[1].cover_url == "https://example.com/dune.jpg"
        assert all(r.source == EnrichmentSource.external_model for r in results)

    @pytest.mark.asyncio
    async def test_second_request_served_from_cache(self, orchestrator, model, sample_books):
        await orchestrator.enrich(sample_books)
        calls = model.total_calls
        await orchestrator.enrich(sample_books)
        assert model.total_calls == calls == 4

    @pytest.mark.asyncio
    async def test_partial_hit_fetches_only_missing_field(self, orchestrator, cache, clock, model):
        seed(cache, clock, "Dune", "Frank Herbert", rating="4.4")

        [result] = await orchestrator.enrich([BookInput(title="Dune", author="Frank Herbert")])

        assert model.rating_calls == []
        assert model.summary_calls == ["Dune"]
        assert result.rating == "4.4"
        assert result.summary == LONG_SUMMARY

    @pytest.mark.asyncio
    async def test_expired_record_triggers_fresh_population(self, orchestrator, cache, clock, model):
        seed(cache, clock, "Dune", "Frank Herbert", rating="4.4", summary=LONG_SUMMARY)
        clock.advance(days=31)
        model.rating_result = "4.1"

        [result] = await orchestrator.enrich([BookInput(title="Dune", author="Frank Herbert")])

        assert model.rating_calls == ["Dune"]
        assert model.summary_calls == ["Dune"]
        assert result.rating == "4.1"

    @pytest.mark.asyncio
    async def test_fallback_expiry_refetches_only_fallback_field(
        self, orchestrator, rate_limiter, cache, clock, model
    ):
        seed(cache, clock, "Dune", "Frank Herbert", summary=LONG_SUMMARY)
        rate_limiter.configure(RESOURCE, RateLimitPolicy(window_capacity=60, window_seconds=60, daily_limit=0))
        book = BookInput(title="Dune", author="Frank Herbert")
        [result] = await orchestrator.enrich([book])
        assert result.rating_source == EnrichmentSource.fallback

        clock.advance(hours=2)
        rate_limiter.configure(RESOURCE, RateLimitPolicy(window_capacity=60, window_seconds=60, daily_limit=100))
        [result] = await orchestrator.enrich([book])

        assert model.rating_calls == ["Dune"]
        assert model.summary_calls == []
        assert result.rating == "4.3"
        assert result.summary == LONG_SUMMARY
        assert result.source == EnrichmentSource.external_model

    @pytest.mark.asyncio
    async def test_isbn_match_reuses_record_under_other_title(self, orchestrator, cache, clock, model):
        seed(
            cache, clock, "Dune", "Frank Herbert",
            isbn="9780441013593", rating="4.4", summary=LONG_SUMMARY,
        )
        [result] = await orchestrator.enrich(
            [BookInput(title="Dune (Deluxe Edition)", author="Frank Herbert", isbn="9780441013593")]
        )
        assert model.total_calls == 0
        assert result.title == "Dune (Deluxe Edition)"
        assert result.rating == "4.4"
        assert result.summary == LONG_SUMMARY

    @pytest.mark.asyncio
    async def test_short_isbn_does_not_match(self, orchestrator, cache, clock, model):
        seed(cache, clock, "Dune", "Frank Herbert", isbn="12345", rating="4.4", summary=LONG_SUMMARY)
        await orchestrator.enrich([BookInput(title="Dune Messiah", author="Frank Herbert", isbn="12345")])
        assert model.total_calls == 2

    @pytest.mark.asyncio
    async def test_rating_text_is_normalised(self, orchestrator, model):
        model.rating_result = "I'd say 4.25 stars"
        [result] = await orchestrator.enrich([BookInput(title="Dune", author="Frank Herbert")])
        assert result.rating == "4.2"
        assert result.rating_source == EnrichmentSource.external_model


class TestDescriptiveFields:
    @pytest.mark.asyncio
    async def test_caller_values_win_over_cache(self, orchestrator, cache, clock):
        seed(
            cache, clock, "Dune", "Frank Herbert",
            rating="4.4", summary=LONG_SUMMARY,
            cover_url="https://cache.example/dune.jpg", isbn="0000000000",
        )
        [result] = await orchestrator.enrich(
            [BookInput(title="Dune", author="Frank Herbert", cover_url="https://caller.example/dune.jpg")]
        )
        assert result.cover_url == "https://caller.example/dune.jpg"
        assert result.isbn == "0000000000"

    def test_camel_case_payload_accepted(self):
        book = BookInput.model_validate({"title": "Dune", "author": "Frank Herbert", "coverUrl": "u"})
        assert book.cover_url == "u"


class TestQuota:
    @pytest.mark.asyncio
    async def test_quota_exhausted_stores_fallback_without_calling_model(
        self, orchestrator, rate_limiter, cache, model
    ):
        rate_limiter.configure(RESOURCE, RateLimitPolicy(window_capacity=60, window_seconds=60, daily_limit=0))

        [result] = await orchestrator.enrich([BookInput(title="Dune", author="Frank Herbert")])

        assert model.total_calls == 0
        assert result.rating == FALLBACK_RATING
        assert result.summary == FALLBACK_SUMMARY
        assert result.source == EnrichmentSource.fallback
        stored = cache.find("Dune", "Frank Herbert")
        assert stored is not None
        assert stored.source == EnrichmentSource.fallback

    @pytest.mark.asyncio
    async def test_fallback_not_retried_immediately_but_after_ttl(
        self, orchestrator, rate_limiter, clock, model
    ):
        rate_limiter.configure(RESOURCE, RateLimitPolicy(window_capacity=60, window_seconds=60, daily_limit=0))
        book = BookInput(title="Dune", author="Frank Herbert")
        await orchestrator.enrich([book])

        rate_limiter.configure(RESOURCE, RateLimitPolicy(window_capacity=60, window_seconds=60, daily_limit=100))
        await orchestrator.enrich([book])
        assert model.total_calls == 0

        clock.advance(hours=1, seconds=1)
        [result] = await orchestrator.enrich([book])
        assert model.total_calls == 2
        assert result.source == EnrichmentSource.external_model

    @pytest.mark.asyncio
    async def test_each_external_call_is_counted(self, orchestrator, sample_books):
        await orchestrator.enrich(sample_books)
        stats = orchestrator.rate_limiter_stats()
        assert stats.daily_usage == 4
        assert stats.window_usage == 4
        assert stats.within_limits


class TestFailures:
    @pytest.mark.asyncio
    async def test_permanent_failure_yields_fallback_rating(self, orchestrator, model, sample_books):
        model.rating_overrides["Dune"] = PermanentExternalFailure("malformed response")

        results = await orchestrator.enrich(sample_books)

        assert len(results) == 2
        dune = results[1]
        assert MIN_RATING <= float(dune.rating) <= MAX_RATING
        assert dune.rating_source == EnrichmentSource.fallback
        assert dune.source == EnrichmentSource.fallback
        assert dune.summary == LONG_SUMMARY
        assert results[0].source == EnrichmentSource.external_model

    @pytest.mark.asyncio
    async def test_malformed_rating_yields_fallback(self, orchestrator, model):
        model.rating_result = "unknown"
        [result] = await orchestrator.enrich([BookInput(title="Dune", author="Frank Herbert")])
        assert result.rating == FALLBACK_RATING
        assert result.rating_source == EnrichmentSource.fallback

    @pytest.mark.asyncio
    async def test_short_summary_yields_fallback(self, orchestrator, model):
        model.summary_result = "A desert planet."
        [result] = await orchestrator.enrich([BookInput(title="Dune", author="Frank Herbert")])
        assert result.summary == FALLBACK_SUMMARY
        assert result.summary_source == EnrichmentSource.fallback

    @pytest.mark.asyncio
    async def test_transient_failure_is_not_cached(self, orchestrator, cache, model):
        model.rating_result = TransientExternalFailure("connection reset")
        book = BookInput(title="Dune", author="Frank Herbert")

        [result] = await orchestrator.enrich([book])
        assert result.rating == FALLBACK_RATING
        assert result.rating_source == EnrichmentSource.fallback
        stored = cache.find("Dune", "Frank Herbert")
        assert stored is not None and stored.rating is None

        model.rating_result = "4.6"
        [result] = await orchestrator.enrich([book])
        assert result.rating == "4.6"
        assert len(model.rating_calls) == 2

    @pytest.mark.asyncio
    async def test_client_error_treated_as_transient(self, orchestrator, cache, model):
        model.rating_result = ClientConnectionError("refused")
        [result] = await orchestrator.enrich([BookInput(title="Dune", author="Frank Herbert")])
        assert result.rating == FALLBACK_RATING
        assert cache.find("Dune", "Frank Herbert").rating is None

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_abort_batch(self, orchestrator, model, sample_books):
        model.rating_overrides["The Hobbit"] = RuntimeError("boom")
        results = await orchestrator.enrich(sample_books)
        assert results[0].rating == FALLBACK_RATING
        assert results[1].rating == "4.3"

    @pytest.mark.asyncio
    async def test_timeout_yields_fallback(self, cache, rate_limiter):
        slow = FakeModel(delay=1.0)
        orchestrator = EnrichmentOrchestrator(
            cache, Coalescer(cache, timeout_seconds=0.05), rate_limiter, slow, resource=RESOURCE
        )
        [result] = await orchestrator.enrich([BookInput(title="Dune", author="Frank Herbert")])
        assert result.rating == FALLBACK_RATING
        assert result.summary == FALLBACK_SUMMARY

    @pytest.mark.asyncio
    async def test_persistence_outage_still_enriches(self, clock, rate_limiter, model, sample_books):
        cache = EnrichmentCache(UnavailableStore(), clock=clock)
        orchestrator = EnrichmentOrchestrator(
            cache, Coalescer(cache), rate_limiter, model, resource=RESOURCE
        )
        results = await orchestrator.enrich(sample_books)
        assert [r.rating for r in results] == ["4.3", "4.3"]
        assert model.total_calls == 4

    @pytest.mark.asyncio
    async def test_book_without_author(self, orchestrator):
        [result] = await orchestrator.enrich([BookInput(title="Beowulf")])
        assert result.author is None
        assert result.rating == "4.3"


class TestConcurrentBatches:
    @pytest.mark.asyncio
    async def test_overlapping_batches_share_external_calls(self, cache, rate_limiter):
        model = FakeModel(delay=0.01)
        orchestrator = EnrichmentOrchestrator(
            cache, Coalescer(cache), rate_limiter, model, resource=RESOURCE
        )
        book = BookInput(title="Dune", author="Frank Herbert")

        batches = await asyncio.gather(*(orchestrator.enrich([book]) for _ in range(5)))

        assert len(model.rating_calls) == 1
        assert len(model.summary_calls) == 1
        assert all(batch[0] == batches[0][0] for batch in batches)

    @pytest.mark.asyncio
    async def test_duplicate_books_in_one_batch(self, orchestrator, model):
        book = BookInput(title="Dune", author="Frank Herbert")
        results = await orchestrator.enrich([book, book, book])
        assert len(results) == 3
        assert model.total_calls == 2


class TestCreateOrchestrator:
    @pytest.mark.asyncio
    async def test_wires_sql_stores_from_session(self, db_session, clock):
        settings = Settings()
        model = FakeModel()
        orchestrator = create_orchestrator(model, settings=settings, session=db_session, clock=clock)

        [result] = await orchestrator.enrich([BookInput(title="Dune", author="Frank Herbert")])
        assert result.rating == "4.3"

        again = create_orchestrator(model, settings=settings, session=db_session, clock=clock)
        await again.enrich([BookInput(title="DUNE", author="frank herbert")])
        assert model.total_calls == 2
        assert again.rate_limiter_stats(settings.enrichment.external_model_resource).daily_usage == 2

    def test_in_memory_defaults(self):
        orchestrator = create_orchestrator(FakeModel(), settings=Settings())
        stats = orchestrator.rate_limiter_stats()
        assert stats.daily_limit == Settings().rate_limit.daily_limit
        assert stats.window_usage == 0


class TestEnrichmentService:
    @pytest.mark.asyncio
    async def test_configures_logging_and_persists(self, tmp_path, clock):
        settings = Settings(
            app=ApplicationSettings(config_dir=str(tmp_path), log_format="json", log_file="shelfscan.log"),
            db=DBSettings(sqlite_path="cache.sqlite"),
        )
        model = FakeModel()

        with open_enrichment_service(model, settings=settings, clock=clock) as orchestrator:
            [result] = await orchestrator.enrich([BookInput(title="Dune", author="Frank Herbert")])
        assert result.rating == "4.3"
        assert (tmp_path / "logs" / "shelfscan.log").exists()
        assert (tmp_path / "cache.sqlite").exists()

        with open_enrichment_service(model, settings=settings, clock=clock) as orchestrator:
            await orchestrator.enrich([BookInput(title="Dune", author="Frank Herbert")])
        assert model.total_calls == 2
