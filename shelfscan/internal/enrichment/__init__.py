"""
Metadata enrichment for detected books.

Decides per (title, author) whether an external model call is needed for a
rating or summary, serves cached values otherwise, and makes sure concurrent
requests for the same book share a single call.
"""

from .cache import EnrichmentCache
from .coalescer import Coalescer
from .keys import derive_cache_key
from .orchestrator import EnrichmentOrchestrator, create_orchestrator, open_enrichment_service
from .types import BookInput, CachedRecord, CacheUpdate, EnrichedBook, EnrichmentSource

__all__ = [
    "BookInput",
    "CacheUpdate",
    "CachedRecord",
    "Coalescer",
    "EnrichedBook",
    "EnrichmentCache",
    "EnrichmentOrchestrator",
    "EnrichmentSource",
    "create_orchestrator",
    "derive_cache_key",
    "open_enrichment_service",
]
