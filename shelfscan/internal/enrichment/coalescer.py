"""
Per-key request coalescing for cache population.

Concurrent callers asking to populate the same key share one task: the
producer runs once, its CacheUpdate is upserted once, and every caller gets
the same record (or the same exception). The task is not owned by any one
caller, so a caller that goes away does not cancel it.
"""
import asyncio
import threading
from collections.abc import Awaitable, Callable, Hashable
from functools import partial

from shelfscan.internal.enrichment.cache import EnrichmentCache
from shelfscan.internal.enrichment.types import CachedRecord, CacheUpdate
from shelfscan.util.exceptions import TransientExternalFailure
from shelfscan.util.log import logger

Producer = Callable[[], Awaitable[CacheUpdate]]


class Coalescer:
    _cache: EnrichmentCache
    _timeout: float
    _in_flight: dict[Hashable, asyncio.Task[CachedRecord]]
    _lock: threading.Lock
    started: int
    joined: int

    def __init__(self, cache: EnrichmentCache, timeout_seconds: float = 15.0):
        self._cache = cache
        self._timeout = timeout_seconds
        self._in_flight = {}
        self._lock = threading.Lock()
        self.started = 0
        self.joined = 0

    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def is_in_flight(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._in_flight

    async def populate(self, key: Hashable, producer: Producer) -> CachedRecord:
        # the lock guards the map only; the producer runs inside the task
        with self._lock:
            task = self._in_flight.get(key)
            if task is None:
                task = asyncio.create_task(self._run(key, producer), name=f"populate:{key}")
                self._in_flight[key] = task
                task.add_done_callback(partial(self._release, key))
                self.started += 1
                logger.debug("Population started", flight_key=str(key))
            else:
                self.joined += 1
                logger.debug("Joined in-flight population", flight_key=str(key))

        return await asyncio.shield(task)

    async def _run(self, key: Hashable, producer: Producer) -> CachedRecord:
        try:
            update = await asyncio.wait_for(producer(), timeout=self._timeout)
        except TimeoutError as e:
            logger.warning("Population timed out", flight_key=str(key), timeout=self._timeout)
            raise TransientExternalFailure(f"Population of {key} timed out after {self._timeout}s") from e
        return self._cache.upsert(update)

    def _release(self, key: Hashable, task: asyncio.Task[CachedRecord]) -> None:
        with self._lock:
            if self._in_flight.get(key) is task:
                del self._in_flight[key]
        if task.cancelled():
            return
        # mark the exception as retrieved; waiters (if any) re-raise it themselves
        error = task.exception()
        if error is not None:
            logger.debug("Population failed", flight_key=str(key), error_type=type(error).__name__)
