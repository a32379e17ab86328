import threading


class CacheMetrics:
    """Thread-safe enrichment cache metrics tracker."""

    hits: int
    partial_hits: int
    misses: int
    stale_reads: int
    write_failures: int
    _lock: threading.Lock

    def __init__(self):
        self._lock = threading.Lock()
        self.hits = 0
        self.partial_hits = 0
        self.misses = 0
        self.stale_reads = 0
        self.write_failures = 0

    def record_hit(self):
        with self._lock:
            self.hits += 1

    def record_partial_hit(self):
        with self._lock:
            self.partial_hits += 1

    def record_miss(self):
        with self._lock:
            self.misses += 1

    def record_stale(self):
        """An expired record was read. Stale reads also count as misses."""
        with self._lock:
            self.stale_reads += 1
            self.misses += 1

    def record_write_failure(self):
        with self._lock:
            self.write_failures += 1

    def hit_rate(self) -> float:
        """Return cache hit rate as percentage (0-100). Partial hits count as hits."""
        with self._lock:
            served = self.hits + self.partial_hits
            total = served + self.misses
            if total == 0:
                return 0.0
            return (served / total) * 100

    def reset(self):
        """Reset all metrics to zero."""
        with self._lock:
            self.hits = 0
            self.partial_hits = 0
            self.misses = 0
            self.stale_reads = 0
            self.write_failures = 0
