"""In-process metrics for parley.

Tracks:
- store operation timings (with slow-operation warnings)
- HTTP request timings
- cache hit/miss rates
- counters for emitted events, notification outcomes and resolved races

Exposed as JSON via the admin-only /metrics endpoint.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import wraps
from threading import Lock
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

# Store operations slower than this are logged as warnings
SLOW_OPERATION_MS = 100


@dataclass
class TimingStats:
    """Running count/total/min/max for one operation name."""

    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0

    def record(self, duration_ms: float) -> None:
        self.count += 1
        self.total_ms += duration_ms
        if duration_ms < self.min_ms:
            self.min_ms = duration_ms
        if duration_ms > self.max_ms:
            self.max_ms = duration_ms

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "avg_ms": round(self.avg_ms, 2),
            "min_ms": round(self.min_ms, 2) if self.count else 0,
            "max_ms": round(self.max_ms, 2),
        }


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0

    @property
    def hit_rate(self) -> float:
        """Hit rate as a percentage."""
        total = self.hits + self.misses
        return (self.hits / total * 100) if total else 0.0

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate_pct": round(self.hit_rate, 2),
        }


@dataclass
class Metrics:
    """Process-wide metrics collector. All mutation goes through the lock."""

    _lock: Lock = field(default_factory=Lock)
    store_operations: dict[str, TimingStats] = field(
        default_factory=lambda: defaultdict(TimingStats)
    )
    requests: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    caches: dict[str, CacheStats] = field(default_factory=lambda: defaultdict(CacheStats))
    counters: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    _start_time: float = field(default_factory=time.time)

    def record_store_operation(self, operation: str, duration_ms: float) -> None:
        with self._lock:
            self.store_operations[operation].record(duration_ms)

    def record_request(self, endpoint: str, duration_ms: float) -> None:
        with self._lock:
            self.requests[endpoint].record(duration_ms)

    def record_cache_hit(self, cache_name: str) -> None:
        with self._lock:
            self.caches[cache_name].hits += 1

    def record_cache_miss(self, cache_name: str) -> None:
        with self._lock:
            self.caches[cache_name].misses += 1

    def increment(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            self.counters[counter] += amount

    def record_event(self, event: str, recipients: int) -> None:
        """Count an emitted event and the number of connections it reached."""
        with self._lock:
            self.counters[f"events.{event}"] += 1
            self.counters["events.deliveries"] += recipients

    def record_notification(self, outcome: str) -> None:
        """Count a notification sink outcome ("enqueued" or "failed")."""
        self.increment(f"notifications.{outcome}")

    def record_conflict(self, kind: str) -> None:
        """Count a store conflict that was resolved without surfacing."""
        self.increment(f"conflicts.{kind}")

    def counter(self, name: str) -> int:
        with self._lock:
            return self.counters.get(name, 0)

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._start_time, 1),
                "store_operations": {k: v.to_dict() for k, v in self.store_operations.items()},
                "requests": {k: v.to_dict() for k, v in self.requests.items()},
                "cache": {k: v.to_dict() for k, v in self.caches.items()},
                "counters": dict(self.counters),
            }

    def reset(self) -> None:
        """Reset all metrics (for tests)."""
        with self._lock:
            self.store_operations.clear()
            self.requests.clear()
            self.caches.clear()
            self.counters.clear()
            self._start_time = time.time()


metrics = Metrics()


def _finish(operation: str, start: float) -> None:
    duration_ms = (time.perf_counter() - start) * 1000
    metrics.record_store_operation(operation, duration_ms)
    if duration_ms > SLOW_OPERATION_MS:
        logger.warning("Slow store operation: %s took %.1fms", operation, duration_ms)


@contextmanager
def timed_db_operation(operation: str):
    """Time a block of store work.

    Usage:
        with timed_db_operation("history"):
            cursor = conn.execute(...)
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        _finish(operation, start)


def timed_operation(operation_name: str) -> Callable[[F], F]:
    """Decorator form of timed_db_operation."""

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                _finish(operation_name, start)

        return wrapper  # type: ignore

    return decorator
