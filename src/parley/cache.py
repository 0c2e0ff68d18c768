"""In-memory TTL caches for authorization lookups.

Channel joins, typing indicators and topic fan-out all ask "is X a
participant of conversation Y?" far more often than membership changes, so
participant sets are cached per conversation and invalidated explicitly by
the conversation store whenever membership changes. Identity secret hashes
never change for a given identity ID and are cached with a long TTL.

Both caches are warmed in the background on server startup and refreshed
periodically.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .metrics import metrics

if TYPE_CHECKING:
    import sqlite3

logger = logging.getLogger(__name__)

PARTICIPANT_CACHE_TTL = float(os.environ.get("PARLEY_PARTICIPANT_CACHE_TTL", 3600))
IDENTITY_CACHE_TTL = float(os.environ.get("PARLEY_IDENTITY_CACHE_TTL", 86400))

PARTICIPANT_CACHE_SIZE = int(os.environ.get("PARLEY_PARTICIPANT_CACHE_SIZE", 10000))
IDENTITY_CACHE_SIZE = int(os.environ.get("PARLEY_IDENTITY_CACHE_SIZE", 5000))

CACHE_WARMING_ENABLED = os.environ.get("PARLEY_CACHE_WARMING", "1").lower() in ("1", "true", "yes")
CACHE_REFRESH_INTERVAL = int(os.environ.get("PARLEY_CACHE_REFRESH_INTERVAL", 300))
CACHE_WARMING_TIMEOUT = int(os.environ.get("PARLEY_CACHE_WARMING_TIMEOUT", 30))


@dataclass
class TTLCache:
    """Thread-safe TTL cache with LRU eviction.

    A ``ttl`` of 0 means entries never expire and only LRU eviction applies.
    """

    name: str
    default_ttl: float = 3600.0
    max_size: int = 1000
    _data: OrderedDict[str, tuple[Any, float]] = field(default_factory=OrderedDict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def get(self, key: str) -> tuple[bool, Any]:
        """Return ``(hit, value)``; value is None on a miss."""
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                metrics.record_cache_miss(self.name)
                return False, None

            value, expires_at = entry
            if time.time() > expires_at:
                del self._data[key]
                metrics.record_cache_miss(self.name)
                return False, None

            self._data.move_to_end(key)
            metrics.record_cache_hit(self.name)
            return True, value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        self.set_bulk({key: value}, ttl=ttl)

    def set_bulk(self, items: dict[str, Any], ttl: float | None = None) -> int:
        """Insert many entries under one lock acquisition. Returns the count."""
        if ttl is None:
            ttl = self.default_ttl
        expires_at = time.time() + ttl if ttl > 0 else float("inf")

        with self._lock:
            for key, value in items.items():
                self._data[key] = (value, expires_at)
                self._data.move_to_end(key)
            while len(self._data) > self.max_size:
                self._data.popitem(last=False)
        return len(items)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._data if k.startswith(prefix)]
            for key in doomed:
                del self._data[key]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def stats(self) -> dict:
        with self._lock:
            return {
                "size": len(self._data),
                "max_size": self.max_size,
                "ttl_seconds": self.default_ttl,
            }


# conversation_id -> frozenset of participant identity IDs
participant_cache = TTLCache(
    name="participants",
    default_ttl=PARTICIPANT_CACHE_TTL,
    max_size=PARTICIPANT_CACHE_SIZE,
)

# identity_id -> secret hash (None caches a negative lookup)
identity_hash_cache = TTLCache(
    name="identity_hash",
    default_ttl=IDENTITY_CACHE_TTL,
    max_size=IDENTITY_CACHE_SIZE,
)


def participants_key(conversation_id: str) -> str:
    return f"participants:{conversation_id}"


def identity_key(identity_id: str) -> str:
    return f"identity:{identity_id}"


def invalidate_participants(conversation_id: str) -> None:
    """Drop the cached participant set after a membership change."""
    participant_cache.delete(participants_key(conversation_id))


def invalidate_identity(identity_id: str) -> None:
    identity_hash_cache.delete(identity_key(identity_id))


def clear_all_caches() -> None:
    participant_cache.clear()
    identity_hash_cache.clear()


# --- Cache Warming ---


async def warm_caches(conn: sqlite3.Connection | None = None) -> dict[str, int]:
    """Load participant sets and identity hashes into the caches.

    All queries run in the default executor so the event loop never blocks
    on the store.
    """
    from . import db

    loop = asyncio.get_running_loop()
    if conn is None:
        conn = await loop.run_in_executor(None, db.get_connection)

    start = time.perf_counter()
    results = {
        "conversations": await loop.run_in_executor(None, _warm_participants, conn),
        "identities": await loop.run_in_executor(None, _warm_identities, conn),
    }
    elapsed_ms = (time.perf_counter() - start) * 1000
    logger.info(
        "Cache warming complete in %.0fms: %d conversations, %d identities",
        elapsed_ms,
        results["conversations"],
        results["identities"],
    )
    return results


def _warm_participants(conn: sqlite3.Connection) -> int:
    rows = conn.execute(
        "SELECT conversation_id, identity_id FROM conversation_participants"
    ).fetchall()

    grouped: dict[str, set[str]] = {}
    for conversation_id, identity_id in rows:
        grouped.setdefault(conversation_id, set()).add(identity_id)

    return participant_cache.set_bulk(
        {participants_key(cid): frozenset(ids) for cid, ids in grouped.items()}
    )


def _warm_identities(conn: sqlite3.Connection) -> int:
    rows = conn.execute("SELECT id, secret_hash FROM identities").fetchall()
    return identity_hash_cache.set_bulk({identity_key(row[0]): row[1] for row in rows})


_shutdown_event: asyncio.Event | None = None


def schedule_cache_warming() -> None:
    """Start warming as a background task, then refresh periodically.

    Must be called from inside a running event loop (the app lifespan).
    """
    global _shutdown_event

    if not CACHE_WARMING_ENABLED:
        logger.info("Cache warming disabled via PARLEY_CACHE_WARMING=0")
        return

    async def _warm_and_refresh():
        while not _shutdown_event.is_set():
            try:
                await asyncio.wait_for(warm_caches(), timeout=CACHE_WARMING_TIMEOUT)
            except asyncio.TimeoutError:
                logger.error("Cache warming timed out after %ss", CACHE_WARMING_TIMEOUT)
            except Exception:
                logger.error("Cache warming failed", exc_info=True)

            if CACHE_REFRESH_INTERVAL <= 0:
                return
            try:
                await asyncio.wait_for(_shutdown_event.wait(), timeout=CACHE_REFRESH_INTERVAL)
            except asyncio.TimeoutError:
                pass

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.warning("No event loop available for cache warming")
        return

    _shutdown_event = asyncio.Event()
    loop.create_task(_warm_and_refresh())
    logger.info("Cache warming scheduled as background task")


def stop_cache_warming() -> None:
    """Signal the background warming task to stop."""
    if _shutdown_event is not None:
        _shutdown_event.set()
