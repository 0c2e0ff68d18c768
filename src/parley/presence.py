"""Presence registry: which identities have live connections in this process.

An identity may hold any number of connection handles (one per device or
tab). It is online while it holds at least one and goes offline only when
its last handle is removed. Registration and removal report the transition,
if any, so the caller can persist last-seen and broadcast the change.

The registry is process-local. In a multi-process deployment each process
only knows about its own connections.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from .db import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PresenceChange:
    """An identity came online or went offline."""

    identity_id: str
    online: bool
    at: str

    @property
    def status(self) -> str:
        return "online" if self.online else "offline"

    def to_event(self) -> dict:
        payload = {"identity_id": self.identity_id, "status": self.status}
        if not self.online:
            payload["last_seen"] = self.at
        return payload


@dataclass
class PresenceRegistry:
    """identity -> set of active connection handles."""

    _handles: dict[str, set[str]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def register(self, identity_id: str, handle: str) -> PresenceChange | None:
        """Add a handle. Returns a change only when the identity was offline."""
        with self._lock:
            handles = self._handles.setdefault(identity_id, set())
            was_offline = not handles
            handles.add(handle)
            count = len(handles)
        logger.debug("Registered %s for %s (%d connections)", handle, identity_id, count)
        if was_offline:
            return PresenceChange(identity_id, online=True, at=utc_now())
        return None

    def unregister(self, identity_id: str, handle: str) -> PresenceChange | None:
        """Remove a handle. Returns a change only when it was the last one."""
        with self._lock:
            handles = self._handles.get(identity_id)
            if not handles or handle not in handles:
                return None
            handles.discard(handle)
            if handles:
                return None
            del self._handles[identity_id]
            seen_at = utc_now()
        logger.debug("%s went offline", identity_id)
        return PresenceChange(identity_id, online=False, at=seen_at)

    def is_online(self, identity_id: str) -> bool:
        with self._lock:
            return bool(self._handles.get(identity_id))

    def handles(self, identity_id: str) -> frozenset[str]:
        with self._lock:
            return frozenset(self._handles.get(identity_id, ()))

    def connection_count(self, identity_id: str | None = None) -> int:
        """Handles held by one identity, or by everyone when ``identity_id`` is None."""
        with self._lock:
            if identity_id is not None:
                return len(self._handles.get(identity_id, ()))
            return sum(len(h) for h in self._handles.values())

    def online_identities(self) -> list[str]:
        with self._lock:
            return sorted(self._handles)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "online": len(self._handles),
                "connections": sum(len(h) for h in self._handles.values()),
            }

    def clear(self) -> None:
        with self._lock:
            self._handles.clear()


# --- Global singleton ---

_registry: PresenceRegistry | None = None


def get_presence_registry() -> PresenceRegistry:
    """Get the process-wide registry, created on first use."""
    global _registry
    if _registry is None:
        _registry = PresenceRegistry()
    return _registry


def set_presence_registry(registry: PresenceRegistry) -> None:
    global _registry
    _registry = registry


def reset_presence_registry() -> None:
    """Reset the global registry (for testing)."""
    global _registry
    _registry = None
