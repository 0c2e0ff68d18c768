"""Channel router: real-time fan-out to connected clients.

Connections are grouped into named channels:
    - "conversation:{conversation_id}" joined explicitly, participants only
    - "identity:{identity_id}" joined automatically on attach, used for
      delivery to every device of one identity
    - "topic:{name}" ephemeral fan-out with nothing persisted

Architecture:
    - Connection ABC wraps one client transport (WebSocket, in-memory queue)
    - ChannelRouter ABC defines membership and emission (swappable for a
      shared broker later)
    - InMemoryChannelRouter keeps membership in dicts and sends with
      asyncio.gather, dropping connections whose send fails

All router state is touched from the event loop only.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from .db import new_id, utc_now
from .errors import PermissionDeniedError, ValidationError
from .metrics import metrics

logger = logging.getLogger(__name__)

CONVERSATION_PREFIX = "conversation:"
IDENTITY_PREFIX = "identity:"
TOPIC_PREFIX = "topic:"

Authorizer = Callable[[str, str], Awaitable[None]]


def conversation_channel(conversation_id: str) -> str:
    return f"{CONVERSATION_PREFIX}{conversation_id}"


def identity_channel(identity_id: str) -> str:
    return f"{IDENTITY_PREFIX}{identity_id}"


def topic_channel(name: str) -> str:
    return f"{TOPIC_PREFIX}{name}"


def parse_channel(channel: str) -> tuple[str, str]:
    """Split a channel name into (kind, key); kind is conversation, identity or topic."""
    for prefix in (CONVERSATION_PREFIX, IDENTITY_PREFIX, TOPIC_PREFIX):
        if channel.startswith(prefix) and len(channel) > len(prefix):
            return prefix[:-1], channel[len(prefix):]
    raise ValidationError(f"Invalid channel name: {channel!r}")


class ConnectionClosedError(Exception):
    """Raised by Connection.send when the transport is gone."""


class Connection(ABC):
    """One authenticated client transport."""

    def __init__(self, identity_id: str, handle: str | None = None) -> None:
        self.identity_id = identity_id
        self.handle = handle or new_id()
        self.connected_at = utc_now()

    @abstractmethod
    async def send(self, event: str, payload: dict[str, Any]) -> None:
        """Deliver one event. Raises ConnectionClosedError if the transport is gone."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.identity_id}/{self.handle}>"


class QueueConnection(Connection):
    """Connection that buffers events in an asyncio.Queue.

    Used by tests and by in-process consumers.
    """

    def __init__(self, identity_id: str, handle: str | None = None) -> None:
        super().__init__(identity_id, handle)
        self.queue: asyncio.Queue[tuple[str, dict]] = asyncio.Queue()
        self.closed = False

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionClosedError(self.handle)
        await self.queue.put((event, payload))

    async def next_event(self, timeout: float = 1.0) -> tuple[str, dict]:
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)

    def drain(self) -> list[tuple[str, dict]]:
        """Return and clear everything buffered so far."""
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def events_named(self, event: str) -> list[dict]:
        """Drain and keep only payloads of one event type."""
        return [payload for name, payload in self.drain() if name == event]

    def close(self) -> None:
        self.closed = True


async def allow_all(identity_id: str, channel: str) -> None:
    """Authorizer that only enforces personal channel ownership."""
    kind, key = parse_channel(channel)
    if kind == "identity" and key != identity_id:
        raise PermissionDeniedError("Cannot join another identity's channel")


class ChannelRouter(ABC):
    """Abstract channel router."""

    @abstractmethod
    def attach(self, connection: Connection) -> None:
        """Track a new connection and join it to its identity channel."""

    @abstractmethod
    def detach(self, connection: Connection) -> list[str]:
        """Forget a connection. Returns the channels it was removed from."""

    @abstractmethod
    async def join(self, connection: Connection, channel: str) -> bool:
        """Join a channel after authorization. Returns False if already a member.

        Raises:
            PermissionDeniedError / NotFoundError: The join is not allowed.
        """

    @abstractmethod
    def leave(self, connection: Connection, channel: str) -> bool:
        """Leave a channel. Returns False if not a member."""

    @abstractmethod
    def members(self, channel: str) -> list[Connection]:
        """Current member connections of a channel."""

    @abstractmethod
    def channels_of(self, connection: Connection) -> set[str]:
        """Channels a connection belongs to."""

    @abstractmethod
    async def emit_to_channel(
        self,
        channel: str,
        event: str,
        payload: dict[str, Any],
        exclude: Connection | None = None,
    ) -> int:
        """Send to current members. Returns the number of connections reached."""

    async def emit_to_identity(self, identity_id: str, event: str, payload: dict[str, Any]) -> int:
        """Send to every connection of one identity, whatever else it has joined."""
        return await self.emit_to_channel(identity_channel(identity_id), event, payload)

    async def emit_to_identities(
        self,
        identity_ids: set[str] | frozenset[str] | list[str],
        event: str,
        payload: dict[str, Any],
    ) -> int:
        counts = await asyncio.gather(
            *[self.emit_to_identity(i, event, payload) for i in identity_ids]
        )
        return sum(counts)

    def unsubscribe_identity(self, identity_id: str, channel: str) -> int:
        """Remove every connection of ``identity_id`` from ``channel``."""
        removed = 0
        for connection in self.members(channel):
            if connection.identity_id == identity_id and self.leave(connection, channel):
                removed += 1
        return removed


class InMemoryChannelRouter(ChannelRouter):
    """Single-process router.

    ``authorizer`` is awaited before every join and raises to refuse it.
    """

    def __init__(self, authorizer: Authorizer | None = None) -> None:
        self._authorizer = authorizer or allow_all
        self._channels: dict[str, dict[str, Connection]] = {}
        self._memberships: dict[str, set[str]] = {}
        self._connections: dict[str, Connection] = {}

    def _add(self, connection: Connection, channel: str) -> bool:
        members = self._channels.setdefault(channel, {})
        if connection.handle in members:
            return False
        members[connection.handle] = connection
        self._memberships.setdefault(connection.handle, set()).add(channel)
        return True

    def attach(self, connection: Connection) -> None:
        self._connections[connection.handle] = connection
        self._add(connection, identity_channel(connection.identity_id))

    def detach(self, connection: Connection) -> list[str]:
        self._connections.pop(connection.handle, None)
        channels = self._memberships.pop(connection.handle, set())
        for channel in channels:
            members = self._channels.get(channel)
            if members is None:
                continue
            members.pop(connection.handle, None)
            if not members:
                del self._channels[channel]
        return sorted(channels)

    async def join(self, connection: Connection, channel: str) -> bool:
        if connection.handle not in self._connections:
            raise ValidationError("Connection is not attached")
        parse_channel(channel)
        await self._authorizer(connection.identity_id, channel)
        # The connection may have dropped while the authorizer was awaited
        if connection.handle not in self._connections:
            return False
        return self._add(connection, channel)

    def leave(self, connection: Connection, channel: str) -> bool:
        members = self._channels.get(channel)
        if not members or connection.handle not in members:
            return False
        del members[connection.handle]
        if not members:
            del self._channels[channel]
        self._memberships.get(connection.handle, set()).discard(channel)
        return True

    def members(self, channel: str) -> list[Connection]:
        return list(self._channels.get(channel, {}).values())

    def channels_of(self, connection: Connection) -> set[str]:
        return set(self._memberships.get(connection.handle, ()))

    def connection_count(self) -> int:
        return len(self._connections)

    async def emit_to_channel(
        self,
        channel: str,
        event: str,
        payload: dict[str, Any],
        exclude: Connection | None = None,
    ) -> int:
        targets = [
            c for c in self.members(channel) if exclude is None or c.handle != exclude.handle
        ]
        if not targets:
            metrics.record_event(event, 0)
            return 0

        results = await asyncio.gather(
            *[self._safe_send(c, event, payload) for c in targets],
        )
        dead = [c for c, ok in zip(targets, results) if not ok]
        for connection in dead:
            logger.info("Dropping dead connection %r", connection)
            self.detach(connection)

        delivered = len(targets) - len(dead)
        metrics.record_event(event, delivered)
        return delivered

    async def _safe_send(self, connection: Connection, event: str, payload: dict) -> bool:
        try:
            await connection.send(event, payload)
            return True
        except ConnectionClosedError:
            return False
        except Exception:
            logger.warning("Send to %r failed", connection, exc_info=True)
            return False


# --- Global singleton ---

_router: ChannelRouter | None = None


def get_channel_router() -> ChannelRouter:
    """Get the global router, creating one that checks conversation membership."""
    global _router
    if _router is None:
        from .service import participant_authorizer

        _router = InMemoryChannelRouter(authorizer=participant_authorizer)
    return _router


def set_channel_router(router: ChannelRouter) -> None:
    global _router
    _router = router


def reset_channel_router() -> None:
    """Reset the global router (for testing)."""
    global _router
    _router = None
