"""parley - Direct and group messaging with real-time delivery.

Usage:
    from parley import MessagingService, QueueConnection

    service = MessagingService()
    conversation, _ = await service.open_direct(alice_id, bob_id)

    connection = QueueConnection(bob_id)
    await service.connect(connection)
    await service.join(connection, conversation["conversation_id"])

    await service.send(alice_id, conversation["conversation_id"], "Hello!")
    event, payload = await connection.next_event()   # ("message:new", {...})

Run the HTTP/WebSocket server with ``parley serve``.
"""

from parley._version import __version__
from parley.channels import ChannelRouter, Connection, InMemoryChannelRouter, QueueConnection
from parley.errors import (
    AuthError,
    ConflictError,
    MessagingError,
    NotFoundError,
    PermissionDeniedError,
    TransientStoreError,
    ValidationError,
)
from parley.models import ConversationKind, Event, MessageKind, MessageStatus, ReactionKind
from parley.service import MessagingService

__all__ = [
    "__version__",
    "MessagingService",
    "ChannelRouter",
    "InMemoryChannelRouter",
    "Connection",
    "QueueConnection",
    "ConversationKind",
    "MessageKind",
    "MessageStatus",
    "ReactionKind",
    "Event",
    "MessagingError",
    "ValidationError",
    "PermissionDeniedError",
    "NotFoundError",
    "ConflictError",
    "TransientStoreError",
    "AuthError",
]
