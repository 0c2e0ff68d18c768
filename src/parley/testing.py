"""Pytest fixtures for testing with parley.

Usage in conftest.py:
    pytest_plugins = ["parley.testing"]

Or import specific fixtures:
    from parley.testing import parley_service, identities

Available fixtures:
    - notification_sink: In-memory notification sink
    - parley_service: MessagingService wired to an in-memory router,
      a fresh presence registry and ``notification_sink``
    - identities: Alice, Bob and Carol as local identities

The helpers at the bottom build conversations and connections without
going through HTTP.
"""

from __future__ import annotations

from typing import Any, Generator

import pytest

from . import db
from .channels import InMemoryChannelRouter, QueueConnection
from .config import ParleyConfig
from .notifications import InMemoryNotificationSink
from .presence import PresenceRegistry
from .service import MessagingService, participant_authorizer


@pytest.fixture
def notification_sink() -> InMemoryNotificationSink:
    return InMemoryNotificationSink()


@pytest.fixture
def parley_service(
    notification_sink: InMemoryNotificationSink,
) -> Generator[MessagingService, None, None]:
    """MessagingService with in-memory collaborators.

    The store is whatever PARLEY_DB points at; the shared test conftest
    resets it before every test.

    Example:
        @pytest.mark.asyncio
        async def test_send(parley_service, identities):
            alice, bob = identities["alice"], identities["bob"]
            conv, _ = await parley_service.open_direct(alice, bob)
            await parley_service.send(alice, conv["conversation_id"], "hi")
    """
    service = MessagingService(
        router=InMemoryChannelRouter(authorizer=participant_authorizer),
        presence=PresenceRegistry(),
        sink=notification_sink,
        config=ParleyConfig(notification_sink="memory"),
    )
    yield service


@pytest.fixture
def identities() -> dict[str, str]:
    """Three local identities. Maps lowercase name -> identity ID."""
    return make_identities(["Alice", "Bob", "Carol"])


# --- Utility Functions ---


def make_identities(names: list[str]) -> dict[str, str]:
    """Create local identities; returns lowercase name -> identity ID."""
    return {
        name.lower(): db.create_identity({"display_name": name})["id"] for name in names
    }


def make_credentials(names: list[str]) -> dict[str, dict[str, Any]]:
    """Create local identities; returns lowercase name -> {id, secret}."""
    return {name.lower(): db.create_identity({"display_name": name}) for name in names}


async def connect(service: MessagingService, identity_id: str) -> QueueConnection:
    """Register a queue-backed connection for an identity."""
    connection = QueueConnection(identity_id)
    await service.connect(connection)
    return connection


async def send_test_messages(
    service: MessagingService,
    sender: str,
    conversation_id: str,
    count: int = 5,
    content_prefix: str = "Message",
) -> list[dict]:
    """Send ``count`` text messages; returns them in send order."""
    sent = []
    for i in range(count):
        sent.append(await service.send(sender, conversation_id, f"{content_prefix} {i + 1}"))
    return sent
