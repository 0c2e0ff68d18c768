"""Notification sinks for recipients who should hear about an event.

The messaging service writes to a sink and never reads from it. Delivery is
fire-and-forget: ``notify`` logs and counts failures but never raises, so a
broken sink cannot fail the operation that triggered it.

Sinks:
    - DatabaseNotificationSink stores rows in the ``notifications`` table
    - InMemoryNotificationSink keeps a list (tests, local runs)
    - WebhookNotificationSink POSTs each notification as JSON with httpx
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any

import httpx

from . import db
from .metrics import metrics

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT = 5.0


@dataclass
class Notification:
    type: str
    title: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


class NotificationSink(ABC):
    """Where notifications for a recipient are enqueued."""

    @abstractmethod
    async def enqueue(self, recipient_id: str, notification: Notification) -> str:
        """Store or forward one notification. Returns its ID."""

    async def close(self) -> None:
        """Release any resources held by the sink."""


class InMemoryNotificationSink(NotificationSink):
    def __init__(self) -> None:
        self.items: list[tuple[str, str, Notification]] = []

    async def enqueue(self, recipient_id: str, notification: Notification) -> str:
        notification_id = db.new_id()
        self.items.append((notification_id, recipient_id, notification))
        return notification_id

    def for_recipient(self, recipient_id: str) -> list[Notification]:
        return [n for _, r, n in self.items if r == recipient_id]

    def clear(self) -> None:
        self.items.clear()


class DatabaseNotificationSink(NotificationSink):
    """Writes to the notifications table through the store executor."""

    async def enqueue(self, recipient_id: str, notification: Notification) -> str:
        from .service import run_store

        return await run_store(
            db.insert_notification,
            recipient_id,
            notification.type,
            notification.title,
            notification.message,
            notification.data,
        )


class WebhookNotificationSink(NotificationSink):
    """POSTs ``{"notification_id", "recipient_id", "type", ...}`` to a URL."""

    def __init__(
        self,
        url: str,
        timeout: float = WEBHOOK_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def enqueue(self, recipient_id: str, notification: Notification) -> str:
        notification_id = db.new_id()
        response = await self._client.post(
            self.url,
            json={
                "notification_id": notification_id,
                "recipient_id": recipient_id,
                **notification.to_dict(),
            },
        )
        response.raise_for_status()
        return notification_id

    async def close(self) -> None:
        await self._client.aclose()


async def notify(
    sink: NotificationSink,
    recipient_id: str,
    notification: Notification,
) -> str | None:
    """Enqueue without ever raising. Returns the ID, or None on failure."""
    try:
        notification_id = await sink.enqueue(recipient_id, notification)
    except Exception:
        metrics.record_notification("failed")
        logger.warning(
            "Failed to enqueue %s notification for %s",
            notification.type,
            recipient_id,
            exc_info=True,
        )
        return None
    metrics.record_notification("enqueued")
    return notification_id


def create_sink(kind: str = "database", webhook_url: str | None = None) -> NotificationSink:
    """Build a sink from its configured name."""
    if kind == "database":
        return DatabaseNotificationSink()
    if kind == "memory":
        return InMemoryNotificationSink()
    if kind == "webhook":
        if not webhook_url:
            raise ValueError("notification_webhook_url is required for the webhook sink")
        return WebhookNotificationSink(webhook_url)
    raise ValueError(f"Unknown notification sink: {kind!r}")
