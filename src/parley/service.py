"""Messaging service: the single entry point for every client operation.

Each operation follows the same order:
    1. authorize and mutate through the stores (off the event loop)
    2. emit events through the channel router
    3. enqueue notifications for recipients who are not connected

Store calls run in an executor with bounded retries and a timeout, so a
stuck store surfaces as TransientStoreError instead of hanging a handler.
Emission and notification failures are logged and never undo or fail an
operation whose mutation already committed.

Fan-out of conversation events goes to the conversation channel first.
Participants with no connection in that channel get the event on their
personal identity channel instead, so a connected client sees new activity
in conversations it has not opened.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, TypeVar

from . import conversations, db, messages
from .channels import (
    ChannelRouter,
    Connection,
    conversation_channel,
    get_channel_router,
    parse_channel,
    topic_channel,
)
from .config import ParleyConfig, get_config
from .errors import PermissionDeniedError, TransientStoreError, ValidationError
from .models import PARTICIPANT_SETTINGS, Event, MessageKind, MessageStatus
from .notifications import Notification, NotificationSink, create_sink, notify
from .presence import PresenceChange, PresenceRegistry, get_presence_registry

logger = logging.getLogger(__name__)

T = TypeVar("T")

# --- Store executor ---

_store_executor: ThreadPoolExecutor | None = None
_executor_chosen = False


def get_store_executor() -> ThreadPoolExecutor | None:
    """Executor for store calls.

    The shared in-memory database uses table-level locks across
    connections, so its calls are serialized on one worker thread. File
    databases use the default thread pool.
    """
    global _store_executor, _executor_chosen
    if _executor_chosen:
        return _store_executor
    if os.environ.get("PARLEY_DB", ":memory:") == ":memory:":
        _store_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="parley-store")
        logger.info("Using serialized store executor for in-memory database")
    _executor_chosen = True
    return _store_executor


def reset_store_executor() -> None:
    global _store_executor, _executor_chosen
    if _store_executor is not None:
        _store_executor.shutdown(wait=False)
    _store_executor = None
    _executor_chosen = False


async def run_store(
    fn: Callable[..., T],
    *args: Any,
    attempts: int = db.DEFAULT_RETRY_ATTEMPTS,
    timeout: float | None = None,
    **kwargs: Any,
) -> T:
    """Run a blocking store call off the event loop with retry and timeout."""
    loop = asyncio.get_running_loop()
    call = functools.partial(db.run_with_retry, functools.partial(fn, *args, **kwargs), attempts)
    future = loop.run_in_executor(get_store_executor(), call)
    try:
        return await asyncio.wait_for(future, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransientStoreError(f"Store call {fn.__name__} timed out after {timeout}s") from e


async def participant_authorizer(identity_id: str, channel: str) -> None:
    """Channel join check used by the default router.

    Conversation channels need a participant; identity channels are private
    to their owner; topic channels are open to any connected identity.
    """
    kind, key = parse_channel(channel)
    if kind == "conversation":
        await run_store(conversations.require_participant, key, identity_id)
    elif kind == "identity" and key != identity_id:
        raise PermissionDeniedError("Cannot join another identity's channel")


class MessagingService:
    """Orchestrates stores, the channel router, presence and notifications."""

    def __init__(
        self,
        router: ChannelRouter | None = None,
        presence: PresenceRegistry | None = None,
        sink: NotificationSink | None = None,
        config: ParleyConfig | None = None,
    ) -> None:
        self.config = config or get_config()
        self.router = router or get_channel_router()
        self.presence = presence or get_presence_registry()
        self.sink = sink or create_sink(
            self.config.notification_sink, self.config.notification_webhook_url
        )

    async def _store(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await run_store(
            fn,
            *args,
            attempts=self.config.store_retry_attempts,
            timeout=self.config.store_timeout_seconds,
            **kwargs,
        )

    # --- Emission helpers ---

    async def _fan_out(
        self,
        conversation_id: str,
        event: Event,
        payload: dict[str, Any],
        participants: frozenset[str] | set[str] | None = None,
        exclude: Connection | None = None,
    ) -> set[str]:
        """Emit a conversation event. Returns the participants it reached."""
        try:
            if participants is None:
                participants = await self._store(conversations.participant_ids, conversation_id)
            channel = conversation_channel(conversation_id)
            await self.router.emit_to_channel(channel, event.value, payload, exclude=exclude)

            in_channel = {c.identity_id for c in self.router.members(channel)}
            reached = set(in_channel & set(participants))
            for identity_id in set(participants) - in_channel:
                if await self.router.emit_to_identity(identity_id, event.value, payload):
                    reached.add(identity_id)
            return reached
        except Exception:
            logger.warning("Failed to emit %s for %s", event.value, conversation_id, exc_info=True)
            return set()

    async def _emit_to_identity(self, identity_id: str, event: Event, payload: dict) -> None:
        try:
            await self.router.emit_to_identity(identity_id, event.value, payload)
        except Exception:
            logger.warning("Failed to emit %s to %s", event.value, identity_id, exc_info=True)

    async def _conversation_updated(
        self,
        conversation_id: str,
        change: str,
        also_notify: list[str] | None = None,
        **details: Any,
    ) -> None:
        payload = {"conversation_id": conversation_id, "change": change, **details}
        reached = await self._fan_out(conversation_id, Event.CONVERSATION_UPDATED, payload)
        for identity_id in also_notify or ():
            if identity_id not in reached:
                await self._emit_to_identity(identity_id, Event.CONVERSATION_UPDATED, payload)

    # --- Connection lifecycle ---

    async def connect(self, connection: Connection) -> PresenceChange | None:
        """Register an authenticated connection and auto-join its identity channel."""
        self.router.attach(connection)
        change = self.presence.register(connection.identity_id, connection.handle)
        if change is not None:
            await self._broadcast_presence(change)
        return change

    async def disconnect(self, connection: Connection) -> PresenceChange | None:
        """Forget a connection; the identity goes offline with its last handle."""
        self.router.detach(connection)
        change = self.presence.unregister(connection.identity_id, connection.handle)
        if change is None:
            return None
        try:
            await self._store(db.touch_last_seen, change.identity_id, change.at)
        except Exception:
            logger.warning("Failed to persist last seen for %s", change.identity_id, exc_info=True)
        await self._broadcast_presence(change)
        return change

    async def _broadcast_presence(self, change: PresenceChange) -> None:
        """Tell everyone who shares a conversation with the identity."""
        try:
            contacts = await self._store(conversations.contacts_of, change.identity_id)
            await self.router.emit_to_identities(
                contacts, Event.PRESENCE_STATUS_CHANGE.value, change.to_event()
            )
        except Exception:
            logger.warning(
                "Failed to broadcast presence for %s", change.identity_id, exc_info=True
            )

    async def join(self, connection: Connection, conversation_id: str) -> dict:
        """Subscribe a connection to a conversation channel (participants only)."""
        await self.router.join(connection, conversation_channel(conversation_id))
        conversation = await self._store(
            conversations.get_conversation, conversation_id, connection.identity_id
        )
        await connection.send(
            Event.CONVERSATION_JOINED.value, {"conversation_id": conversation_id}
        )
        return conversation

    async def leave(self, connection: Connection, conversation_id: str) -> bool:
        left = self.router.leave(connection, conversation_channel(conversation_id))
        await connection.send(Event.CONVERSATION_LEFT.value, {"conversation_id": conversation_id})
        return left

    async def subscribe_topic(self, connection: Connection, topic: str) -> bool:
        if not topic:
            raise ValidationError("Topic name is required")
        return await self.router.join(connection, topic_channel(topic))

    async def unsubscribe_topic(self, connection: Connection, topic: str) -> bool:
        return self.router.leave(connection, topic_channel(topic))

    async def publish_topic(
        self,
        connection: Connection,
        topic: str,
        data: dict[str, Any],
    ) -> int:
        """Ephemeral fan-out to a topic channel; nothing is stored."""
        channel = topic_channel(topic)
        if connection.handle not in {c.handle for c in self.router.members(channel)}:
            raise PermissionDeniedError(f"Subscribe to topic {topic!r} before publishing")
        return await self.router.emit_to_channel(
            channel,
            Event.TOPIC_MESSAGE.value,
            {"topic": topic, "identity_id": connection.identity_id, "data": data},
            exclude=connection,
        )

    async def typing(self, connection: Connection, conversation_id: str, started: bool) -> None:
        """Relay a typing indicator to the conversation; never persisted."""
        if not await self._store(
            conversations.is_participant, conversation_id, connection.identity_id
        ):
            raise PermissionDeniedError("Not a participant of this conversation")
        event = Event.TYPING_START if started else Event.TYPING_STOP
        await self.router.emit_to_channel(
            conversation_channel(conversation_id),
            event.value,
            {"conversation_id": conversation_id, "identity_id": connection.identity_id},
            exclude=connection,
        )

    # --- Conversations ---

    async def get_conversation(self, identity_id: str, conversation_id: str) -> dict:
        await self._store(conversations.require_participant, conversation_id, identity_id)
        return await self._store(conversations.get_conversation, conversation_id, identity_id)

    async def list_conversations(
        self,
        identity_id: str,
        include_archived: bool = False,
        search: str | None = None,
        page: int = 1,
        limit: int = conversations.DEFAULT_PAGE_SIZE,
    ) -> dict:
        if limit > self.config.max_page_size:
            raise ValidationError(f"limit must be at most {self.config.max_page_size}")
        return await self._store(
            conversations.list_for_identity,
            identity_id,
            include_archived=include_archived,
            search=search,
            page=page,
            limit=limit,
        )

    async def open_direct(self, identity_id: str, other_id: str) -> tuple[dict, bool]:
        conversation, created = await self._store(
            conversations.find_or_create_direct, identity_id, other_id
        )
        if created:
            payload = {"conversation_id": conversation["conversation_id"], "change": "created"}
            for member in conversation["participants"]:
                await self._emit_to_identity(member, Event.CONVERSATION_UPDATED, payload)
        return conversation, created

    async def create_group(
        self,
        identity_id: str,
        participants: list[str],
        name: str | None = None,
        description: str | None = None,
    ) -> dict:
        conversation = await self._store(
            conversations.create_group, identity_id, participants, name, description
        )
        payload = {"conversation_id": conversation["conversation_id"], "change": "created"}
        for member in conversation["participants"]:
            await self._emit_to_identity(member, Event.CONVERSATION_UPDATED, payload)
        return conversation

    async def add_participant(self, identity_id: str, conversation_id: str, target: str) -> bool:
        added = await self._store(
            conversations.add_participant, identity_id, conversation_id, target
        )
        if added:
            await self._conversation_updated(
                conversation_id, "participant_added", identity_id=target, actor_id=identity_id
            )
        return added

    async def remove_participant(self, identity_id: str, conversation_id: str, target: str) -> None:
        await self._store(conversations.remove_participant, identity_id, conversation_id, target)
        self.router.unsubscribe_identity(target, conversation_channel(conversation_id))
        await self._conversation_updated(
            conversation_id,
            "participant_removed",
            also_notify=[target],
            identity_id=target,
            actor_id=identity_id,
        )

    async def add_admin(self, identity_id: str, conversation_id: str, target: str) -> bool:
        added = await self._store(conversations.add_admin, identity_id, conversation_id, target)
        if added:
            await self._conversation_updated(
                conversation_id, "admin_added", identity_id=target, actor_id=identity_id
            )
        return added

    async def remove_admin(self, identity_id: str, conversation_id: str, target: str) -> bool:
        removed = await self._store(
            conversations.remove_admin, identity_id, conversation_id, target
        )
        if removed:
            await self._conversation_updated(
                conversation_id, "admin_removed", identity_id=target, actor_id=identity_id
            )
        return removed

    async def pin_message(self, identity_id: str, conversation_id: str, mid: str) -> dict:
        pin = await self._store(conversations.pin_message, identity_id, conversation_id, mid)
        await self._conversation_updated(conversation_id, "message_pinned", **pin)
        return pin

    async def unpin_message(self, identity_id: str, conversation_id: str, mid: str) -> None:
        await self._store(conversations.unpin_message, identity_id, conversation_id, mid)
        await self._conversation_updated(
            conversation_id, "message_unpinned", mid=mid, actor_id=identity_id
        )

    async def update_settings(
        self,
        identity_id: str,
        conversation_id: str,
        patch: dict[str, Any],
    ) -> dict:
        conversation = await self._store(
            conversations.update_settings, identity_id, conversation_id, patch
        )
        own = {k: v for k, v in patch.items() if k in PARTICIPANT_SETTINGS}
        shared = {k: v for k, v in patch.items() if k not in own}
        if shared:
            await self._conversation_updated(
                conversation_id, "settings", settings=shared, actor_id=identity_id
            )
        if own:
            await self._emit_to_identity(
                identity_id,
                Event.CONVERSATION_UPDATED,
                {"conversation_id": conversation_id, "change": "own_settings", "settings": own},
            )
        return conversation

    # --- Messages ---

    async def send(
        self,
        identity_id: str,
        conversation_id: str,
        content: str | None,
        kind: MessageKind | str = MessageKind.TEXT,
        media: dict[str, Any] | None = None,
        reply_to: str | None = None,
        client_message_id: str | None = None,
        expires_at: str | None = None,
    ) -> dict:
        """Persist, confirm and deliver a new message.

        A retried send with the same ``client_message_id`` returns the stored
        message. If an earlier attempt stopped before confirming or
        announcing it, the retry finishes that work; a ``failed`` message is
        returned as-is.
        """
        message, created = await self._store(
            messages.send_message,
            identity_id,
            conversation_id,
            content,
            kind=kind,
            media=media,
            reply_to=reply_to,
            client_message_id=client_message_id,
            expires_at=expires_at,
            max_length=self.config.max_content_length,
        )
        if not created and message["status"] is MessageStatus.FAILED:
            return message
        return await self._deliver_new(message)

    async def _deliver_new(self, message: dict) -> dict:
        mid = message["mid"]
        if message["status"] is MessageStatus.SENDING:
            try:
                message["status"] = await self._store(messages.confirm_sent, mid)
            except TransientStoreError:
                # Still ``sending``: a retry with the same client_message_id confirms it
                logger.warning("Could not confirm message %s yet", mid, exc_info=True)
                raise
            except Exception:
                logger.error("Could not confirm message %s; marking failed", mid, exc_info=True)
                try:
                    failed = await self._store(messages.mark_failed, mid)
                except Exception:
                    logger.warning("Could not mark message %s failed", mid, exc_info=True)
                    failed = False
                if failed:
                    await self._emit_to_identity(
                        message["sender_id"],
                        Event.MESSAGE_STATUS_UPDATE,
                        {
                            "mid": mid,
                            "conversation_id": message["conversation_id"],
                            "status": MessageStatus.FAILED,
                        },
                    )
                raise

        if not await self._store(messages.claim_announcement, mid):
            return message

        participants = await self._store(
            conversations.list_participants, message["conversation_id"]
        )
        await self._fan_out(
            message["conversation_id"],
            Event.MESSAGE_NEW,
            {"message": message},
            participants=frozenset(p["identity_id"] for p in participants),
        )
        await self._notify_offline(message, participants)
        return message

    async def _notify_offline(self, message: dict, participants: list[dict]) -> None:
        """Enqueue notifications for recipients with no live connection."""
        kind = MessageKind(message["kind"])
        preview = kind.preview(message["content"])
        for participant in participants:
            recipient = participant["identity_id"]
            if recipient == message["sender_id"] or participant["muted"]:
                continue
            if self.presence.is_online(recipient):
                continue
            await notify(
                self.sink,
                recipient,
                Notification(
                    type="message",
                    title=f"New message from {message['sender_id']}",
                    message=preview,
                    data={
                        "conversation_id": message["conversation_id"],
                        "mid": message["mid"],
                        "sender_id": message["sender_id"],
                    },
                ),
            )

    async def _emit_receipts(self, updates: list[dict]) -> None:
        for update in updates:
            await self._fan_out(
                update["conversation_id"],
                Event.MESSAGE_STATUS_UPDATE,
                {
                    "mid": update["mid"],
                    "conversation_id": update["conversation_id"],
                    "status": update["status"],
                    "identity_id": update["identity_id"],
                    "receipt": update["receipt"],
                    "at": update["at"],
                },
            )

    async def mark_delivered(self, identity_id: str, mids: list[str]) -> list[dict]:
        updates = await self._store(messages.mark_delivered, identity_id, mids)
        await self._emit_receipts(updates)
        return updates

    async def mark_read(
        self,
        identity_id: str,
        conversation_id: str,
        mids: list[str] | None = None,
    ) -> list[dict]:
        """Mark messages read; with no ``mids`` everything unread in the conversation."""
        if mids is None:
            updates = await self._store(
                messages.mark_conversation_read, identity_id, conversation_id
            )
        else:
            await self._store(conversations.require_participant, conversation_id, identity_id)
            updates = await self._store(messages.mark_read, identity_id, mids, conversation_id)
        await self._emit_receipts(updates)

        participant = await self._store(
            conversations.get_participant, conversation_id, identity_id
        )
        if participant is not None:
            await self._emit_to_identity(
                identity_id,
                Event.CONVERSATION_UPDATED,
                {
                    "conversation_id": conversation_id,
                    "change": "read",
                    "unread_count": participant["unread_count"],
                },
            )
        return updates

    async def _emit_reaction(self, identity_id: str, result: dict) -> None:
        if result["action"] == "unchanged":
            return
        await self._fan_out(
            result["conversation_id"],
            Event.MESSAGE_REACTION_UPDATE,
            {
                "mid": result["mid"],
                "conversation_id": result["conversation_id"],
                "identity_id": identity_id,
                "action": result["action"],
                "reactions": result["reactions"],
                "reaction_counts": result["reaction_counts"],
            },
        )
        author = result["sender_id"]
        if result["action"] in ("added", "replaced") and author != identity_id:
            if not self.presence.is_online(author):
                await notify(
                    self.sink,
                    author,
                    Notification(
                        type="reaction",
                        title="New reaction",
                        message=f"{identity_id} reacted to your message",
                        data={"conversation_id": result["conversation_id"], "mid": result["mid"]},
                    ),
                )

    async def react(self, identity_id: str, mid: str, reaction: str) -> dict:
        result = await self._store(messages.add_reaction, identity_id, mid, reaction)
        await self._emit_reaction(identity_id, result)
        return result

    async def unreact(self, identity_id: str, mid: str, reaction: str | None = None) -> dict:
        result = await self._store(messages.remove_reaction, identity_id, mid, reaction)
        await self._emit_reaction(identity_id, result)
        return result

    async def toggle_reaction(self, identity_id: str, mid: str, reaction: str) -> dict:
        result = await self._store(messages.toggle_reaction, identity_id, mid, reaction)
        await self._emit_reaction(identity_id, result)
        return result

    async def edit(self, identity_id: str, mid: str, content: str) -> dict:
        message = await self._store(
            messages.edit_message,
            identity_id,
            mid,
            content,
            max_length=self.config.max_content_length,
        )
        await self._fan_out(message["conversation_id"], Event.MESSAGE_EDITED, {"message": message})
        return message

    async def delete(self, identity_id: str, mid: str, for_everyone: bool = False) -> dict:
        """Delete for everyone (sender only) or hide for the caller alone."""
        result = await self._store(messages.delete_message, identity_id, mid, for_everyone)
        if for_everyone:
            await self._fan_out(result["conversation_id"], Event.MESSAGE_DELETED, result)
        else:
            await self._emit_to_identity(identity_id, Event.MESSAGE_DELETED, result)
        return result

    async def forward(
        self,
        identity_id: str,
        mid: str,
        target_conversation_ids: list[str],
    ) -> list[dict]:
        """Forward into each target. Every target is checked before any copy is made."""
        targets = list(dict.fromkeys(target_conversation_ids))
        if not targets:
            raise ValidationError("At least one target conversation is required")
        for target in targets:
            await self._store(conversations.require_participant, target, identity_id)

        forwarded = []
        for target in targets:
            message = await self._store(messages.forward_message, identity_id, mid, target)
            forwarded.append(await self._deliver_new(message))
        return forwarded

    async def history(
        self,
        identity_id: str,
        conversation_id: str,
        before: str | None = None,
        after: str | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        limit = limit or self.config.history_page_size
        if limit > self.config.max_page_size:
            raise ValidationError(f"limit must be at most {self.config.max_page_size}")
        return await self._store(
            messages.get_history, conversation_id, identity_id, before, after, limit
        )

    async def search(
        self,
        identity_id: str,
        query: str,
        conversation_id: str | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        limit = limit or self.config.history_page_size
        if limit > self.config.max_page_size:
            raise ValidationError(f"limit must be at most {self.config.max_page_size}")
        return await self._store(
            messages.search_messages, identity_id, query, conversation_id, limit
        )

    async def get_message(self, identity_id: str, mid: str) -> dict:
        row, _, _ = await self._store(messages.require_visible, mid, identity_id)
        return await self._store(messages.get_message, row["mid"], identity_id)

    async def expire_messages(self, now: str | None = None, limit: int = 1000) -> list[dict]:
        """Soft-delete expired messages and tell each conversation."""
        expired = await self._store(messages.expire_messages, now, limit)
        for item in expired:
            await self._fan_out(
                item["conversation_id"],
                Event.MESSAGE_DELETED,
                {
                    "mid": item["mid"],
                    "conversation_id": item["conversation_id"],
                    "for_everyone": True,
                    "expired": True,
                },
            )
        if expired:
            logger.info("Expired %d messages", len(expired))
        return expired

    # --- Resync and presence ---

    async def sync(
        self,
        identity_id: str,
        cursors: dict[str, str | None] | None = None,
    ) -> dict[str, dict]:
        """Conversations with messages newer than the caller's cursors.

        ``cursors`` maps conversation_id -> last seen message ID (None for
        never seen). Conversations the caller belongs to but did not list
        are treated as never seen; IDs it does not belong to are ignored.
        Message IDs are UUIDv7, so string order is creation order.
        """
        cursors = cursors or {}
        unread = await self._store(conversations.unread_counts, identity_id)
        latest = await self._store(messages.latest_message_ids, list(unread))

        changes: dict[str, dict] = {}
        for conversation_id, latest_mid in latest.items():
            last_seen = cursors.get(conversation_id)
            if last_seen is None or latest_mid > last_seen:
                changes[conversation_id] = {
                    "latest_mid": latest_mid,
                    "unread_count": unread[conversation_id],
                }
        return changes

    async def presence_of(self, identity_ids: list[str]) -> dict[str, dict]:
        """Online status and last-seen time for each identity."""
        offline = [i for i in identity_ids if not self.presence.is_online(i)]
        last_seen = await self._store(db.get_last_seen, offline) if offline else {}
        result = {}
        for identity_id in identity_ids:
            if identity_id in last_seen:
                result[identity_id] = {"status": "offline", "last_seen": last_seen[identity_id]}
            else:
                result[identity_id] = {"status": "online", "last_seen": None}
        return result

    # --- Notifications ---

    async def list_notifications(self, identity_id: str, unread_only: bool = False) -> list[dict]:
        return await self._store(db.list_notifications, identity_id, unread_only)

    async def mark_notification_read(self, identity_id: str, notification_id: str) -> bool:
        return await self._store(db.mark_notification_read, identity_id, notification_id)

    async def close(self) -> None:
        await self.sink.close()


# --- Global singleton ---

_service: MessagingService | None = None


def get_messaging_service() -> MessagingService:
    global _service
    if _service is None:
        _service = MessagingService()
    return _service


def set_messaging_service(service: MessagingService) -> None:
    global _service
    _service = service


def reset_messaging_service() -> None:
    """Reset the global service (for testing)."""
    global _service
    _service = None
