"""Closed vocabularies for conversations, messages and events.

Everything that used to be a free-form string (message kind, status,
reaction, event name) is an Enum here, and every mapping keyed by one of
these enums is checked for exhaustiveness at import time.
"""

from __future__ import annotations

from enum import Enum

# Bounds carried over from the original data model
MAX_CONTENT_LENGTH = 2000
MAX_GROUP_NAME_LENGTH = 100
MAX_GROUP_DESCRIPTION_LENGTH = 500
MIN_GROUP_PARTICIPANTS = 3


class ConversationKind(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    FILE = "file"
    AUDIO = "audio"
    LOCATION = "location"
    CONTACT = "contact"

    @property
    def carries_media(self) -> bool:
        """True for kinds whose payload is an uploaded media reference."""
        return _CARRIES_MEDIA[self]

    @property
    def editable(self) -> bool:
        return self is MessageKind.TEXT

    def preview(self, content: str | None) -> str:
        """Short text used in notifications and conversation listings."""
        text = (content or "").strip()
        if self is MessageKind.TEXT and text:
            return text if len(text) <= 80 else text[:77] + "..."
        return _PREVIEWS[self]


_CARRIES_MEDIA: dict[MessageKind, bool] = {
    MessageKind.TEXT: False,
    MessageKind.IMAGE: True,
    MessageKind.VIDEO: True,
    MessageKind.FILE: True,
    MessageKind.AUDIO: True,
    MessageKind.LOCATION: False,
    MessageKind.CONTACT: False,
}

_PREVIEWS: dict[MessageKind, str] = {
    MessageKind.TEXT: "sent you a message",
    MessageKind.IMAGE: "sent a photo",
    MessageKind.VIDEO: "sent a video",
    MessageKind.FILE: "sent a file",
    MessageKind.AUDIO: "sent a voice message",
    MessageKind.LOCATION: "shared a location",
    MessageKind.CONTACT: "shared a contact",
}


class MessageStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


# FAILED sits outside the forward chain; it is reachable only from SENDING.
_STATUS_RANK: dict[MessageStatus, int] = {
    MessageStatus.SENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
    MessageStatus.FAILED: -1,
}


def can_transition(current: MessageStatus, target: MessageStatus) -> bool:
    """Whether the aggregate status may move from ``current`` to ``target``."""
    if current is MessageStatus.FAILED:
        return False
    if target is MessageStatus.FAILED:
        return current is MessageStatus.SENDING
    return target.rank > current.rank


def statuses_below(target: MessageStatus) -> tuple[str, ...]:
    """Status values a row may hold for an update to ``target`` to apply.

    Used to build update-with-predicate statements in the message store.
    """
    return tuple(s.value for s in MessageStatus if can_transition(s, target))


class ReactionKind(str, Enum):
    LIKE = "like"
    LOVE = "love"
    HAHA = "haha"
    WOW = "wow"
    SAD = "sad"
    ANGRY = "angry"


class ReceiptKind(str, Enum):
    DELIVERED = "delivered"
    READ = "read"


class Event(str, Enum):
    """Names of events emitted to connected clients."""

    CONVERSATION_JOINED = "conversation:joined"
    CONVERSATION_LEFT = "conversation:left"
    CONVERSATION_UPDATED = "conversation:updated"
    MESSAGE_NEW = "message:new"
    MESSAGE_STATUS_UPDATE = "message:status-update"
    MESSAGE_REACTION_UPDATE = "message:reaction-update"
    MESSAGE_EDITED = "message:edited"
    MESSAGE_DELETED = "message:deleted"
    TYPING_START = "typing:start"
    TYPING_STOP = "typing:stop"
    PRESENCE_STATUS_CHANGE = "presence:status-change"
    TOPIC_MESSAGE = "topic:message"
    ERROR = "error"


# Group-wide settings and the per-participant flags an identity may set on itself
GROUP_SETTINGS = (
    "name",
    "description",
    "only_admins_can_send",
    "allow_media",
    "allow_replies",
    "allow_reactions",
    "allow_forwarding",
)
PARTICIPANT_SETTINGS = ("muted", "pinned", "archived", "blocked")


def _check_exhaustive() -> None:
    for name, mapping, enum in (
        ("_CARRIES_MEDIA", _CARRIES_MEDIA, MessageKind),
        ("_PREVIEWS", _PREVIEWS, MessageKind),
        ("_STATUS_RANK", _STATUS_RANK, MessageStatus),
    ):
        missing = set(enum) - set(mapping)
        if missing:
            raise RuntimeError(f"{name} is missing {sorted(m.value for m in missing)}")


_check_exhaustive()
