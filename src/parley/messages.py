"""Message store: send, receipts, reactions, edits, deletion, history, search.

Aggregate status is stored on the message row and only ever moves forward
through update-with-predicate statements (see ``models.statuses_below``).
Per-recipient delivery and read receipts are rows keyed by
(mid, identity, kind) and inserted with INSERT OR IGNORE, so acks are
idempotent and may arrive in any order or from several devices at once.

Reactions are one row per (mid, identity). Adding uses an optimistic
insert; a duplicate-key failure means another writer got there first and
is resolved by re-reading the row instead of surfacing a storage error.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any

from . import conversations, db
from .db import _get_conn, _placeholders, _row_to_dict, _rows_to_dicts, new_id, transaction, utc_now
from .errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from .metrics import metrics, timed_db_operation
from .models import (
    MAX_CONTENT_LENGTH,
    ConversationKind,
    MessageKind,
    MessageStatus,
    ReactionKind,
    ReceiptKind,
    statuses_below,
)

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 200

MEDIA_FIELDS = ("url", "filename", "mimetype", "size", "thumbnail", "duration", "width", "height")

_MESSAGE_COLUMNS = """
    m.mid, m.conversation_id, m.sender_id, m.kind, m.content, m.media, m.status,
    m.reply_to_mid, m.forwarded_from_mid, m.forwarded_from_conversation_id,
    m.forwarded_from_sender_id, m.client_message_id, m.edited_at, m.deleted_at,
    m.deleted_by, m.expires_at, m.created_at
"""

# Visibility for a viewer bound to the first two placeholders (now, viewer)
_VISIBLE = """
    m.deleted_at IS NULL
    AND (m.expires_at IS NULL OR m.expires_at > ?)
    AND NOT EXISTS (
        SELECT 1 FROM message_hidden h WHERE h.mid = m.mid AND h.identity_id = ?
    )
"""


def normalize_timestamp(value: str, field: str = "timestamp") -> str:
    """Parse an ISO-8601 timestamp and return it in canonical UTC form."""
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid {field}: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _message_from_row(row: dict) -> dict:
    forwarded_from = None
    if row["forwarded_from_mid"]:
        forwarded_from = {
            "mid": row["forwarded_from_mid"],
            "conversation_id": row["forwarded_from_conversation_id"],
            "sender_id": row["forwarded_from_sender_id"],
        }
    return {
        "mid": row["mid"],
        "conversation_id": row["conversation_id"],
        "sender_id": row["sender_id"],
        "kind": MessageKind(row["kind"]),
        "content": row["content"],
        "media": json.loads(row["media"]) if row["media"] else None,
        "status": MessageStatus(row["status"]),
        "reply_to": row["reply_to_mid"],
        "forwarded_from": forwarded_from,
        "client_message_id": row["client_message_id"],
        "edited": row["edited_at"] is not None,
        "edited_at": row["edited_at"],
        "deleted": row["deleted_at"] is not None,
        "deleted_at": row["deleted_at"],
        "deleted_by": row["deleted_by"],
        "expires_at": row["expires_at"],
        "created_at": row["created_at"],
    }


def _hydrate(conn: sqlite3.Connection, messages: list[dict]) -> list[dict]:
    """Attach receipts, reactions and edit history with one query each."""
    if not messages:
        return messages
    mids = [m["mid"] for m in messages]
    by_mid = {m["mid"]: m for m in messages}
    for message in messages:
        message["delivered_to"] = []
        message["read_by"] = []
        message["reactions"] = []
        message["reaction_counts"] = {}
        message["edit_history"] = []

    marks = _placeholders(mids)
    rows = conn.execute(
        f"""SELECT mid, identity_id, kind, at FROM message_receipts
            WHERE mid IN ({marks}) ORDER BY at, identity_id""",
        tuple(mids),
    ).fetchall()
    for mid, identity_id, kind, at in rows:
        target = "read_by" if kind == ReceiptKind.READ.value else "delivered_to"
        by_mid[mid][target].append({"identity_id": identity_id, "at": at})

    rows = conn.execute(
        f"""SELECT mid, identity_id, reaction, reacted_at FROM message_reactions
            WHERE mid IN ({marks}) ORDER BY reacted_at, identity_id""",
        tuple(mids),
    ).fetchall()
    for mid, identity_id, reaction, reacted_at in rows:
        message = by_mid[mid]
        message["reactions"].append(
            {"identity_id": identity_id, "reaction": reaction, "reacted_at": reacted_at}
        )
        message["reaction_counts"][reaction] = message["reaction_counts"].get(reaction, 0) + 1

    rows = conn.execute(
        f"""SELECT mid, seq, previous_content, edited_at FROM message_edits
            WHERE mid IN ({marks}) ORDER BY seq""",
        tuple(mids),
    ).fetchall()
    for mid, seq, previous_content, edited_at in rows:
        by_mid[mid]["edit_history"].append(
            {"seq": seq, "content": previous_content, "edited_at": edited_at}
        )
    return messages


def _load_row(conn: sqlite3.Connection, mid: str) -> dict | None:
    cursor = conn.execute(f"SELECT {_MESSAGE_COLUMNS} FROM messages m WHERE m.mid = ?", (mid,))
    return _row_to_dict(cursor.description, cursor.fetchone())


def _load_message(conn: sqlite3.Connection, mid: str) -> dict:
    row = _load_row(conn, mid)
    if row is None:
        raise NotFoundError(f"Message {mid} not found")
    return _hydrate(conn, [_message_from_row(row)])[0]


def _is_visible(conn: sqlite3.Connection, row: dict, viewer: str | None) -> bool:
    if row["deleted_at"] is not None:
        return False
    if row["expires_at"] is not None and row["expires_at"] <= utc_now():
        return False
    if viewer is not None:
        hidden = conn.execute(
            "SELECT 1 FROM message_hidden WHERE mid = ? AND identity_id = ?",
            (row["mid"], viewer),
        ).fetchone()
        if hidden:
            return False
    return True


def require_visible(
    mid: str,
    viewer: str,
    conn: sqlite3.Connection | None = None,
) -> tuple[dict, dict, dict]:
    """Load a message the viewer may act on.

    Returns:
        (message_row, conversation, participant)

    Raises:
        NotFoundError: Missing, deleted, expired or hidden for the viewer.
        PermissionDeniedError: Viewer is not a participant of its conversation.
    """
    conn = _get_conn(conn)
    row = _load_row(conn, mid)
    if row is None:
        raise NotFoundError(f"Message {mid} not found")
    conversation, participant = conversations.require_participant(
        row["conversation_id"], viewer, conn=conn
    )
    if not _is_visible(conn, row, viewer):
        raise NotFoundError(f"Message {mid} not found")
    return row, conversation, participant


def get_message(
    mid: str,
    viewer: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Get a hydrated message, or None if it is not visible.

    Without a viewer only deletion and expiry are checked.
    """
    conn = _get_conn(conn)
    row = _load_row(conn, mid)
    if row is None or not _is_visible(conn, row, viewer):
        return None
    if viewer is not None and not conversations.is_participant(
        row["conversation_id"], viewer, conn=conn
    ):
        return None
    return _hydrate(conn, [_message_from_row(row)])[0]


# --- Send ---


def _validate_media(kind: MessageKind, media: dict[str, Any] | None) -> dict | None:
    if not kind.carries_media:
        if media:
            raise ValidationError(f"{kind.value} messages cannot carry media")
        return None
    if not media or not media.get("url"):
        raise ValidationError(f"{kind.value} messages need media with a url")
    unknown = set(media) - set(MEDIA_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown media fields: {', '.join(sorted(unknown))}")
    size = media.get("size")
    if size is not None and (not isinstance(size, int) or size < 0):
        raise ValidationError("media size must be a non-negative integer")
    return {k: media[k] for k in MEDIA_FIELDS if media.get(k) is not None}


def validate_content(
    kind: MessageKind,
    content: str | None,
    max_length: int = MAX_CONTENT_LENGTH,
) -> str | None:
    """Check content against the kind's rules and the length bound."""
    if content is not None and not isinstance(content, str):
        raise ValidationError("content must be a string")
    if content is not None and len(content) > max_length:
        raise ValidationError(f"Message content exceeds {max_length} characters")
    if not kind.carries_media and not (content or "").strip():
        raise ValidationError(f"{kind.value} messages need non-empty content")
    return content


def _find_by_client_id(
    conn: sqlite3.Connection,
    conversation_id: str,
    sender: str,
    client_message_id: str,
) -> dict | None:
    cursor = conn.execute(
        f"""SELECT {_MESSAGE_COLUMNS} FROM messages m
            WHERE m.conversation_id = ? AND m.sender_id = ? AND m.client_message_id = ?""",
        (conversation_id, sender, client_message_id),
    )
    return _row_to_dict(cursor.description, cursor.fetchone())


def _check_can_send(
    conn: sqlite3.Connection,
    conversation: dict,
    participant: dict,
    kind: MessageKind,
    reply_to: str | None,
) -> None:
    settings = conversation["settings"]
    conversation_id = conversation["conversation_id"]

    if conversation["kind"] is ConversationKind.GROUP:
        if settings["only_admins_can_send"] and not participant["is_admin"]:
            raise PermissionDeniedError("Only admins can send messages in this group")
    else:
        blocked = conn.execute(
            """SELECT 1 FROM conversation_participants
               WHERE conversation_id = ? AND blocked = 1""",
            (conversation_id,),
        ).fetchone()
        if blocked:
            raise PermissionDeniedError("This conversation is blocked")

    if kind.carries_media and not settings["allow_media"]:
        raise PermissionDeniedError("Media is disabled in this conversation")

    if reply_to is not None:
        if not settings["allow_replies"]:
            raise PermissionDeniedError("Replies are disabled in this conversation")
        target = conn.execute(
            """SELECT 1 FROM messages
               WHERE mid = ? AND conversation_id = ? AND deleted_at IS NULL""",
            (reply_to, conversation_id),
        ).fetchone()
        if target is None:
            raise NotFoundError(f"Reply target {reply_to} not found in this conversation")


def send_message(
    sender: str,
    conversation_id: str,
    content: str | None,
    kind: MessageKind | str = MessageKind.TEXT,
    media: dict[str, Any] | None = None,
    reply_to: str | None = None,
    client_message_id: str | None = None,
    expires_at: str | None = None,
    forwarded_from: dict[str, str] | None = None,
    max_length: int = MAX_CONTENT_LENGTH,
    conn: sqlite3.Connection | None = None,
) -> tuple[dict, bool]:
    """Persist a new message in status ``sending``.

    The insert and the conversation's last-message, activity and unread
    bookkeeping commit together. A repeated ``client_message_id`` from the
    same sender returns the stored message instead of a duplicate.

    Returns:
        (message, created)
    """
    try:
        kind = MessageKind(kind)
    except ValueError as e:
        raise ValidationError(f"Unknown message kind: {kind!r}") from e
    content = validate_content(kind, content, max_length)
    media = _validate_media(kind, media)
    if expires_at is not None:
        expires_at = normalize_timestamp(expires_at, "expires_at")
        if expires_at <= utc_now():
            raise ValidationError("expires_at must be in the future")

    conn = _get_conn(conn)

    if client_message_id:
        existing = _find_by_client_id(conn, conversation_id, sender, client_message_id)
        if existing is not None:
            conversations.require_participant(conversation_id, sender, conn=conn)
            return _hydrate(conn, [_message_from_row(existing)])[0], False

    mid = new_id()
    created_at = utc_now()
    forwarded_from = forwarded_from or {}
    try:
        with transaction(conn), timed_db_operation("send_message"):
            conversation, participant = conversations.require_participant(
                conversation_id, sender, conn=conn
            )
            _check_can_send(conn, conversation, participant, kind, reply_to)
            conn.execute(
                """INSERT INTO messages
                       (mid, conversation_id, sender_id, kind, content, media, media_filename,
                        status, reply_to_mid, forwarded_from_mid, forwarded_from_conversation_id,
                        forwarded_from_sender_id, client_message_id, expires_at, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    mid,
                    conversation_id,
                    sender,
                    kind.value,
                    content,
                    json.dumps(media) if media else None,
                    media.get("filename") if media else None,
                    MessageStatus.SENDING.value,
                    reply_to,
                    forwarded_from.get("mid"),
                    forwarded_from.get("conversation_id"),
                    forwarded_from.get("sender_id"),
                    client_message_id,
                    expires_at,
                    created_at,
                ),
            )
            conversations.record_new_message(conn, conversation_id, mid, sender, created_at)
    except sqlite3.IntegrityError as e:
        if not (client_message_id and db.is_unique_violation(e)):
            raise
        metrics.record_conflict("client_message_id")
        existing = _find_by_client_id(conn, conversation_id, sender, client_message_id)
        if existing is None:
            raise
        return _hydrate(conn, [_message_from_row(existing)])[0], False

    return _load_message(conn, mid), True


def _set_status(conn: sqlite3.Connection, mid: str, target: MessageStatus) -> bool:
    allowed = statuses_below(target)
    cursor = conn.execute(
        f"UPDATE messages SET status = ? WHERE mid = ? AND status IN ({_placeholders(allowed)})",
        (target.value, mid, *allowed),
    )
    return cursor.rowcount > 0


def confirm_sent(mid: str, conn: sqlite3.Connection | None = None) -> MessageStatus:
    """Mark a durable write as confirmed (sending -> sent). Returns the current status."""
    conn = _get_conn(conn)
    with transaction(conn):
        _set_status(conn, mid, MessageStatus.SENT)
        row = conn.execute("SELECT status FROM messages WHERE mid = ?", (mid,)).fetchone()
    if row is None:
        raise NotFoundError(f"Message {mid} not found")
    return MessageStatus(row[0])


def mark_failed(mid: str, conn: sqlite3.Connection | None = None) -> bool:
    """sending -> failed. Returns False if the message had already moved on.

    A failed message no longer counts toward the conversation's message
    count, last-message pointer or anyone's unread counter.
    """
    conn = _get_conn(conn)
    with transaction(conn):
        changed = _set_status(conn, mid, MessageStatus.FAILED)
        if changed:
            conversation_id = conn.execute(
                "SELECT conversation_id FROM messages WHERE mid = ?", (mid,)
            ).fetchone()[0]
            conn.execute(
                """UPDATE conversations SET message_count = MAX(message_count - 1, 0)
                   WHERE conversation_id = ?""",
                (conversation_id,),
            )
            _repair_conversation(conn, conversation_id)
    return changed


def claim_announcement(mid: str, conn: sqlite3.Connection | None = None) -> bool:
    """Claim the one ``message:new`` fan-out for a confirmed message.

    True for exactly one caller once the message is past ``sending``; a
    retried send uses this to finish an announcement an earlier attempt
    never made.
    """
    conn = _get_conn(conn)
    with transaction(conn):
        cursor = conn.execute(
            """UPDATE messages SET announced_at = ?
               WHERE mid = ? AND announced_at IS NULL AND status NOT IN (?, ?)""",
            (utc_now(), mid, MessageStatus.SENDING.value, MessageStatus.FAILED.value),
        )
    return cursor.rowcount > 0


# --- Receipts ---


def _apply_receipts(
    recipient: str,
    mids: list[str],
    receipt: ReceiptKind,
    conn: sqlite3.Connection,
    in_conversation: str | None = None,
) -> list[dict]:
    if not mids:
        return []
    target = MessageStatus.READ if receipt is ReceiptKind.READ else MessageStatus.DELIVERED
    kinds = [ReceiptKind.DELIVERED] if receipt is ReceiptKind.DELIVERED else list(ReceiptKind)
    updates: list[dict] = []
    touched_conversations: set[str] = set()

    with transaction(conn), timed_db_operation(f"mark_{receipt.value}"):
        for mid in dict.fromkeys(mids):
            row = conn.execute(
                "SELECT conversation_id, sender_id, status FROM messages WHERE mid = ?",
                (mid,),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Message {mid} not found")
            conversation_id, sender_id, _ = row
            if in_conversation is not None and conversation_id != in_conversation:
                raise ValidationError(f"Message {mid} is not in conversation {in_conversation}")
            if not conversations.is_participant(conversation_id, recipient, conn=conn):
                raise PermissionDeniedError(
                    f"{recipient} is not a participant of conversation {conversation_id}"
                )
            # A sender's acks of their own message never count
            if sender_id == recipient:
                continue

            at = utc_now()
            inserted = 0
            for kind in kinds:
                cursor = conn.execute(
                    """INSERT OR IGNORE INTO message_receipts (mid, identity_id, kind, at)
                       VALUES (?, ?, ?, ?)""",
                    (mid, recipient, kind.value, at),
                )
                inserted += cursor.rowcount
            status_changed = _set_status(conn, mid, target)
            if receipt is ReceiptKind.READ:
                touched_conversations.add(conversation_id)

            if inserted or status_changed:
                status = conn.execute("SELECT status FROM messages WHERE mid = ?", (mid,)).fetchone()[0]
                updates.append(
                    {
                        "mid": mid,
                        "conversation_id": conversation_id,
                        "sender_id": sender_id,
                        "identity_id": recipient,
                        "receipt": receipt.value,
                        "at": at,
                        "status": MessageStatus(status),
                        "status_changed": status_changed,
                    }
                )

        for conversation_id in touched_conversations:
            conversations.recompute_unread(conn, conversation_id, recipient)

    return updates


def mark_delivered(
    recipient: str,
    mids: list[str],
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """Record delivery acks. Idempotent; returns only the acks that changed something."""
    return _apply_receipts(recipient, mids, ReceiptKind.DELIVERED, _get_conn(conn))


def mark_read(
    recipient: str,
    mids: list[str],
    conversation_id: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """Record read acks (each also counts as delivered) and refresh unread counters.

    With ``conversation_id`` every mid must belong to that conversation, or
    nothing is recorded.
    """
    return _apply_receipts(recipient, mids, ReceiptKind.READ, _get_conn(conn), conversation_id)


def mark_conversation_read(
    recipient: str,
    conversation_id: str,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """Mark every message the recipient has not read in a conversation as read."""
    conn = _get_conn(conn)
    conversations.require_participant(conversation_id, recipient, conn=conn)
    rows = conn.execute(
        """SELECT m.mid FROM messages m
           WHERE m.conversation_id = ? AND m.sender_id != ? AND m.deleted_at IS NULL
             AND NOT EXISTS (
                 SELECT 1 FROM message_receipts r
                 WHERE r.mid = m.mid AND r.identity_id = ? AND r.kind = 'read'
             )
           ORDER BY m.created_at, m.mid""",
        (conversation_id, recipient, recipient),
    ).fetchall()
    mids = [row[0] for row in rows]
    if not mids:
        with transaction(conn):
            conversations.recompute_unread(conn, conversation_id, recipient)
        return []
    return mark_read(recipient, mids, conversation_id, conn=conn)


# --- Reactions ---


def _reaction_kind(reaction: ReactionKind | str) -> ReactionKind:
    try:
        return ReactionKind(reaction)
    except ValueError as e:
        raise ValidationError(f"Unknown reaction: {reaction!r}") from e


def _require_reactable(conn: sqlite3.Connection, identity: str, mid: str) -> dict:
    row, conversation, _ = require_visible(mid, identity, conn=conn)
    if not conversation["settings"]["allow_reactions"]:
        raise PermissionDeniedError("Reactions are disabled in this conversation")
    return row


def get_reaction(
    identity: str,
    mid: str,
    conn: sqlite3.Connection | None = None,
) -> ReactionKind | None:
    conn = _get_conn(conn)
    row = conn.execute(
        "SELECT reaction FROM message_reactions WHERE mid = ? AND identity_id = ?",
        (mid, identity),
    ).fetchone()
    return ReactionKind(row[0]) if row else None


def _reaction_result(conn: sqlite3.Connection, row: dict, action: str) -> dict:
    message = _load_message(conn, row["mid"])
    return {
        "mid": row["mid"],
        "conversation_id": row["conversation_id"],
        "sender_id": row["sender_id"],
        "action": action,
        "reactions": message["reactions"],
        "reaction_counts": message["reaction_counts"],
    }


def add_reaction(
    identity: str,
    mid: str,
    reaction: ReactionKind | str,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Set ``identity``'s reaction on a message, replacing any previous one.

    ``action`` in the result is "added", "replaced" or "unchanged".
    """
    reaction = _reaction_kind(reaction)
    conn = _get_conn(conn)
    with transaction(conn):
        row = _require_reactable(conn, identity, mid)
        now = utc_now()
        try:
            conn.execute(
                """INSERT INTO message_reactions (mid, identity_id, reaction, reacted_at)
                   VALUES (?, ?, ?, ?)""",
                (mid, identity, reaction.value, now),
            )
            action = "added"
        except sqlite3.IntegrityError as e:
            if not db.is_unique_violation(e):
                raise
            cursor = conn.execute(
                """UPDATE message_reactions SET reaction = ?, reacted_at = ?
                   WHERE mid = ? AND identity_id = ? AND reaction != ?""",
                (reaction.value, now, mid, identity, reaction.value),
            )
            action = "replaced" if cursor.rowcount else "unchanged"
    return _reaction_result(conn, row, action)


def remove_reaction(
    identity: str,
    mid: str,
    reaction: ReactionKind | str | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Remove ``identity``'s reaction (only if it matches ``reaction`` when given).

    ``action`` in the result is "removed" or "unchanged".
    """
    kind = _reaction_kind(reaction) if reaction is not None else None
    conn = _get_conn(conn)
    with transaction(conn):
        row, _, _ = require_visible(mid, identity, conn=conn)
        query = "DELETE FROM message_reactions WHERE mid = ? AND identity_id = ?"
        params: list[Any] = [mid, identity]
        if kind is not None:
            query += " AND reaction = ?"
            params.append(kind.value)
        cursor = conn.execute(query, tuple(params))
        action = "removed" if cursor.rowcount else "unchanged"
    return _reaction_result(conn, row, action)


def toggle_reaction(
    identity: str,
    mid: str,
    reaction: ReactionKind | str,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Toggle a reaction: add if absent, remove if the same, replace otherwise.

    The current state is read before taking the write lock. If the insert
    then hits the (mid, identity) key, another writer won the race: the row
    is re-read and the toggle proceeds as its inverse against that state.
    """
    reaction = _reaction_kind(reaction)
    conn = _get_conn(conn)
    observed = get_reaction(identity, mid, conn=conn)

    with transaction(conn):
        row = _require_reactable(conn, identity, mid)
        now = utc_now()
        if observed is None:
            try:
                conn.execute(
                    """INSERT INTO message_reactions (mid, identity_id, reaction, reacted_at)
                       VALUES (?, ?, ?, ?)""",
                    (mid, identity, reaction.value, now),
                )
                return _reaction_result(conn, row, "added")
            except sqlite3.IntegrityError as e:
                if not db.is_unique_violation(e):
                    raise
                metrics.record_conflict("reaction_toggle")
                logger.info("Reaction toggle race on %s for %s; applying inverse", mid, identity)
                observed = get_reaction(identity, mid, conn=conn)

        if observed == reaction:
            conn.execute(
                "DELETE FROM message_reactions WHERE mid = ? AND identity_id = ?",
                (mid, identity),
            )
            action = "removed"
        else:
            conn.execute(
                """INSERT INTO message_reactions (mid, identity_id, reaction, reacted_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(mid, identity_id)
                   DO UPDATE SET reaction = excluded.reaction, reacted_at = excluded.reacted_at""",
                (mid, identity, reaction.value, now),
            )
            action = "replaced" if observed is not None else "added"
    return _reaction_result(conn, row, action)


# --- Edit, Delete, Forward ---


def edit_message(
    sender: str,
    mid: str,
    content: str,
    max_length: int = MAX_CONTENT_LENGTH,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Replace a text message's content, appending the prior content to its history."""
    validate_content(MessageKind.TEXT, content, max_length)
    conn = _get_conn(conn)
    with transaction(conn):
        row, _, _ = require_visible(mid, sender, conn=conn)
        if not MessageKind(row["kind"]).editable:
            raise ValidationError("Only text messages can be edited")
        if row["sender_id"] != sender:
            raise PermissionDeniedError("Only the sender can edit a message")
        if row["content"] == content:
            return _load_message(conn, mid)

        edited_at = utc_now()
        conn.execute(
            """INSERT INTO message_edits (mid, seq, previous_content, edited_at)
               SELECT ?, COALESCE(MAX(seq), 0) + 1, ?, ? FROM message_edits WHERE mid = ?""",
            (mid, row["content"], edited_at, mid),
        )
        cursor = conn.execute(
            """UPDATE messages SET content = ?, edited_at = ?
               WHERE mid = ? AND content = ? AND deleted_at IS NULL""",
            (content, edited_at, mid, row["content"]),
        )
        if cursor.rowcount == 0:
            raise ConflictError(f"Message {mid} changed while editing")
    return _load_message(conn, mid)


def delete_message(
    actor: str,
    mid: str,
    for_everyone: bool = False,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Soft-delete a message.

    ``for_everyone`` (sender only) marks the message deleted for all
    participants. Otherwise the message is hidden for ``actor`` alone.
    Nothing is ever physically removed.
    """
    conn = _get_conn(conn)
    now = utc_now()
    with transaction(conn):
        row, conversation, _ = require_visible(mid, actor, conn=conn)
        conversation_id = row["conversation_id"]

        if not for_everyone:
            conn.execute(
                "INSERT OR IGNORE INTO message_hidden (mid, identity_id, hidden_at) VALUES (?, ?, ?)",
                (mid, actor, now),
            )
            conversations.recompute_unread(conn, conversation_id, actor)
            return {
                "mid": mid,
                "conversation_id": conversation_id,
                "for_everyone": False,
                "deleted_at": now,
            }

        if row["sender_id"] != actor:
            raise PermissionDeniedError("Only the sender can delete a message for everyone")
        cursor = conn.execute(
            "UPDATE messages SET deleted_at = ?, deleted_by = ? WHERE mid = ? AND deleted_at IS NULL",
            (now, actor, mid),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Message {mid} not found")
        _after_global_delete(conn, conversation_id, [mid])

    return {"mid": mid, "conversation_id": conversation_id, "for_everyone": True, "deleted_at": now}


def _after_global_delete(conn: sqlite3.Connection, conversation_id: str, mids: list[str]) -> None:
    """Unpin deleted messages and repair last-message pointer and unread counters."""
    conn.execute(
        f"DELETE FROM pinned_messages WHERE mid IN ({_placeholders(mids)})",
        tuple(mids),
    )
    _repair_conversation(conn, conversation_id)


def _repair_conversation(conn: sqlite3.Connection, conversation_id: str) -> None:
    """Point last_message_mid at the newest live message and recount unread."""
    conn.execute(
        """UPDATE conversations SET last_message_mid = (
               SELECT mid FROM messages
               WHERE conversation_id = ? AND deleted_at IS NULL AND status != 'failed'
               ORDER BY created_at DESC, mid DESC LIMIT 1
           )
           WHERE conversation_id = ?""",
        (conversation_id, conversation_id),
    )
    for identity_id in conversations.participant_ids(conversation_id, conn=conn):
        conversations.recompute_unread(conn, conversation_id, identity_id)


def forward_message(
    actor: str,
    mid: str,
    target_conversation_id: str,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Copy a message into another conversation with forwarding provenance.

    The original message is never modified. The actor must be able to see
    the source and must be a participant of the target.
    """
    conn = _get_conn(conn)
    row, conversation, _ = require_visible(mid, actor, conn=conn)
    if not conversation["settings"]["allow_forwarding"]:
        raise PermissionDeniedError("Forwarding is disabled in this conversation")

    message, _ = send_message(
        actor,
        target_conversation_id,
        row["content"],
        kind=row["kind"],
        media=json.loads(row["media"]) if row["media"] else None,
        forwarded_from={
            "mid": row["mid"],
            "conversation_id": row["conversation_id"],
            "sender_id": row["sender_id"],
        },
        conn=conn,
    )
    return message


# --- Queries ---


def get_history(
    conversation_id: str,
    viewer: str,
    before: str | None = None,
    after: str | None = None,
    limit: int = DEFAULT_HISTORY_LIMIT,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """Page through a conversation's history in chronological order.

    ``before``/``after`` are exclusive ISO-8601 timestamp cursors. With
    ``after`` the page starts right after it; otherwise the page is the
    newest ``limit`` messages before ``before`` (or overall).
    """
    if limit < 1 or limit > MAX_HISTORY_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_HISTORY_LIMIT}")
    before = normalize_timestamp(before, "before") if before else None
    after = normalize_timestamp(after, "after") if after else None

    conn = _get_conn(conn)
    conversations.require_participant(conversation_id, viewer, conn=conn)

    where = f"m.conversation_id = ? AND {_VISIBLE}"
    params: list[Any] = [conversation_id, utc_now(), viewer]
    if before:
        where += " AND m.created_at < ?"
        params.append(before)
    if after:
        where += " AND m.created_at > ?"
        params.append(after)

    if after:
        query = f"""
            SELECT {_MESSAGE_COLUMNS} FROM messages m WHERE {where}
            ORDER BY m.created_at ASC, m.mid ASC LIMIT ?
        """
    else:
        query = f"""
            SELECT * FROM (
                SELECT {_MESSAGE_COLUMNS} FROM messages m WHERE {where}
                ORDER BY m.created_at DESC, m.mid DESC LIMIT ?
            ) ORDER BY created_at ASC, mid ASC
        """
    params.append(limit)

    with timed_db_operation("history"):
        cursor = conn.execute(query, tuple(params))
        rows = _rows_to_dicts(cursor.description, cursor.fetchall())
        return _hydrate(conn, [_message_from_row(row) for row in rows])


def search_messages(
    identity: str,
    query: str,
    conversation_id: str | None = None,
    limit: int = DEFAULT_HISTORY_LIMIT,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """Find visible messages by content or media filename, newest first.

    Only conversations the identity participates in are searched.
    """
    if not query or not query.strip():
        raise ValidationError("Search query must not be empty")
    if limit < 1 or limit > MAX_HISTORY_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_HISTORY_LIMIT}")

    conn = _get_conn(conn)
    if conversation_id is not None:
        conversations.require_participant(conversation_id, identity, conn=conn)

    escaped = query.strip().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    pattern = f"%{escaped}%"
    sql = f"""
        SELECT {_MESSAGE_COLUMNS}
        FROM messages m
        JOIN conversation_participants p
          ON p.conversation_id = m.conversation_id AND p.identity_id = ?
        WHERE {_VISIBLE}
          AND (m.content LIKE ? ESCAPE '\\' OR m.media_filename LIKE ? ESCAPE '\\')
    """
    params: list[Any] = [identity, utc_now(), identity, pattern, pattern]
    if conversation_id is not None:
        sql += " AND m.conversation_id = ?"
        params.append(conversation_id)
    sql += " ORDER BY m.created_at DESC, m.mid DESC LIMIT ?"
    params.append(limit)

    with timed_db_operation("search_messages"):
        cursor = conn.execute(sql, tuple(params))
        rows = _rows_to_dicts(cursor.description, cursor.fetchall())
        return _hydrate(conn, [_message_from_row(row) for row in rows])


def latest_message_ids(
    conversation_ids: list[str],
    conn: sqlite3.Connection | None = None,
) -> dict[str, str]:
    """Newest live message ID per conversation (UUIDv7 IDs sort by creation)."""
    if not conversation_ids:
        return {}
    conn = _get_conn(conn)
    rows = conn.execute(
        f"""SELECT conversation_id, MAX(mid) FROM messages
            WHERE conversation_id IN ({_placeholders(conversation_ids)}) AND deleted_at IS NULL
            GROUP BY conversation_id""",
        tuple(conversation_ids),
    ).fetchall()
    return {row[0]: row[1] for row in rows if row[1] is not None}


def list_expired(
    now: str | None = None,
    limit: int = 1000,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """Live messages whose ``expires_at`` has passed, oldest expiry first."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"""SELECT {_MESSAGE_COLUMNS} FROM messages m
            WHERE m.expires_at IS NOT NULL AND m.expires_at <= ? AND m.deleted_at IS NULL
            ORDER BY m.expires_at LIMIT ?""",
        (now or utc_now(), limit),
    )
    return [_message_from_row(row) for row in _rows_to_dicts(cursor.description, cursor.fetchall())]


def expire_messages(
    now: str | None = None,
    limit: int = 1000,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """Soft-delete messages whose ``expires_at`` has passed.

    Expired messages are marked deleted with no ``deleted_by``; rows stay.

    Returns:
        [{"mid", "conversation_id"}] for each message expired by this call.
    """
    conn = _get_conn(conn)
    now = now or utc_now()
    with transaction(conn):
        rows = conn.execute(
            """SELECT mid, conversation_id FROM messages
               WHERE expires_at IS NOT NULL AND expires_at <= ? AND deleted_at IS NULL
               ORDER BY expires_at LIMIT ?""",
            (now, limit),
        ).fetchall()
        expired = [{"mid": row[0], "conversation_id": row[1]} for row in rows]
        if not expired:
            return []

        by_conversation: dict[str, list[str]] = {}
        for item in expired:
            conn.execute(
                "UPDATE messages SET deleted_at = ? WHERE mid = ? AND deleted_at IS NULL",
                (now, item["mid"]),
            )
            by_conversation.setdefault(item["conversation_id"], []).append(item["mid"])
        for conversation_id, mids in by_conversation.items():
            _after_global_delete(conn, conversation_id, mids)
    return expired
