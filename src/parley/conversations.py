"""Conversation store: direct and group conversations, membership, settings.

All functions take an optional ``conn`` like the rest of the store layer.
Multi-statement mutations run inside ``db.transaction`` so a failed
authorization or constraint check never leaves partial state behind, and
invariants that two racing writers could break (the last admin, the single
direct conversation per pair) are enforced by predicates and unique keys in
the store itself rather than by read-then-write checks.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

from . import db
from .cache import invalidate_participants, participant_cache, participants_key
from .db import _get_conn, _placeholders, _row_to_dict, _rows_to_dicts, new_id, transaction, utc_now
from .errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from .metrics import metrics, timed_db_operation
from .models import (
    GROUP_SETTINGS,
    MAX_GROUP_DESCRIPTION_LENGTH,
    MAX_GROUP_NAME_LENGTH,
    MIN_GROUP_PARTICIPANTS,
    PARTICIPANT_SETTINGS,
    ConversationKind,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20

_FLAG_SETTINGS = (
    "only_admins_can_send",
    "allow_media",
    "allow_replies",
    "allow_reactions",
    "allow_forwarding",
)

_CONVERSATION_COLUMNS = """
    c.conversation_id, c.kind, c.name, c.description, c.created_by, c.created_at,
    c.only_admins_can_send, c.allow_media, c.allow_replies, c.allow_reactions,
    c.allow_forwarding, c.last_message_mid, c.last_activity_at, c.message_count
"""


def direct_key(a: str, b: str) -> str:
    """Canonical key for the unordered pair {a, b}."""
    first, second = sorted((a, b))
    return f"{first}|{second}"


def _conversation_from_row(row: dict) -> dict:
    conversation = {
        "conversation_id": row["conversation_id"],
        "kind": ConversationKind(row["kind"]),
        "name": row["name"],
        "description": row["description"],
        "created_by": row["created_by"],
        "created_at": row["created_at"],
        "settings": {flag: bool(row[flag]) for flag in _FLAG_SETTINGS},
        "last_message_mid": row["last_message_mid"],
        "last_activity_at": row["last_activity_at"],
        "message_count": row["message_count"],
    }
    if "is_admin" in row:
        conversation["viewer"] = {
            "is_admin": bool(row["is_admin"]),
            "muted": bool(row["muted"]),
            "pinned": bool(row["pinned"]),
            "archived": bool(row["archived"]),
            "blocked": bool(row["blocked"]),
            "unread_count": row["unread_count"],
        }
    return conversation


def _participant_from_row(row: dict) -> dict:
    return {
        "identity_id": row["identity_id"],
        "is_admin": bool(row["is_admin"]),
        "muted": bool(row["muted"]),
        "pinned": bool(row["pinned"]),
        "archived": bool(row["archived"]),
        "blocked": bool(row["blocked"]),
        "unread_count": row["unread_count"],
        "joined_at": row["joined_at"],
    }


def _hydrate(conn: sqlite3.Connection, conversations: list[dict]) -> list[dict]:
    """Attach participants, admins and pinned messages in two batch queries."""
    if not conversations:
        return conversations
    ids = [c["conversation_id"] for c in conversations]
    by_id = {c["conversation_id"]: c for c in conversations}
    for conversation in conversations:
        conversation["participants"] = []
        conversation["admins"] = []
        conversation["pinned_messages"] = []

    rows = conn.execute(
        f"""SELECT conversation_id, identity_id, is_admin FROM conversation_participants
            WHERE conversation_id IN ({_placeholders(ids)})
            ORDER BY joined_at, identity_id""",
        tuple(ids),
    ).fetchall()
    for conversation_id, identity_id, is_admin in rows:
        by_id[conversation_id]["participants"].append(identity_id)
        if is_admin:
            by_id[conversation_id]["admins"].append(identity_id)

    rows = conn.execute(
        f"""SELECT conversation_id, mid, pinned_by, pinned_at FROM pinned_messages
            WHERE conversation_id IN ({_placeholders(ids)})
            ORDER BY pinned_at, mid""",
        tuple(ids),
    ).fetchall()
    for conversation_id, mid, pinned_by, pinned_at in rows:
        by_id[conversation_id]["pinned_messages"].append(
            {"mid": mid, "pinned_by": pinned_by, "pinned_at": pinned_at}
        )
    return conversations


# --- Reads ---


def get_conversation(
    conversation_id: str,
    viewer: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Get a conversation with participants, admins and pins.

    With ``viewer`` set, the viewer's own flags (muted, pinned, archived,
    blocked, unread_count) are included under ``"viewer"``.
    """
    conn = _get_conn(conn)
    if viewer is None:
        cursor = conn.execute(
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations c WHERE c.conversation_id = ?",
            (conversation_id,),
        )
    else:
        cursor = conn.execute(
            f"""SELECT {_CONVERSATION_COLUMNS},
                       p.is_admin, p.muted, p.pinned, p.archived, p.blocked, p.unread_count
                FROM conversations c
                JOIN conversation_participants p
                  ON p.conversation_id = c.conversation_id AND p.identity_id = ?
                WHERE c.conversation_id = ?""",
            (viewer, conversation_id),
        )
    row = _row_to_dict(cursor.description, cursor.fetchone())
    if row is None:
        return None
    return _hydrate(conn, [_conversation_from_row(row)])[0]


def require_conversation(conversation_id: str, conn: sqlite3.Connection | None = None) -> dict:
    """Conversation row without hydration; raises NotFoundError."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"SELECT {_CONVERSATION_COLUMNS} FROM conversations c WHERE c.conversation_id = ?",
        (conversation_id,),
    )
    row = _row_to_dict(cursor.description, cursor.fetchone())
    if row is None:
        raise NotFoundError(f"Conversation {conversation_id} not found")
    return _conversation_from_row(row)


def get_participant(
    conversation_id: str,
    identity_id: str,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT identity_id, is_admin, muted, pinned, archived, blocked, unread_count, joined_at
           FROM conversation_participants WHERE conversation_id = ? AND identity_id = ?""",
        (conversation_id, identity_id),
    )
    row = _row_to_dict(cursor.description, cursor.fetchone())
    return _participant_from_row(row) if row else None


def list_participants(conversation_id: str, conn: sqlite3.Connection | None = None) -> list[dict]:
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT identity_id, is_admin, muted, pinned, archived, blocked, unread_count, joined_at
           FROM conversation_participants WHERE conversation_id = ?
           ORDER BY joined_at, identity_id""",
        (conversation_id,),
    )
    return [_participant_from_row(r) for r in _rows_to_dicts(cursor.description, cursor.fetchall())]


def require_participant(
    conversation_id: str,
    identity_id: str,
    conn: sqlite3.Connection | None = None,
) -> tuple[dict, dict]:
    """Return ``(conversation, participant)`` or raise.

    Raises:
        NotFoundError: The conversation does not exist.
        PermissionDeniedError: The identity is not a participant.
    """
    conn = _get_conn(conn)
    conversation = require_conversation(conversation_id, conn=conn)
    participant = get_participant(conversation_id, identity_id, conn=conn)
    if participant is None:
        raise PermissionDeniedError(
            f"{identity_id} is not a participant of conversation {conversation_id}"
        )
    return conversation, participant


def participant_ids(conversation_id: str, conn: sqlite3.Connection | None = None) -> frozenset[str]:
    """Participant set for a conversation, served from the participant cache."""
    key = participants_key(conversation_id)
    hit, cached = participant_cache.get(key)
    if hit:
        return cached

    conn = _get_conn(conn)
    with timed_db_operation("participant_ids"):
        rows = conn.execute(
            "SELECT identity_id FROM conversation_participants WHERE conversation_id = ?",
            (conversation_id,),
        ).fetchall()
    ids = frozenset(row[0] for row in rows)
    # Empty sets are not cached so a conversation created right after a miss is seen
    if ids:
        participant_cache.set(key, ids)
    return ids


def is_participant(
    conversation_id: str,
    identity_id: str,
    conn: sqlite3.Connection | None = None,
) -> bool:
    return identity_id in participant_ids(conversation_id, conn=conn)


def conversation_ids_for(identity_id: str, conn: sqlite3.Connection | None = None) -> list[str]:
    conn = _get_conn(conn)
    rows = conn.execute(
        "SELECT conversation_id FROM conversation_participants WHERE identity_id = ?",
        (identity_id,),
    ).fetchall()
    return [row[0] for row in rows]


def contacts_of(identity_id: str, conn: sqlite3.Connection | None = None) -> list[str]:
    """Identities sharing at least one conversation with ``identity_id``."""
    conn = _get_conn(conn)
    rows = conn.execute(
        """SELECT DISTINCT other.identity_id
           FROM conversation_participants me
           JOIN conversation_participants other ON other.conversation_id = me.conversation_id
           WHERE me.identity_id = ? AND other.identity_id != ?
           ORDER BY other.identity_id""",
        (identity_id, identity_id),
    ).fetchall()
    return [row[0] for row in rows]


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def list_for_identity(
    identity_id: str,
    include_archived: bool = False,
    search: str | None = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Page through an identity's conversations.

    Conversations the identity pinned come first, then the rest by last
    activity, newest first. ``search`` matches group name or description.

    Returns:
        {"conversations": [...], "page": int, "limit": int, "total": int}
    """
    if page < 1:
        raise ValidationError("page must be >= 1")
    if limit < 1:
        raise ValidationError("limit must be >= 1")

    conn = _get_conn(conn)
    where = "p.identity_id = ?"
    params: list[Any] = [identity_id]
    if not include_archived:
        where += " AND p.archived = 0"
    if search:
        pattern = f"%{_escape_like(search)}%"
        where += " AND (c.name LIKE ? ESCAPE '\\' OR c.description LIKE ? ESCAPE '\\')"
        params.extend([pattern, pattern])

    base = f"""
        FROM conversation_participants p
        JOIN conversations c ON c.conversation_id = p.conversation_id
        WHERE {where}
    """
    with timed_db_operation("list_conversations"):
        total = conn.execute(f"SELECT COUNT(*) {base}", tuple(params)).fetchone()[0]
        cursor = conn.execute(
            f"""SELECT {_CONVERSATION_COLUMNS},
                       p.is_admin, p.muted, p.pinned, p.archived, p.blocked, p.unread_count
                {base}
                ORDER BY p.pinned DESC,
                         COALESCE(c.last_activity_at, c.created_at) DESC,
                         c.conversation_id DESC
                LIMIT ? OFFSET ?""",
            (*params, limit, (page - 1) * limit),
        )
        rows = _rows_to_dicts(cursor.description, cursor.fetchall())
        conversations = _hydrate(conn, [_conversation_from_row(row) for row in rows])

    return {"conversations": conversations, "page": page, "limit": limit, "total": total}


# --- Creation ---


def _insert_conversation(
    conn: sqlite3.Connection,
    kind: ConversationKind,
    created_by: str,
    members: list[str],
    admins: set[str],
    key: str | None = None,
    name: str | None = None,
    description: str | None = None,
) -> str:
    conversation_id = new_id()
    now = utc_now()
    conn.execute(
        """INSERT INTO conversations
               (conversation_id, kind, direct_key, name, description, created_by,
                last_activity_at, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (conversation_id, kind.value, key, name, description, created_by, now, now),
    )
    conn.executemany(
        """INSERT INTO conversation_participants
               (conversation_id, identity_id, is_admin, joined_at)
           VALUES (?, ?, ?, ?)""",
        [(conversation_id, member, int(member in admins), now) for member in members],
    )
    return conversation_id


def find_or_create_direct(
    a: str,
    b: str,
    conn: sqlite3.Connection | None = None,
) -> tuple[dict, bool]:
    """Get the direct conversation between ``a`` and ``b``, creating it if needed.

    Safe under concurrent creation: the canonical pair key is UNIQUE, so a
    racer that loses the insert re-reads the winner's conversation.

    Returns:
        (conversation, created)
    """
    if not a or not b:
        raise ValidationError("Both participants are required")
    if a == b:
        raise ValidationError("A direct conversation needs two distinct participants")

    conn = _get_conn(conn)
    key = direct_key(a, b)

    row = conn.execute(
        "SELECT conversation_id FROM conversations WHERE direct_key = ?", (key,)
    ).fetchone()
    if row:
        return get_conversation(row[0], conn=conn), False

    try:
        with transaction(conn):
            conversation_id = _insert_conversation(
                conn, ConversationKind.DIRECT, a, sorted((a, b)), admins=set(), key=key
            )
    except sqlite3.IntegrityError as e:
        if not db.is_unique_violation(e):
            raise
        metrics.record_conflict("direct_conversation")
        logger.info("Lost direct conversation race for %s; using existing row", key)
        row = conn.execute(
            "SELECT conversation_id FROM conversations WHERE direct_key = ?", (key,)
        ).fetchone()
        return get_conversation(row[0], conn=conn), False

    return get_conversation(conversation_id, conn=conn), True


def _validate_group_text(name: str | None, description: str | None) -> None:
    if name is not None and len(name) > MAX_GROUP_NAME_LENGTH:
        raise ValidationError(f"Group name exceeds {MAX_GROUP_NAME_LENGTH} characters")
    if description is not None and len(description) > MAX_GROUP_DESCRIPTION_LENGTH:
        raise ValidationError(
            f"Group description exceeds {MAX_GROUP_DESCRIPTION_LENGTH} characters"
        )


def create_group(
    creator: str,
    participants: list[str],
    name: str | None = None,
    description: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Create a group conversation.

    The creator is always included and is the sole initial admin. At least
    three distinct participants are required after deduplication.
    """
    members = list(dict.fromkeys([creator, *participants]))
    if any(not member for member in members):
        raise ValidationError("Participant IDs must be non-empty")
    if len(members) < MIN_GROUP_PARTICIPANTS:
        raise ValidationError(
            f"A group needs at least {MIN_GROUP_PARTICIPANTS} distinct participants"
        )
    _validate_group_text(name, description)

    conn = _get_conn(conn)
    with transaction(conn):
        conversation_id = _insert_conversation(
            conn,
            ConversationKind.GROUP,
            creator,
            members,
            admins={creator},
            name=name,
            description=description,
        )
    return get_conversation(conversation_id, conn=conn)


# --- Membership and Admins ---


def _require_group(conversation: dict) -> None:
    if conversation["kind"] is not ConversationKind.GROUP:
        raise ValidationError("Only group conversations support this operation")


def _require_admin(conversation_id: str, actor: str, conn: sqlite3.Connection) -> dict:
    participant = get_participant(conversation_id, actor, conn=conn)
    if participant is None:
        raise PermissionDeniedError(f"{actor} is not a participant of this conversation")
    if not participant["is_admin"]:
        raise PermissionDeniedError("Only group admins can do that")
    return participant


def _admin_count_predicate() -> str:
    return (
        "(SELECT COUNT(*) FROM conversation_participants "
        "WHERE conversation_id = ? AND is_admin = 1) > 1"
    )


def add_participant(
    actor: str,
    conversation_id: str,
    target: str,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """Add ``target`` to a group. Actor must be an admin.

    Returns False if the target was already a participant.
    """
    if not target:
        raise ValidationError("Participant ID is required")
    conn = _get_conn(conn)
    with transaction(conn):
        _require_group(require_conversation(conversation_id, conn=conn))
        _require_admin(conversation_id, actor, conn)
        cursor = conn.execute(
            """INSERT OR IGNORE INTO conversation_participants
                   (conversation_id, identity_id, is_admin, joined_at)
               VALUES (?, ?, 0, ?)""",
            (conversation_id, target, utc_now()),
        )
    invalidate_participants(conversation_id)
    return cursor.rowcount > 0


def remove_participant(
    actor: str,
    conversation_id: str,
    target: str,
    conn: sqlite3.Connection | None = None,
) -> None:
    """Remove ``target`` from a group.

    Admins may remove anyone; any participant may remove themself. The
    target's admin status goes with them, and the last admin can never be
    removed: the DELETE only matches while another admin remains.
    """
    conn = _get_conn(conn)
    with transaction(conn):
        _require_group(require_conversation(conversation_id, conn=conn))
        if actor == target:
            if get_participant(conversation_id, actor, conn=conn) is None:
                raise PermissionDeniedError(f"{actor} is not a participant of this conversation")
        else:
            _require_admin(conversation_id, actor, conn)
            if get_participant(conversation_id, target, conn=conn) is None:
                raise NotFoundError(f"{target} is not a participant of this conversation")

        cursor = conn.execute(
            f"""DELETE FROM conversation_participants
                WHERE conversation_id = ? AND identity_id = ?
                  AND (is_admin = 0 OR {_admin_count_predicate()})""",
            (conversation_id, target, conversation_id),
        )
        if cursor.rowcount == 0:
            raise PermissionDeniedError("Cannot remove the last admin of a group")
    invalidate_participants(conversation_id)


def add_admin(
    actor: str,
    conversation_id: str,
    target: str,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """Promote a participant. Returns False if they were already an admin."""
    conn = _get_conn(conn)
    with transaction(conn):
        _require_group(require_conversation(conversation_id, conn=conn))
        _require_admin(conversation_id, actor, conn)
        if get_participant(conversation_id, target, conn=conn) is None:
            raise NotFoundError(f"{target} is not a participant of this conversation")
        cursor = conn.execute(
            """UPDATE conversation_participants SET is_admin = 1
               WHERE conversation_id = ? AND identity_id = ? AND is_admin = 0""",
            (conversation_id, target),
        )
    return cursor.rowcount > 0


def remove_admin(
    actor: str,
    conversation_id: str,
    target: str,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """Demote an admin. Returns False if the target was not an admin."""
    conn = _get_conn(conn)
    with transaction(conn):
        _require_group(require_conversation(conversation_id, conn=conn))
        _require_admin(conversation_id, actor, conn)
        participant = get_participant(conversation_id, target, conn=conn)
        if participant is None:
            raise NotFoundError(f"{target} is not a participant of this conversation")
        if not participant["is_admin"]:
            return False
        cursor = conn.execute(
            f"""UPDATE conversation_participants SET is_admin = 0
                WHERE conversation_id = ? AND identity_id = ? AND is_admin = 1
                  AND {_admin_count_predicate()}""",
            (conversation_id, target, conversation_id),
        )
        if cursor.rowcount == 0:
            raise PermissionDeniedError("Cannot remove the last admin of a group")
    return True


# --- Pins ---


def _require_pin_rights(conversation_id: str, actor: str, conn: sqlite3.Connection) -> None:
    conversation, participant = require_participant(conversation_id, actor, conn=conn)
    if conversation["kind"] is ConversationKind.GROUP and not participant["is_admin"]:
        raise PermissionDeniedError("Only group admins can pin messages")


def pin_message(
    actor: str,
    conversation_id: str,
    mid: str,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Pin a message. Re-pinning an already pinned message raises ConflictError."""
    conn = _get_conn(conn)
    try:
        with transaction(conn):
            _require_pin_rights(conversation_id, actor, conn)
            row = conn.execute(
                """SELECT 1 FROM messages
                   WHERE mid = ? AND conversation_id = ? AND deleted_at IS NULL""",
                (mid, conversation_id),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Message {mid} not found in this conversation")
            pinned_at = utc_now()
            conn.execute(
                """INSERT INTO pinned_messages (conversation_id, mid, pinned_by, pinned_at)
                   VALUES (?, ?, ?, ?)""",
                (conversation_id, mid, actor, pinned_at),
            )
    except sqlite3.IntegrityError as e:
        if db.is_unique_violation(e):
            raise ConflictError(f"Message {mid} is already pinned") from e
        raise
    return {"mid": mid, "pinned_by": actor, "pinned_at": pinned_at}


def unpin_message(
    actor: str,
    conversation_id: str,
    mid: str,
    conn: sqlite3.Connection | None = None,
) -> None:
    conn = _get_conn(conn)
    with transaction(conn):
        _require_pin_rights(conversation_id, actor, conn)
        cursor = conn.execute(
            "DELETE FROM pinned_messages WHERE conversation_id = ? AND mid = ?",
            (conversation_id, mid),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Message {mid} is not pinned")


# --- Settings ---


def _validate_settings_patch(patch: dict[str, Any]) -> None:
    if not patch:
        raise ValidationError("No settings to update")
    unknown = set(patch) - set(GROUP_SETTINGS) - set(PARTICIPANT_SETTINGS)
    if unknown:
        raise ValidationError(f"Unknown settings: {', '.join(sorted(unknown))}")
    for key, value in patch.items():
        if key in ("name", "description"):
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"{key} must be a string")
        elif not isinstance(value, bool):
            raise ValidationError(f"{key} must be a boolean")
    _validate_group_text(patch.get("name"), patch.get("description"))


def update_settings(
    actor: str,
    conversation_id: str,
    patch: dict[str, Any],
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Apply a settings patch and return the conversation as ``actor`` sees it.

    ``muted``, ``pinned``, ``archived`` and ``blocked`` only ever change the
    actor's own participant row (``blocked`` only in direct conversations).
    Group-wide keys require a group conversation and an admin actor.
    """
    _validate_settings_patch(patch)
    own = {k: v for k, v in patch.items() if k in PARTICIPANT_SETTINGS}
    shared = {k: v for k, v in patch.items() if k in GROUP_SETTINGS}

    conn = _get_conn(conn)
    with transaction(conn):
        conversation, participant = require_participant(conversation_id, actor, conn=conn)
        is_group = conversation["kind"] is ConversationKind.GROUP

        if "blocked" in own and is_group:
            raise ValidationError("Blocking applies to direct conversations only")
        if shared:
            if not is_group:
                raise ValidationError("Direct conversations have no group settings")
            if not participant["is_admin"]:
                raise PermissionDeniedError("Only group admins can change group settings")

        if own:
            assignments = ", ".join(f"{key} = ?" for key in own)
            conn.execute(
                f"""UPDATE conversation_participants SET {assignments}
                    WHERE conversation_id = ? AND identity_id = ?""",
                (*(int(v) for v in own.values()), conversation_id, actor),
            )
        if shared:
            assignments = ", ".join(f"{key} = ?" for key in shared)
            values = [v if k in ("name", "description") else int(v) for k, v in shared.items()]
            conn.execute(
                f"UPDATE conversations SET {assignments} WHERE conversation_id = ?",
                (*values, conversation_id),
            )

    return get_conversation(conversation_id, viewer=actor, conn=conn)


# --- Message bookkeeping (called by the message store) ---


def record_new_message(
    conn: sqlite3.Connection,
    conversation_id: str,
    mid: str,
    sender_id: str,
    created_at: str,
) -> None:
    """Update last message, activity and unread counters.

    Must run inside the transaction that inserts the message.
    """
    conn.execute(
        """UPDATE conversations
           SET last_message_mid = ?, last_activity_at = ?, message_count = message_count + 1
           WHERE conversation_id = ?""",
        (mid, created_at, conversation_id),
    )
    conn.execute(
        """UPDATE conversation_participants SET unread_count = unread_count + 1
           WHERE conversation_id = ? AND identity_id != ?""",
        (conversation_id, sender_id),
    )


def recompute_unread(conn: sqlite3.Connection, conversation_id: str, identity_id: str) -> int:
    """Reset an identity's unread counter to the number of messages it has not read.

    Must run inside a transaction.
    """
    conn.execute(
        """UPDATE conversation_participants
           SET unread_count = (
               SELECT COUNT(*) FROM messages m
               WHERE m.conversation_id = ? AND m.sender_id != ? AND m.deleted_at IS NULL
                 AND m.status != 'failed'
                 AND NOT EXISTS (
                     SELECT 1 FROM message_receipts r
                     WHERE r.mid = m.mid AND r.identity_id = ? AND r.kind = 'read'
                 )
                 AND NOT EXISTS (
                     SELECT 1 FROM message_hidden h
                     WHERE h.mid = m.mid AND h.identity_id = ?
                 )
           )
           WHERE conversation_id = ? AND identity_id = ?""",
        (conversation_id, identity_id, identity_id, identity_id, conversation_id, identity_id),
    )
    row = conn.execute(
        """SELECT unread_count FROM conversation_participants
           WHERE conversation_id = ? AND identity_id = ?""",
        (conversation_id, identity_id),
    ).fetchone()
    return row[0] if row else 0


def unread_counts(identity_id: str, conn: sqlite3.Connection | None = None) -> dict[str, int]:
    """Unread counter for every conversation the identity participates in."""
    conn = _get_conn(conn)
    rows = conn.execute(
        "SELECT conversation_id, unread_count FROM conversation_participants WHERE identity_id = ?",
        (identity_id,),
    ).fetchall()
    return {row[0]: row[1] for row in rows}
