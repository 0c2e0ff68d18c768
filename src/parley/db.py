"""Database layer for parley: connections, schema, migrations, identities.

The conversation and message stores (``parley.conversations`` and
``parley.messages``) build on the helpers here. Every store function takes
an optional ``conn``; without one it uses the calling thread's connection.

Connection Management:
    # Thread-local connection configured by PARLEY_DB (default: shared in-memory)
    init_db()
    identity = create_identity({"display_name": "Alice"})

    # Explicit connection, closed on exit
    with scoped_connection("/path/to/parley.db") as conn:
        init_db_with_conn(conn)
        create_identity(conn=conn)

    # Multi-statement atomic work
    with transaction(conn):
        conn.execute(...)
        conn.execute(...)
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, TypeVar

from uuid_extensions import uuid7 as make_uuid7

from .auth import derive_id, generate_secret, hash_secret, is_well_formed, verify_secret
from .errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Current schema version (increment when adding migrations)
SCHEMA_VERSION = 4

# Default attempts for run_with_retry when the store reports lock contention
DEFAULT_RETRY_ATTEMPTS = 3
RETRY_BASE_DELAY = 0.05

# Each thread gets its own SQLite connection; the API runs store calls in a
# thread pool.
_local = threading.local()


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string (lexicographically sortable)."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def new_id() -> str:
    """Time-ordered unique ID (UUIDv7) for conversations, messages and notifications."""
    return str(make_uuid7())


# --- Connection Management ---


def _configure(conn: sqlite3.Connection, wal: bool) -> sqlite3.Connection:
    if wal:
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


def get_connection(db_path: str | Path | None = None) -> sqlite3.Connection:
    """Get or create a database connection.

    Args:
        db_path: Explicit database path. When given, a NEW connection is
                 returned (not thread-local); ":memory:" gives a private
                 in-memory database. When None, the calling thread's
                 connection to $PARLEY_DB is returned. The default
                 ":memory:" uses a shared-cache database so every thread
                 sees the same data.
    """
    if db_path is not None:
        if str(db_path) == ":memory:":
            return _configure(sqlite3.connect(":memory:", check_same_thread=False), wal=False)
        return _configure(sqlite3.connect(str(db_path), check_same_thread=False), wal=True)

    if getattr(_local, "conn", None) is None:
        db_path_env = os.environ.get("PARLEY_DB", ":memory:")
        if db_path_env == ":memory:":
            # Process ID in the name keeps parallel test processes apart
            conn = sqlite3.connect(
                f"file:parley_{os.getpid()}?mode=memory&cache=shared",
                uri=True,
                check_same_thread=False,
            )
            _local.conn = _configure(conn, wal=False)
        else:
            _local.conn = _configure(
                sqlite3.connect(db_path_env, check_same_thread=False), wal=True
            )

    return _local.conn


@contextmanager
def scoped_connection(db_path: str | Path) -> Iterator[sqlite3.Connection]:
    """Open a connection that is closed when the block exits."""
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def close_db() -> None:
    """Close the calling thread's connection, if any."""
    if getattr(_local, "conn", None) is not None:
        _local.conn.close()
        _local.conn = None


def _get_conn(conn: sqlite3.Connection | None) -> sqlite3.Connection:
    if conn is not None:
        return conn
    return get_connection()


def _row_to_dict(cursor_description: Any, row: tuple | sqlite3.Row | None) -> dict | None:
    """Convert a row to a dict, whatever the connection's row_factory."""
    if row is None:
        return None
    if isinstance(row, sqlite3.Row):
        return dict(row)
    columns = [col[0] for col in cursor_description]
    return dict(zip(columns, row))


def _rows_to_dicts(cursor_description: Any, rows: list) -> list[dict]:
    if not rows:
        return []
    if isinstance(rows[0], sqlite3.Row):
        return [dict(row) for row in rows]
    columns = [col[0] for col in cursor_description]
    return [dict(zip(columns, row)) for row in rows]


def _placeholders(values: list | tuple) -> str:
    return ", ".join("?" for _ in values)


# --- Transactions and Retry ---


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block atomically.

    Takes the write lock up front (BEGIN IMMEDIATE) so two writers never
    deadlock upgrading shared locks. Nested use joins the outer transaction.
    """
    if conn.in_transaction:
        yield conn
        return

    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()


def is_lock_contention(error: Exception) -> bool:
    """True for SQLite errors that mean "try again later"."""
    if not isinstance(error, sqlite3.OperationalError):
        return False
    text = str(error).lower()
    return "locked" in text or "busy" in text


def is_unique_violation(error: Exception) -> bool:
    if not isinstance(error, sqlite3.IntegrityError):
        return False
    text = str(error).upper()
    return "UNIQUE" in text or "PRIMARY KEY" in text


def run_with_retry(
    operation: Callable[[], T],
    attempts: int = DEFAULT_RETRY_ATTEMPTS,
    base_delay: float = RETRY_BASE_DELAY,
) -> T:
    """Run a store operation, retrying lock contention with backoff.

    Only lock/busy errors are retried. Once the attempts are exhausted a
    TransientStoreError is raised; every other error propagates unchanged.
    """
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except sqlite3.OperationalError as e:
            if not is_lock_contention(e):
                raise
            if attempt >= attempts:
                raise TransientStoreError(
                    f"Store unavailable after {attempts} attempts: {e}"
                ) from e
            logger.warning(
                "Store contention (attempt %d/%d), retrying: %s", attempt, attempts, e
            )
            time.sleep(base_delay * 2 ** (attempt - 1))
    raise TransientStoreError("Store operation was not attempted")


# --- Schema and Migrations ---


def _ensure_schema_version_table(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            description TEXT
        )
    """)
    conn.commit()


def get_schema_version(conn: sqlite3.Connection | None = None) -> int:
    """Highest applied migration version, 0 for a fresh database."""
    conn = _get_conn(conn)
    _ensure_schema_version_table(conn)
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row and row[0] is not None else 0


def record_migration(conn: sqlite3.Connection, version: int, description: str) -> None:
    conn.execute(
        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
        (version, description),
    )
    conn.commit()


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    cursor = conn.execute(f"PRAGMA table_info({table})")
    return column in [row[1] for row in cursor.fetchall()]


def _migrate_001_add_unread_count(conn: sqlite3.Connection) -> None:
    """Migration 001: per-participant unread counters."""
    if not _column_exists(conn, "conversation_participants", "unread_count"):
        conn.execute(
            "ALTER TABLE conversation_participants "
            "ADD COLUMN unread_count INTEGER NOT NULL DEFAULT 0"
        )
    conn.commit()


def _migrate_002_add_client_message_id(conn: sqlite3.Connection) -> None:
    """Migration 002: client-supplied message IDs for send deduplication."""
    if not _column_exists(conn, "messages", "client_message_id"):
        conn.execute("ALTER TABLE messages ADD COLUMN client_message_id TEXT")
    conn.execute(
        """CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_client_id
           ON messages(conversation_id, sender_id, client_message_id)
           WHERE client_message_id IS NOT NULL"""
    )
    conn.commit()


def _migrate_003_add_expires_at(conn: sqlite3.Connection) -> None:
    """Migration 003: expiring messages."""
    if not _column_exists(conn, "messages", "expires_at"):
        conn.execute("ALTER TABLE messages ADD COLUMN expires_at TIMESTAMP")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_messages_expires "
        "ON messages(expires_at) WHERE expires_at IS NOT NULL"
    )
    conn.commit()


def _migrate_004_add_announced_at(conn: sqlite3.Connection) -> None:
    """Migration 004: record when message:new went out for a message."""
    if not _column_exists(conn, "messages", "announced_at"):
        conn.execute("ALTER TABLE messages ADD COLUMN announced_at TIMESTAMP")
        if _column_exists(conn, "messages", "status"):
            conn.execute(
                "UPDATE messages SET announced_at = created_at "
                "WHERE status NOT IN ('sending', 'failed')"
            )
    conn.commit()


# Migration registry: (version, description, migration_function)
MIGRATIONS: list[tuple[int, str, Callable[[sqlite3.Connection], None]]] = [
    (1, "Add unread_count to conversation_participants", _migrate_001_add_unread_count),
    (2, "Add client_message_id to messages", _migrate_002_add_client_message_id),
    (3, "Add expires_at to messages", _migrate_003_add_expires_at),
    (4, "Add announced_at to messages", _migrate_004_add_announced_at),
]


def run_migrations(conn: sqlite3.Connection | None = None) -> list[int]:
    """Apply pending migrations; returns the versions applied."""
    conn = _get_conn(conn)
    current_version = get_schema_version(conn)
    applied: list[int] = []

    for version, description, migrate_fn in MIGRATIONS:
        if version > current_version:
            try:
                migrate_fn(conn)
                record_migration(conn, version, description)
                applied.append(version)
            except Exception as e:
                raise RuntimeError(f"Migration {version} failed: {e}") from e

    return applied


# Indexes on columns added by migrations live in the migrations, so this
# script also runs cleanly against databases created before them.
SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS identities (
        id TEXT PRIMARY KEY,
        secret_hash TEXT,
        metadata JSON DEFAULT '{}',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        last_seen_at TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS conversations (
        conversation_id TEXT PRIMARY KEY,
        kind TEXT NOT NULL CHECK (kind IN ('direct', 'group')),
        direct_key TEXT UNIQUE,
        name TEXT,
        description TEXT,
        created_by TEXT NOT NULL,
        only_admins_can_send INTEGER NOT NULL DEFAULT 0,
        allow_media INTEGER NOT NULL DEFAULT 1,
        allow_replies INTEGER NOT NULL DEFAULT 1,
        allow_reactions INTEGER NOT NULL DEFAULT 1,
        allow_forwarding INTEGER NOT NULL DEFAULT 1,
        last_message_mid TEXT,
        last_activity_at TIMESTAMP,
        message_count INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP NOT NULL
    );

    CREATE TABLE IF NOT EXISTS conversation_participants (
        conversation_id TEXT NOT NULL
            REFERENCES conversations(conversation_id) ON DELETE CASCADE,
        identity_id TEXT NOT NULL,
        is_admin INTEGER NOT NULL DEFAULT 0,
        muted INTEGER NOT NULL DEFAULT 0,
        pinned INTEGER NOT NULL DEFAULT 0,
        archived INTEGER NOT NULL DEFAULT 0,
        blocked INTEGER NOT NULL DEFAULT 0,
        unread_count INTEGER NOT NULL DEFAULT 0,
        joined_at TIMESTAMP NOT NULL,
        PRIMARY KEY (conversation_id, identity_id)
    );

    CREATE INDEX IF NOT EXISTS idx_participants_identity
        ON conversation_participants(identity_id);

    CREATE TABLE IF NOT EXISTS messages (
        mid TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL
            REFERENCES conversations(conversation_id) ON DELETE CASCADE,
        sender_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        content TEXT,
        media JSON,
        media_filename TEXT,
        status TEXT NOT NULL DEFAULT 'sending',
        reply_to_mid TEXT,
        forwarded_from_mid TEXT,
        forwarded_from_conversation_id TEXT,
        forwarded_from_sender_id TEXT,
        client_message_id TEXT,
        edited_at TIMESTAMP,
        deleted_at TIMESTAMP,
        deleted_by TEXT,
        expires_at TIMESTAMP,
        announced_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_messages_conversation
        ON messages(conversation_id, created_at, mid);

    CREATE TABLE IF NOT EXISTS pinned_messages (
        conversation_id TEXT NOT NULL
            REFERENCES conversations(conversation_id) ON DELETE CASCADE,
        mid TEXT NOT NULL REFERENCES messages(mid) ON DELETE CASCADE,
        pinned_by TEXT NOT NULL,
        pinned_at TIMESTAMP NOT NULL,
        PRIMARY KEY (conversation_id, mid)
    );

    CREATE TABLE IF NOT EXISTS message_receipts (
        mid TEXT NOT NULL REFERENCES messages(mid) ON DELETE CASCADE,
        identity_id TEXT NOT NULL,
        kind TEXT NOT NULL CHECK (kind IN ('delivered', 'read')),
        at TIMESTAMP NOT NULL,
        PRIMARY KEY (mid, identity_id, kind)
    );

    CREATE TABLE IF NOT EXISTS message_reactions (
        mid TEXT NOT NULL REFERENCES messages(mid) ON DELETE CASCADE,
        identity_id TEXT NOT NULL,
        reaction TEXT NOT NULL,
        reacted_at TIMESTAMP NOT NULL,
        PRIMARY KEY (mid, identity_id)
    );

    CREATE TABLE IF NOT EXISTS message_edits (
        mid TEXT NOT NULL REFERENCES messages(mid) ON DELETE CASCADE,
        seq INTEGER NOT NULL,
        previous_content TEXT,
        edited_at TIMESTAMP NOT NULL,
        PRIMARY KEY (mid, seq)
    );

    CREATE TABLE IF NOT EXISTS message_hidden (
        mid TEXT NOT NULL REFERENCES messages(mid) ON DELETE CASCADE,
        identity_id TEXT NOT NULL,
        hidden_at TIMESTAMP NOT NULL,
        PRIMARY KEY (mid, identity_id)
    );

    CREATE TABLE IF NOT EXISTS notifications (
        notification_id TEXT PRIMARY KEY,
        recipient_id TEXT NOT NULL,
        type TEXT NOT NULL,
        title TEXT NOT NULL,
        message TEXT NOT NULL,
        data JSON DEFAULT '{}',
        created_at TIMESTAMP NOT NULL,
        read_at TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_notifications_recipient
        ON notifications(recipient_id, created_at);
"""

ALL_TABLES = (
    "notifications",
    "message_hidden",
    "message_edits",
    "message_reactions",
    "message_receipts",
    "pinned_messages",
    "messages",
    "conversation_participants",
    "conversations",
    "identities",
    "schema_version",
)


def init_db_with_conn(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    conn.commit()
    run_migrations(conn)


def init_db() -> None:
    """Initialize the schema on the calling thread's connection."""
    init_db_with_conn(get_connection())


def reset_db(conn: sqlite3.Connection | None = None) -> None:
    """Drop every table and recreate the schema (for tests)."""
    conn = _get_conn(conn)
    conn.execute("PRAGMA foreign_keys=OFF")
    conn.executescript("".join(f"DROP TABLE IF EXISTS {table};\n" for table in ALL_TABLES))
    conn.commit()
    conn.execute("PRAGMA foreign_keys=ON")
    init_db_with_conn(conn)


# --- Identity Operations ---


def _identity_from_row(row: dict) -> dict:
    return {
        "id": row["id"],
        "metadata": json.loads(row["metadata"] or "{}"),
        "created_at": row["created_at"],
        "last_seen_at": row["last_seen_at"],
    }


def create_identity(
    metadata: dict[str, Any] | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict[str, str]:
    """Issue a local credential. Returns {id, secret}; the secret is not stored."""
    conn = _get_conn(conn)

    secret = generate_secret()
    identity_id = derive_id(secret)

    conn.execute(
        "INSERT INTO identities (id, secret_hash, metadata, created_at) VALUES (?, ?, ?, ?)",
        (identity_id, hash_secret(secret), json.dumps(metadata or {}), utc_now()),
    )
    conn.commit()

    return {"id": identity_id, "secret": secret}


def get_identity(identity_id: str, conn: sqlite3.Connection | None = None) -> dict | None:
    conn = _get_conn(conn)
    cursor = conn.execute(
        "SELECT id, metadata, created_at, last_seen_at FROM identities WHERE id = ?",
        (identity_id,),
    )
    row = _row_to_dict(cursor.description, cursor.fetchone())
    return _identity_from_row(row) if row else None


def list_identities(conn: sqlite3.Connection | None = None) -> list[dict]:
    conn = _get_conn(conn)
    cursor = conn.execute(
        "SELECT id, metadata, created_at, last_seen_at FROM identities ORDER BY created_at"
    )
    return [_identity_from_row(row) for row in _rows_to_dicts(cursor.description, cursor.fetchall())]


def verify_identity_secret(secret: str, conn: sqlite3.Connection | None = None) -> str | None:
    """Resolve a local credential to its identity ID, or None if invalid."""
    from .cache import identity_hash_cache, identity_key

    if not is_well_formed(secret):
        return None

    identity_id = derive_id(secret)
    key = identity_key(identity_id)

    hit, secret_hash = identity_hash_cache.get(key)
    if not hit:
        conn = _get_conn(conn)
        row = conn.execute(
            "SELECT secret_hash FROM identities WHERE id = ?", (identity_id,)
        ).fetchone()
        secret_hash = row[0] if row else None
        identity_hash_cache.set(key, secret_hash, ttl=60 if secret_hash is None else None)

    if secret_hash and verify_secret(secret, secret_hash):
        return identity_id
    return None


def touch_last_seen(
    identity_id: str,
    seen_at: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> str:
    """Record when an identity was last online.

    Identities authenticated elsewhere get a credential-less row so their
    last-seen time still persists.
    """
    conn = _get_conn(conn)
    seen_at = seen_at or utc_now()
    conn.execute(
        """INSERT INTO identities (id, secret_hash, metadata, created_at, last_seen_at)
           VALUES (?, NULL, '{}', ?, ?)
           ON CONFLICT(id) DO UPDATE SET last_seen_at = excluded.last_seen_at""",
        (identity_id, seen_at, seen_at),
    )
    conn.commit()
    return seen_at


def get_last_seen(
    identity_ids: list[str],
    conn: sqlite3.Connection | None = None,
) -> dict[str, str | None]:
    """Map each identity ID to its persisted last-seen time (None if never)."""
    if not identity_ids:
        return {}
    conn = _get_conn(conn)
    rows = conn.execute(
        f"SELECT id, last_seen_at FROM identities WHERE id IN ({_placeholders(identity_ids)})",
        tuple(identity_ids),
    ).fetchall()
    found = {row[0]: row[1] for row in rows}
    return {identity_id: found.get(identity_id) for identity_id in identity_ids}


# --- Notification Operations ---


def insert_notification(
    recipient_id: str,
    type: str,
    title: str,
    message: str,
    data: dict[str, Any] | None = None,
    conn: sqlite3.Connection | None = None,
) -> str:
    """Persist a notification record; returns its ID."""
    conn = _get_conn(conn)
    notification_id = new_id()
    conn.execute(
        """INSERT INTO notifications
               (notification_id, recipient_id, type, title, message, data, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (notification_id, recipient_id, type, title, message, json.dumps(data or {}), utc_now()),
    )
    conn.commit()
    return notification_id


def list_notifications(
    recipient_id: str,
    unread_only: bool = False,
    limit: int = 50,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    conn = _get_conn(conn)
    query = """
        SELECT notification_id, recipient_id, type, title, message, data, created_at, read_at
        FROM notifications
        WHERE recipient_id = ?
    """
    if unread_only:
        query += " AND read_at IS NULL"
    query += " ORDER BY notification_id DESC LIMIT ?"

    cursor = conn.execute(query, (recipient_id, limit))
    rows = _rows_to_dicts(cursor.description, cursor.fetchall())
    for row in rows:
        row["data"] = json.loads(row["data"] or "{}")
    return rows


def mark_notification_read(
    recipient_id: str,
    notification_id: str,
    conn: sqlite3.Connection | None = None,
) -> bool:
    conn = _get_conn(conn)
    cursor = conn.execute(
        """UPDATE notifications SET read_at = ?
           WHERE notification_id = ? AND recipient_id = ? AND read_at IS NULL""",
        (utc_now(), notification_id, recipient_id),
    )
    conn.commit()
    return cursor.rowcount > 0
