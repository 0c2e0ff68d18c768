"""Tests for schema creation, migrations and store helpers."""

import sqlite3

import pytest

from parley import db
from parley.errors import TransientStoreError


@pytest.fixture
def fresh_conn():
    """Private in-memory database, not the shared test one."""
    conn = db.get_connection(":memory:")
    yield conn
    conn.close()


class TestMigrations:
    def test_fresh_database_gets_current_version(self, fresh_conn):
        db.init_db_with_conn(fresh_conn)
        assert db.get_schema_version(fresh_conn) == db.SCHEMA_VERSION

    def test_migrations_are_idempotent(self, fresh_conn):
        db.init_db_with_conn(fresh_conn)
        assert db.run_migrations(fresh_conn) == []

    def test_upgrades_pre_migration_schema(self, fresh_conn):
        """A database created before the migrations gains the new columns."""
        fresh_conn.executescript("""
            CREATE TABLE conversations (
                conversation_id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
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
            CREATE TABLE conversation_participants (
                conversation_id TEXT NOT NULL,
                identity_id TEXT NOT NULL,
                is_admin INTEGER NOT NULL DEFAULT 0,
                muted INTEGER NOT NULL DEFAULT 0,
                pinned INTEGER NOT NULL DEFAULT 0,
                archived INTEGER NOT NULL DEFAULT 0,
                blocked INTEGER NOT NULL DEFAULT 0,
                joined_at TIMESTAMP NOT NULL,
                PRIMARY KEY (conversation_id, identity_id)
            );
            CREATE TABLE messages (
                mid TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                sender_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                content TEXT,
                created_at TIMESTAMP NOT NULL
            );
        """)
        applied = db.run_migrations(fresh_conn)

        assert applied == [1, 2, 3, 4]
        assert db._column_exists(fresh_conn, "conversation_participants", "unread_count")
        assert db._column_exists(fresh_conn, "messages", "client_message_id")
        assert db._column_exists(fresh_conn, "messages", "expires_at")
        assert db._column_exists(fresh_conn, "messages", "announced_at")


class TestRetry:
    def test_retries_lock_contention_then_succeeds(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise sqlite3.OperationalError("database is locked")
            return "ok"

        assert db.run_with_retry(flaky, attempts=3, base_delay=0) == "ok"
        assert len(calls) == 3

    def test_exhausted_retries_raise_transient_error(self):
        def locked():
            raise sqlite3.OperationalError("database table is locked")

        with pytest.raises(TransientStoreError):
            db.run_with_retry(locked, attempts=2, base_delay=0)

    def test_other_errors_propagate_unchanged(self):
        def broken():
            raise sqlite3.OperationalError("no such table: nope")

        with pytest.raises(sqlite3.OperationalError):
            db.run_with_retry(broken, attempts=3, base_delay=0)


class TestIdentities:
    def test_create_and_verify(self):
        created = db.create_identity({"display_name": "Alice"})
        assert len(created["id"]) == 16
        assert len(created["secret"]) == 64
        assert db.verify_identity_secret(created["secret"]) == created["id"]

    def test_wrong_secret_rejected(self):
        db.create_identity()
        assert db.verify_identity_secret("0" * 64) is None

    def test_last_seen_roundtrip(self):
        created = db.create_identity()
        seen = db.touch_last_seen(created["id"])
        assert db.get_last_seen([created["id"], "unknown"]) == {
            created["id"]: seen,
            "unknown": None,
        }

    def test_touch_last_seen_for_external_identity(self):
        db.touch_last_seen("external-1", "2026-01-01T00:00:00+00:00")
        identity = db.get_identity("external-1")
        assert identity["last_seen_at"] == "2026-01-01T00:00:00+00:00"
        # No credential was issued, so nothing can authenticate as it
        assert db.verify_identity_secret("anything") is None

    def test_new_ids_sort_by_creation(self):
        ids = [db.new_id() for _ in range(50)]
        assert ids == sorted(ids)
