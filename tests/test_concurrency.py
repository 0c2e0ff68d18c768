"""Concurrent writers against a file-backed database.

Every worker thread opens its own connection to $PARLEY_DB, so these runs
contend on real SQLite locks rather than sharing one connection.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from parley import conversations, db, messages
from parley.cache import clear_all_caches
from parley.models import MessageStatus
from parley.testing import make_identities

WORKERS = 8


@pytest.fixture
def file_db(monkeypatch, tmp_path):
    db.close_db()
    monkeypatch.setenv("PARLEY_DB", str(tmp_path / "parley.db"))
    db.init_db()
    clear_all_caches()
    yield
    db.close_db()


@pytest.fixture
def people(file_db):
    return make_identities(["Alice", "Bob"])


def race(fn, workers=WORKERS):
    """Release ``workers`` threads at once into ``fn(index)`` and collect results."""
    barrier = threading.Barrier(workers, timeout=10)

    def run(index):
        barrier.wait()
        try:
            return fn(index)
        finally:
            db.close_db()

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(run, index) for index in range(workers)]
        return [future.result() for future in futures]


class TestConcurrentWriters:
    def test_find_or_create_direct_makes_one_row(self, people):
        alice, bob = people["alice"], people["bob"]

        def open_direct(index):
            # Half the callers name the pair in the other order
            if index % 2:
                return conversations.find_or_create_direct(bob, alice)
            return conversations.find_or_create_direct(alice, bob)

        results = race(open_direct)

        assert len({conversation["conversation_id"] for conversation, _ in results}) == 1
        assert sum(1 for _, created in results if created) == 1
        count = db.get_connection().execute(
            "SELECT COUNT(*) FROM conversations WHERE kind = 'direct'"
        ).fetchone()[0]
        assert count == 1

    def test_concurrent_mark_read_records_one_receipt(self, people):
        alice, bob = people["alice"], people["bob"]
        conversation, _ = conversations.find_or_create_direct(alice, bob)
        message, _ = messages.send_message(alice, conversation["conversation_id"], "hello")
        messages.confirm_sent(message["mid"])

        results = race(lambda _: messages.mark_read(bob, [message["mid"]]))

        assert sum(len(updates) for updates in results) == 1
        conn = db.get_connection()
        receipts = conn.execute(
            "SELECT COUNT(*) FROM message_receipts WHERE mid = ? AND kind = 'read'",
            (message["mid"],),
        ).fetchone()[0]
        assert receipts == 1
        assert messages.get_message(message["mid"])["status"] is MessageStatus.READ
        assert conversations.get_participant(conversation["conversation_id"], bob)["unread_count"] == 0
