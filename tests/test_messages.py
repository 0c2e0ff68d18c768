"""Tests for the message store."""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from parley import conversations, db, messages
from parley.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from parley.metrics import metrics
from parley.models import MessageKind, MessageStatus, ReactionKind


def _iso(delta: timedelta) -> str:
    return (datetime.now(timezone.utc) + delta).isoformat(timespec="microseconds")


@pytest.fixture
def direct(identities):
    conversation, _ = conversations.find_or_create_direct(identities["alice"], identities["bob"])
    return conversation["conversation_id"]


@pytest.fixture
def group(identities):
    conversation = conversations.create_group(
        identities["alice"], [identities["bob"], identities["carol"]], name="Team"
    )
    return conversation["conversation_id"]


def send(sender, cid, content="hello", **kwargs):
    message, _ = messages.send_message(sender, cid, content, **kwargs)
    return message


class TestSend:
    def test_new_message_starts_sending(self, identities, direct):
        message, created = messages.send_message(identities["alice"], direct, "hi")

        assert created is True
        assert message["status"] is MessageStatus.SENDING
        assert message["kind"] is MessageKind.TEXT
        assert message["delivered_to"] == []
        assert message["read_by"] == []

    def test_confirm_sent(self, identities, direct):
        message = send(identities["alice"], direct)
        assert messages.confirm_sent(message["mid"]) is MessageStatus.SENT
        # Confirming again never moves it back
        assert messages.confirm_sent(message["mid"]) is MessageStatus.SENT

    def test_mark_failed_only_from_sending(self, identities, direct):
        first = send(identities["alice"], direct)
        assert messages.mark_failed(first["mid"]) is True

        second = send(identities["alice"], direct)
        messages.confirm_sent(second["mid"])
        assert messages.mark_failed(second["mid"]) is False

    def test_claim_announcement_once_after_confirm(self, identities, direct):
        message = send(identities["alice"], direct)
        assert messages.claim_announcement(message["mid"]) is False

        messages.confirm_sent(message["mid"])
        assert messages.claim_announcement(message["mid"]) is True
        assert messages.claim_announcement(message["mid"]) is False

    def test_failed_messages_are_never_announced(self, identities, direct):
        message = send(identities["alice"], direct)
        messages.mark_failed(message["mid"])
        assert messages.claim_announcement(message["mid"]) is False

    def test_failed_message_leaves_conversation_counters(self, identities, direct):
        kept = send(identities["alice"], direct)
        messages.confirm_sent(kept["mid"])
        failed = send(identities["alice"], direct)
        messages.mark_failed(failed["mid"])

        conversation = conversations.get_conversation(direct)
        assert conversation["last_message_mid"] == kept["mid"]
        assert conversation["message_count"] == 1
        assert conversations.get_participant(direct, identities["bob"])["unread_count"] == 1

    def test_send_updates_conversation(self, identities, direct):
        message = send(identities["alice"], direct)
        conversation = conversations.get_conversation(direct)

        assert conversation["last_message_mid"] == message["mid"]
        assert conversation["message_count"] == 1
        assert conversations.get_participant(direct, identities["bob"])["unread_count"] == 1
        assert conversations.get_participant(direct, identities["alice"])["unread_count"] == 0

    def test_non_participant_cannot_send(self, identities, direct):
        with pytest.raises(PermissionDeniedError):
            send(identities["carol"], direct)

    def test_unknown_conversation(self, identities):
        with pytest.raises(NotFoundError):
            send(identities["alice"], "missing")

    def test_content_bounds(self, identities, direct):
        with pytest.raises(ValidationError):
            send(identities["alice"], direct, "")
        with pytest.raises(ValidationError):
            send(identities["alice"], direct, "   ")
        with pytest.raises(ValidationError):
            send(identities["alice"], direct, "x" * 2001)
        assert send(identities["alice"], direct, "x" * 2000)["content"] == "x" * 2000

    def test_custom_max_length(self, identities, direct):
        with pytest.raises(ValidationError):
            send(identities["alice"], direct, "x" * 11, max_length=10)

    def test_media_message(self, identities, direct):
        message = send(
            identities["alice"],
            direct,
            None,
            kind="image",
            media={"url": "https://cdn.example.com/a.png", "filename": "a.png", "size": 1024},
        )
        assert message["kind"] is MessageKind.IMAGE
        assert message["media"]["filename"] == "a.png"

    def test_media_kind_requires_url(self, identities, direct):
        with pytest.raises(ValidationError):
            send(identities["alice"], direct, None, kind="file", media={"filename": "a.pdf"})

    def test_text_cannot_carry_media(self, identities, direct):
        with pytest.raises(ValidationError):
            send(identities["alice"], direct, "hi", media={"url": "https://x"})

    def test_location_needs_content(self, identities, direct):
        with pytest.raises(ValidationError):
            send(identities["alice"], direct, None, kind="location")
        message = send(identities["alice"], direct, "52.52,13.40", kind="location")
        assert message["kind"] is MessageKind.LOCATION

    def test_unknown_kind(self, identities, direct):
        with pytest.raises(ValidationError):
            send(identities["alice"], direct, "hi", kind="sticker")

    def test_reply_to_same_conversation(self, identities, direct, group):
        original = send(identities["alice"], direct)
        reply = send(identities["bob"], direct, "reply", reply_to=original["mid"])
        assert reply["reply_to"] == original["mid"]

        with pytest.raises(NotFoundError):
            send(identities["bob"], group, "wrong place", reply_to=original["mid"])

    def test_client_message_id_dedup(self, identities, direct):
        first, created = messages.send_message(
            identities["alice"], direct, "hi", client_message_id="c-1"
        )
        again, created_again = messages.send_message(
            identities["alice"], direct, "hi", client_message_id="c-1"
        )

        assert created is True
        assert created_again is False
        assert again["mid"] == first["mid"]
        assert conversations.get_conversation(direct)["message_count"] == 1

    def test_client_message_id_race(self, identities, direct, monkeypatch):
        """A unique-key failure on insert returns the message that won."""
        winner, _ = messages.send_message(
            identities["alice"], direct, "hi", client_message_id="c-2"
        )
        real_find = messages._find_by_client_id
        calls = []

        def find_after_first(*args):
            calls.append(1)
            return None if len(calls) == 1 else real_find(*args)

        monkeypatch.setattr(messages, "_find_by_client_id", find_after_first)
        message, created = messages.send_message(
            identities["alice"], direct, "hi", client_message_id="c-2"
        )

        assert created is False
        assert message["mid"] == winner["mid"]
        assert metrics.counter("conflicts.client_message_id") == 1

    def test_expires_at_must_be_future(self, identities, direct):
        with pytest.raises(ValidationError):
            send(identities["alice"], direct, expires_at=_iso(timedelta(minutes=-1)))
        with pytest.raises(ValidationError):
            send(identities["alice"], direct, expires_at="not-a-date")


class TestSendRestrictions:
    def test_only_admins_can_send(self, identities, group):
        conversations.update_settings(identities["alice"], group, {"only_admins_can_send": True})
        with pytest.raises(PermissionDeniedError):
            send(identities["bob"], group)
        send(identities["alice"], group)

    def test_media_disabled(self, identities, group):
        conversations.update_settings(identities["alice"], group, {"allow_media": False})
        with pytest.raises(PermissionDeniedError):
            send(identities["bob"], group, None, kind="image", media={"url": "https://x/a.png"})

    def test_replies_disabled(self, identities, group):
        original = send(identities["alice"], group)
        conversations.update_settings(identities["alice"], group, {"allow_replies": False})
        with pytest.raises(PermissionDeniedError):
            send(identities["bob"], group, "re", reply_to=original["mid"])

    def test_blocked_direct(self, identities, direct):
        conversations.update_settings(identities["bob"], direct, {"blocked": True})
        with pytest.raises(PermissionDeniedError):
            send(identities["alice"], direct)
        with pytest.raises(PermissionDeniedError):
            send(identities["bob"], direct)


class TestReceipts:
    def test_delivery_advances_status(self, identities, direct):
        message = send(identities["alice"], direct)
        messages.confirm_sent(message["mid"])

        updates = messages.mark_delivered(identities["bob"], [message["mid"]])

        assert len(updates) == 1
        assert updates[0]["status"] is MessageStatus.DELIVERED
        assert updates[0]["status_changed"] is True
        loaded = messages.get_message(message["mid"])
        assert [r["identity_id"] for r in loaded["delivered_to"]] == [identities["bob"]]

    def test_duplicate_acks_are_idempotent(self, identities, direct):
        message = send(identities["alice"], direct)
        messages.confirm_sent(message["mid"])
        messages.mark_delivered(identities["bob"], [message["mid"]])

        assert messages.mark_delivered(identities["bob"], [message["mid"], message["mid"]]) == []
        assert len(messages.get_message(message["mid"])["delivered_to"]) == 1

    def test_read_before_delivered(self, identities, direct):
        """A read ack arriving first implies delivery and never regresses."""
        message = send(identities["alice"], direct)
        messages.confirm_sent(message["mid"])

        messages.mark_read(identities["bob"], [message["mid"]])
        late = messages.mark_delivered(identities["bob"], [message["mid"]])

        loaded = messages.get_message(message["mid"])
        assert loaded["status"] is MessageStatus.READ
        assert late == []
        assert len(loaded["delivered_to"]) == 1
        assert len(loaded["read_by"]) == 1

    def test_sender_acks_are_ignored(self, identities, direct):
        message = send(identities["alice"], direct)
        messages.confirm_sent(message["mid"])

        assert messages.mark_read(identities["alice"], [message["mid"]]) == []
        assert messages.get_message(message["mid"])["status"] is MessageStatus.SENT

    def test_unknown_mid(self, identities, direct):
        with pytest.raises(NotFoundError):
            messages.mark_delivered(identities["bob"], ["missing"])

    def test_non_participant_ack(self, identities, direct):
        message = send(identities["alice"], direct)
        with pytest.raises(PermissionDeniedError):
            messages.mark_delivered(identities["carol"], [message["mid"]])

    def test_group_status_is_maximum_observed(self, identities, group):
        message = send(identities["alice"], group)
        messages.confirm_sent(message["mid"])

        messages.mark_read(identities["bob"], [message["mid"]])
        messages.mark_delivered(identities["carol"], [message["mid"]])

        loaded = messages.get_message(message["mid"])
        assert loaded["status"] is MessageStatus.READ
        assert {r["identity_id"] for r in loaded["delivered_to"]} == {
            identities["bob"],
            identities["carol"],
        }

    def test_mark_conversation_read_resets_unread(self, identities, direct):
        for text in ("one", "two", "three"):
            messages.confirm_sent(send(identities["alice"], direct, text)["mid"])

        updates = messages.mark_conversation_read(identities["bob"], direct)

        assert len(updates) == 3
        assert conversations.get_participant(direct, identities["bob"])["unread_count"] == 0
        assert messages.mark_conversation_read(identities["bob"], direct) == []


class TestReactions:
    def test_add_replace_unchanged(self, identities, direct):
        message = send(identities["alice"], direct)
        mid = message["mid"]

        assert messages.add_reaction(identities["bob"], mid, "like")["action"] == "added"
        assert messages.add_reaction(identities["bob"], mid, "love")["action"] == "replaced"
        result = messages.add_reaction(identities["bob"], mid, "love")

        assert result["action"] == "unchanged"
        assert result["reaction_counts"] == {"love": 1}
        assert len(result["reactions"]) == 1

    def test_unknown_reaction(self, identities, direct):
        message = send(identities["alice"], direct)
        with pytest.raises(ValidationError):
            messages.add_reaction(identities["bob"], message["mid"], "thumbsup")

    def test_remove_reaction(self, identities, direct):
        message = send(identities["alice"], direct)
        messages.add_reaction(identities["bob"], message["mid"], "haha")

        assert messages.remove_reaction(identities["bob"], message["mid"], "sad")["action"] == "unchanged"
        assert messages.remove_reaction(identities["bob"], message["mid"])["action"] == "removed"
        assert messages.get_reaction(identities["bob"], message["mid"]) is None

    def test_toggle(self, identities, direct):
        mid = send(identities["alice"], direct)["mid"]
        bob = identities["bob"]

        assert messages.toggle_reaction(bob, mid, "like")["action"] == "added"
        assert messages.toggle_reaction(bob, mid, "wow")["action"] == "replaced"
        assert messages.toggle_reaction(bob, mid, "wow")["action"] == "removed"
        assert messages.get_reaction(bob, mid) is None

    def test_toggle_race_applies_inverse(self, identities, direct, monkeypatch):
        """Second writer of the same toggle removes what the first one added."""
        mid = send(identities["alice"], direct)["mid"]
        bob = identities["bob"]
        messages.add_reaction(bob, mid, "like")

        real_get = messages.get_reaction
        calls = []

        def stale_then_real(identity, mid, conn=None):
            calls.append(1)
            return None if len(calls) == 1 else real_get(identity, mid, conn=conn)

        monkeypatch.setattr(messages, "get_reaction", stale_then_real)
        result = messages.toggle_reaction(bob, mid, ReactionKind.LIKE)

        assert result["action"] == "removed"
        assert result["reactions"] == []
        assert metrics.counter("conflicts.reaction_toggle") == 1

    def test_reactions_disabled(self, identities, group):
        mid = send(identities["bob"], group)["mid"]
        conversations.update_settings(identities["alice"], group, {"allow_reactions": False})
        with pytest.raises(PermissionDeniedError):
            messages.add_reaction(identities["carol"], mid, "like")


class TestEdit:
    def test_edit_keeps_history(self, identities, direct):
        mid = send(identities["alice"], direct, "first")["mid"]

        messages.edit_message(identities["alice"], mid, "second")
        edited = messages.edit_message(identities["alice"], mid, "third")

        assert edited["content"] == "third"
        assert edited["edited"] is True
        assert [e["content"] for e in edited["edit_history"]] == ["first", "second"]
        assert [e["seq"] for e in edited["edit_history"]] == [1, 2]

    def test_same_content_is_noop(self, identities, direct):
        mid = send(identities["alice"], direct, "same")["mid"]
        result = messages.edit_message(identities["alice"], mid, "same")
        assert result["edited"] is False

    def test_only_sender_edits(self, identities, direct):
        mid = send(identities["alice"], direct)["mid"]
        with pytest.raises(PermissionDeniedError):
            messages.edit_message(identities["bob"], mid, "hijack")

    def test_only_text_is_editable(self, identities, direct):
        mid = send(identities["alice"], direct, "0,0", kind="location")["mid"]
        with pytest.raises(ValidationError):
            messages.edit_message(identities["alice"], mid, "1,1")

    def test_edit_deleted_message(self, identities, direct):
        mid = send(identities["alice"], direct)["mid"]
        messages.delete_message(identities["alice"], mid, for_everyone=True)
        with pytest.raises(NotFoundError):
            messages.edit_message(identities["alice"], mid, "too late")

    def test_concurrent_edit_conflicts(self, identities, direct, monkeypatch):
        """The compare-and-set fails when content changed after it was read."""
        mid = send(identities["alice"], direct, "original")["mid"]
        real_require = messages.require_visible

        def require_then_race(mid_, viewer, conn=None):
            result = real_require(mid_, viewer, conn=conn)
            conn.execute("UPDATE messages SET content = 'raced' WHERE mid = ?", (mid_,))
            return result

        monkeypatch.setattr(messages, "require_visible", require_then_race)
        with pytest.raises(ConflictError):
            messages.edit_message(identities["alice"], mid, "mine")

        monkeypatch.undo()
        assert messages.get_message(mid)["content"] == "original"


class TestDelete:
    def test_delete_for_everyone(self, identities, direct):
        mid = send(identities["alice"], direct)["mid"]
        result = messages.delete_message(identities["alice"], mid, for_everyone=True)

        assert result["for_everyone"] is True
        assert messages.get_message(mid) is None
        # Soft delete: the row is still there
        row = db.get_connection().execute(
            "SELECT deleted_by FROM messages WHERE mid = ?", (mid,)
        ).fetchone()
        assert row[0] == identities["alice"]

    def test_only_sender_deletes_for_everyone(self, identities, direct):
        mid = send(identities["alice"], direct)["mid"]
        with pytest.raises(PermissionDeniedError):
            messages.delete_message(identities["bob"], mid, for_everyone=True)

    def test_delete_for_me_hides_only_for_actor(self, identities, direct):
        mid = send(identities["alice"], direct)["mid"]
        messages.delete_message(identities["bob"], mid)

        assert messages.get_message(mid, viewer=identities["bob"]) is None
        assert messages.get_message(mid, viewer=identities["alice"]) is not None
        assert conversations.get_participant(direct, identities["bob"])["unread_count"] == 0

    def test_delete_twice(self, identities, direct):
        mid = send(identities["alice"], direct)["mid"]
        messages.delete_message(identities["alice"], mid, for_everyone=True)
        with pytest.raises(NotFoundError):
            messages.delete_message(identities["alice"], mid, for_everyone=True)

    def test_delete_repairs_conversation(self, identities, direct):
        first = send(identities["alice"], direct, "first")
        second = send(identities["alice"], direct, "second")
        conversations.pin_message(identities["bob"], direct, second["mid"])

        messages.delete_message(identities["alice"], second["mid"], for_everyone=True)

        conversation = conversations.get_conversation(direct)
        assert conversation["last_message_mid"] == first["mid"]
        assert conversation["pinned_messages"] == []
        assert conversations.get_participant(direct, identities["bob"])["unread_count"] == 1

    def test_reply_to_deleted_message(self, identities, direct):
        mid = send(identities["alice"], direct)["mid"]
        messages.delete_message(identities["alice"], mid, for_everyone=True)
        with pytest.raises(NotFoundError):
            send(identities["bob"], direct, "re", reply_to=mid)


class TestForward:
    def test_forward_copies_with_provenance(self, identities, direct, group):
        original = send(identities["alice"], direct, "fwd me")
        copy = messages.forward_message(identities["alice"], original["mid"], group)

        assert copy["mid"] != original["mid"]
        assert copy["conversation_id"] == group
        assert copy["sender_id"] == identities["alice"]
        assert copy["content"] == "fwd me"
        assert copy["forwarded_from"] == {
            "mid": original["mid"],
            "conversation_id": direct,
            "sender_id": identities["alice"],
        }
        # The original is untouched
        assert messages.get_message(original["mid"])["forwarded_from"] is None

    def test_forward_requires_target_participation(self, identities, direct):
        other, _ = conversations.find_or_create_direct(identities["bob"], identities["carol"])
        mid = send(identities["alice"], direct)["mid"]
        with pytest.raises(PermissionDeniedError):
            messages.forward_message(identities["alice"], mid, other["conversation_id"])

    def test_forwarding_disabled(self, identities, direct, group):
        mid = send(identities["bob"], group)["mid"]
        conversations.update_settings(identities["alice"], group, {"allow_forwarding": False})
        with pytest.raises(PermissionDeniedError):
            messages.forward_message(identities["bob"], mid, direct)


class TestHistory:
    def test_latest_page_in_chronological_order(self, identities, direct):
        sent = [send(identities["alice"], direct, f"m{i}") for i in range(5)]
        page = messages.get_history(direct, identities["bob"], limit=3)

        assert [m["mid"] for m in page] == [m["mid"] for m in sent[2:]]

    def test_before_cursor(self, identities, direct):
        sent = [send(identities["alice"], direct, f"m{i}") for i in range(5)]
        page = messages.get_history(direct, identities["bob"], before=sent[3]["created_at"], limit=2)

        assert [m["content"] for m in page] == ["m1", "m2"]

    def test_after_cursor(self, identities, direct):
        sent = [send(identities["alice"], direct, f"m{i}") for i in range(5)]
        page = messages.get_history(direct, identities["bob"], after=sent[1]["created_at"], limit=2)

        assert [m["content"] for m in page] == ["m2", "m3"]

    def test_excludes_deleted_hidden_and_expired(self, identities, direct):
        keep = send(identities["alice"], direct, "keep")
        gone = send(identities["alice"], direct, "gone")
        hidden = send(identities["alice"], direct, "hidden")
        expiring = send(identities["alice"], direct, "soon", expires_at=_iso(timedelta(hours=1)))
        messages.delete_message(identities["alice"], gone["mid"], for_everyone=True)
        messages.delete_message(identities["bob"], hidden["mid"])

        bob_view = [m["mid"] for m in messages.get_history(direct, identities["bob"])]
        assert bob_view == [keep["mid"], expiring["mid"]]

        later = _iso(timedelta(hours=2))
        messages.expire_messages(now=later)
        alice_view = [m["mid"] for m in messages.get_history(direct, identities["alice"])]
        assert alice_view == [keep["mid"], hidden["mid"]]

    def test_non_participant(self, identities, direct):
        with pytest.raises(PermissionDeniedError):
            messages.get_history(direct, identities["carol"])

    def test_limit_bounds(self, identities, direct):
        with pytest.raises(ValidationError):
            messages.get_history(direct, identities["bob"], limit=0)
        with pytest.raises(ValidationError):
            messages.get_history(direct, identities["bob"], limit=201)

    def test_invalid_cursor(self, identities, direct):
        with pytest.raises(ValidationError):
            messages.get_history(direct, identities["bob"], before="yesterday")


class TestSearch:
    def test_search_scoped_to_participation(self, identities, direct, group):
        send(identities["alice"], direct, "quarterly report draft")
        send(identities["bob"], group, "report is late")
        other, _ = conversations.find_or_create_direct(identities["bob"], identities["carol"])
        send(identities["bob"], other["conversation_id"], "secret report")

        found = messages.search_messages(identities["alice"], "REPORT")
        assert [m["content"] for m in found] == ["report is late", "quarterly report draft"]

    def test_search_in_one_conversation(self, identities, direct, group):
        send(identities["alice"], direct, "lunch?")
        send(identities["alice"], group, "lunch at noon")

        found = messages.search_messages(identities["alice"], "lunch", conversation_id=group)
        assert [m["content"] for m in found] == ["lunch at noon"]

    def test_search_matches_media_filename(self, identities, direct):
        send(
            identities["alice"],
            direct,
            None,
            kind="file",
            media={"url": "https://x/report.pdf", "filename": "budget_2026.pdf"},
        )
        assert len(messages.search_messages(identities["bob"], "budget_")) == 1

    def test_wildcards_are_literal(self, identities, direct):
        send(identities["alice"], direct, "100 percent")
        assert messages.search_messages(identities["bob"], "%") == []

    def test_empty_query(self, identities):
        with pytest.raises(ValidationError):
            messages.search_messages(identities["alice"], "  ")


class TestExpiry:
    def test_expire_messages(self, identities, direct):
        expiring = send(identities["alice"], direct, "soon", expires_at=_iso(timedelta(minutes=5)))
        send(identities["alice"], direct, "stays")
        later = _iso(timedelta(minutes=10))

        assert [m["mid"] for m in messages.list_expired(now=later)] == [expiring["mid"]]
        expired = messages.expire_messages(now=later)

        assert expired == [{"mid": expiring["mid"], "conversation_id": direct}]
        assert messages.expire_messages(now=later) == []
        row = db.get_connection().execute(
            "SELECT deleted_at, deleted_by FROM messages WHERE mid = ?", (expiring["mid"],)
        ).fetchone()
        assert row[0] is not None
        assert row[1] is None

    def test_latest_message_ids(self, identities, direct, group):
        send(identities["alice"], direct, "a")
        last = send(identities["alice"], direct, "b")
        assert messages.latest_message_ids([direct, group]) == {direct: last["mid"]}


class TestStoreErrors:
    def test_integrity_errors_other_than_client_id_propagate(self, identities, direct, monkeypatch):
        def broken(*args, **kwargs):
            raise sqlite3.IntegrityError("NOT NULL constraint failed: messages.kind")

        monkeypatch.setattr(conversations, "record_new_message", broken)
        with pytest.raises(sqlite3.IntegrityError):
            send(identities["alice"], direct)
        assert conversations.get_conversation(direct)["message_count"] == 0
