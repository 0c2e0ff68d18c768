"""Tests for the websocket gateway."""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from parley.api import app
from parley.gateway import Command, HANDLERS, dispatch
from parley.testing import connect, make_credentials


async def _direct(service, identities):
    conversation, _ = await service.open_direct(identities["alice"], identities["bob"])
    return conversation["conversation_id"]


class TestDispatch:
    def test_every_command_has_a_handler(self):
        assert set(HANDLERS) == set(Command)

    @pytest.mark.asyncio
    async def test_ping(self, parley_service, identities):
        alice = await connect(parley_service, identities["alice"])
        reply = await dispatch(parley_service, alice, {"type": "ping", "ref": "r1"})

        assert reply.type == "ping:ok"
        assert reply.ref == "r1"

    @pytest.mark.asyncio
    async def test_send_and_history(self, parley_service, identities):
        cid = await _direct(parley_service, identities)
        alice = await connect(parley_service, identities["alice"])

        sent = await dispatch(
            parley_service,
            alice,
            {"type": "send", "data": {"conversation_id": cid, "content": "hi"}, "ref": "s1"},
        )
        assert sent.type == "send:ok"
        mid = sent.data["message"]["mid"]

        history = await dispatch(
            parley_service, alice, {"type": "history", "data": {"conversation_id": cid}}
        )
        assert [m["mid"] for m in history.data["messages"]] == [mid]

    @pytest.mark.asyncio
    async def test_malformed_envelope(self, parley_service, identities):
        alice = await connect(parley_service, identities["alice"])
        reply = await dispatch(parley_service, alice, ["not", "an", "object"])

        assert reply.type == "error"
        assert reply.data["code"] == "validation_error"

    @pytest.mark.asyncio
    async def test_unknown_type_echoes_ref(self, parley_service, identities):
        alice = await connect(parley_service, identities["alice"])
        reply = await dispatch(parley_service, alice, {"type": "teleport", "ref": "x"})

        assert reply.type == "error"
        assert reply.ref == "x"
        assert "teleport" in reply.data["message"]

    @pytest.mark.asyncio
    async def test_invalid_payload_names_field(self, parley_service, identities):
        alice = await connect(parley_service, identities["alice"])
        reply = await dispatch(
            parley_service, alice, {"type": "react", "data": {"mid": "m1", "reaction": "meh"}}
        )

        assert reply.data["code"] == "validation_error"
        assert reply.data["message"].startswith("reaction:")

    @pytest.mark.asyncio
    async def test_domain_errors_keep_their_code(self, parley_service, identities):
        cid = await _direct(parley_service, identities)
        carol = await connect(parley_service, identities["carol"])

        reply = await dispatch(
            parley_service, carol, {"type": "join", "data": {"conversation_id": cid}, "ref": "j"}
        )

        assert reply.type == "error"
        assert reply.data["code"] == "permission_denied"
        assert reply.ref == "j"

    @pytest.mark.asyncio
    async def test_unexpected_errors_become_internal_error(
        self, parley_service, identities, monkeypatch
    ):
        async def boom(*args, **kwargs):
            raise RuntimeError("bug")

        monkeypatch.setattr(parley_service, "sync", boom)
        alice = await connect(parley_service, identities["alice"])

        reply = await dispatch(parley_service, alice, {"type": "sync"})

        assert reply.data == {"code": "internal_error", "message": "Internal error"}

    @pytest.mark.asyncio
    async def test_reactions_and_receipts(self, parley_service, identities):
        cid = await _direct(parley_service, identities)
        alice = await connect(parley_service, identities["alice"])
        bob = await connect(parley_service, identities["bob"])
        sent = await dispatch(
            parley_service,
            alice,
            {"type": "send", "data": {"conversation_id": cid, "content": "hi"}},
        )
        mid = sent.data["message"]["mid"]

        delivered = await dispatch(
            parley_service, bob, {"type": "mark-delivered", "data": {"mids": [mid]}}
        )
        assert delivered.data["updates"][0]["status"] == "delivered"

        reacted = await dispatch(
            parley_service, bob, {"type": "react", "data": {"mid": mid, "reaction": "love"}}
        )
        assert reacted.type == "react:ok"
        assert reacted.data["reaction_counts"] == {"love": 1}

        read = await dispatch(
            parley_service, bob, {"type": "mark-read", "data": {"conversation_id": cid}}
        )
        assert read.data["updates"][0]["receipt"] == "read"


def receive_until(ws, event_type):
    """Read frames until one of ``event_type`` arrives; returns it."""
    while True:
        frame = ws.receive_json()
        if frame["type"] == event_type:
            return frame


class TestWebSocketEndpoint:
    @pytest.fixture
    def client(self):
        with TestClient(app) as c:
            yield c

    @pytest.fixture
    def creds(self):
        return make_credentials(["Alice", "Bob"])

    def test_rejects_bad_credential(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws?token=not-a-secret") as ws:
                ws.receive_json()
        assert exc_info.value.code == 4401

    def test_rejects_missing_credential(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws") as ws:
                ws.receive_json()
        assert exc_info.value.code == 4401

    def test_ping_over_socket(self, client, creds):
        with client.websocket_connect(f"/ws?token={creds['alice']['secret']}") as ws:
            ws.send_json({"type": "ping", "ref": "1"})
            assert ws.receive_json() == {"type": "ping:ok", "data": {}, "ref": "1"}

    def test_bearer_header(self, client, creds):
        headers = {"Authorization": f"Bearer {creds['alice']['secret']}"}
        with client.websocket_connect("/ws", headers=headers) as ws:
            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "ping:ok"

    def test_non_json_frame_keeps_connection(self, client, creds):
        with client.websocket_connect(f"/ws?token={creds['alice']['secret']}") as ws:
            ws.send_text("hello?")
            assert ws.receive_json()["data"]["code"] == "validation_error"
            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "ping:ok"

    def test_message_delivery_between_sockets(self, client, creds):
        alice_id, bob_id = creds["alice"]["id"], creds["bob"]["id"]
        response = client.post(
            "/conversations/direct",
            json={"participant_id": bob_id},
            headers={"Authorization": f"Bearer {creds['alice']['secret']}"},
        )
        cid = response.json()["conversation"]["conversation_id"]

        with client.websocket_connect(f"/ws?token={creds['alice']['secret']}") as alice, \
                client.websocket_connect(f"/ws?token={creds['bob']['secret']}") as bob:
            bob.send_json({"type": "join", "data": {"conversation_id": cid}, "ref": "j"})
            joined = receive_until(bob, "join:ok")
            assert joined["data"]["conversation"]["conversation_id"] == cid

            alice.send_json(
                {"type": "send", "data": {"conversation_id": cid, "content": "hey bob"}, "ref": "s"}
            )
            ack = receive_until(alice, "send:ok")
            assert ack["ref"] == "s"
            assert ack["data"]["message"]["status"] == "sent"

            event = receive_until(bob, "message:new")
            assert event["data"]["message"]["content"] == "hey bob"
            assert event["data"]["message"]["sender_id"] == alice_id
            assert event["ref"] is None
