"""WebSocket gateway: one handler per authenticated connection.

Wire format, both directions:

    {"type": "send", "data": {...}, "ref": "client-chosen id"}

Every inbound request is answered with ``<type>:ok`` carrying the result,
or an ``error`` event with ``{"code", "message"}``; both echo the request's
``ref``. Server-pushed events (``message:new``, ``typing:start``, ...) use
the same envelope without a ``ref``. A failed request never closes the
connection.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import pydantic
from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from .channels import Connection, ConnectionClosedError
from .errors import MessagingError
from .models import Event, MessageKind, ReactionKind
from .service import MessagingService

logger = logging.getLogger(__name__)


class WsInbound(BaseModel):
    """Client -> server."""

    type: str
    data: dict[str, Any] = {}
    ref: str | None = None


class WsOutbound(BaseModel):
    """Server -> client."""

    type: str
    data: dict[str, Any] = {}
    ref: str | None = None


class Command(str, Enum):
    JOIN = "join"
    LEAVE = "leave"
    SEND = "send"
    TYPING_START = "typing:start"
    TYPING_STOP = "typing:stop"
    MARK_DELIVERED = "mark-delivered"
    MARK_READ = "mark-read"
    REACT = "react"
    UNREACT = "unreact"
    TOGGLE_REACTION = "toggle-reaction"
    EDIT = "edit"
    DELETE = "delete"
    FORWARD = "forward"
    SEARCH = "search"
    HISTORY = "history"
    SYNC = "sync"
    PRESENCE = "presence"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    PUBLISH = "publish"
    PING = "ping"


# --- Payloads ---


class ConversationRef(BaseModel):
    conversation_id: str


class SendData(BaseModel):
    conversation_id: str
    content: str | None = None
    kind: MessageKind = MessageKind.TEXT
    media: dict[str, Any] | None = None
    reply_to: str | None = None
    client_message_id: str | None = None
    expires_at: str | None = None


class MarkDeliveredData(BaseModel):
    mids: list[str] = Field(min_length=1)


class MarkReadData(BaseModel):
    conversation_id: str
    mids: list[str] | None = None


class ReactData(BaseModel):
    mid: str
    reaction: ReactionKind


class UnreactData(BaseModel):
    mid: str
    reaction: ReactionKind | None = None


class EditData(BaseModel):
    mid: str
    content: str


class DeleteData(BaseModel):
    mid: str
    for_everyone: bool = False


class ForwardData(BaseModel):
    mid: str
    conversation_ids: list[str] = Field(min_length=1)


class SearchData(BaseModel):
    query: str
    conversation_id: str | None = None
    limit: int | None = None


class HistoryData(BaseModel):
    conversation_id: str
    before: str | None = None
    after: str | None = None
    limit: int | None = None


class SyncData(BaseModel):
    cursors: dict[str, str | None] = {}


class PresenceData(BaseModel):
    identity_ids: list[str] = Field(min_length=1)


class TopicData(BaseModel):
    topic: str = Field(min_length=1)


class PublishData(BaseModel):
    topic: str = Field(min_length=1)
    data: dict[str, Any] = {}


class WebSocketConnection(Connection):
    """Connection backed by a FastAPI WebSocket. Sends are serialized per socket."""

    def __init__(self, websocket: WebSocket, identity_id: str) -> None:
        super().__init__(identity_id)
        self.websocket = websocket
        self._send_lock = asyncio.Lock()

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        await self.send_envelope(WsOutbound(type=event, data=payload))

    async def send_envelope(self, envelope: WsOutbound) -> None:
        try:
            async with self._send_lock:
                await self.websocket.send_json(envelope.model_dump(mode="json"))
        except (WebSocketDisconnect, RuntimeError) as e:
            raise ConnectionClosedError(self.handle) from e


# --- Handlers ---

Handler = Callable[[MessagingService, WebSocketConnection, dict], Awaitable[dict]]


async def _join(service, connection, data):
    req = ConversationRef.model_validate(data)
    conversation = await service.join(connection, req.conversation_id)
    return {"conversation": conversation}


async def _leave(service, connection, data):
    req = ConversationRef.model_validate(data)
    return {"left": await service.leave(connection, req.conversation_id)}


async def _send(service, connection, data):
    req = SendData.model_validate(data)
    message = await service.send(
        connection.identity_id,
        req.conversation_id,
        req.content,
        kind=req.kind,
        media=req.media,
        reply_to=req.reply_to,
        client_message_id=req.client_message_id,
        expires_at=req.expires_at,
    )
    return {"message": message}


async def _typing_start(service, connection, data):
    req = ConversationRef.model_validate(data)
    await service.typing(connection, req.conversation_id, started=True)
    return {}


async def _typing_stop(service, connection, data):
    req = ConversationRef.model_validate(data)
    await service.typing(connection, req.conversation_id, started=False)
    return {}


async def _mark_delivered(service, connection, data):
    req = MarkDeliveredData.model_validate(data)
    return {"updates": await service.mark_delivered(connection.identity_id, req.mids)}


async def _mark_read(service, connection, data):
    req = MarkReadData.model_validate(data)
    updates = await service.mark_read(connection.identity_id, req.conversation_id, req.mids)
    return {"updates": updates}


async def _react(service, connection, data):
    req = ReactData.model_validate(data)
    return await service.react(connection.identity_id, req.mid, req.reaction)


async def _unreact(service, connection, data):
    req = UnreactData.model_validate(data)
    return await service.unreact(connection.identity_id, req.mid, req.reaction)


async def _toggle_reaction(service, connection, data):
    req = ReactData.model_validate(data)
    return await service.toggle_reaction(connection.identity_id, req.mid, req.reaction)


async def _edit(service, connection, data):
    req = EditData.model_validate(data)
    return {"message": await service.edit(connection.identity_id, req.mid, req.content)}


async def _delete(service, connection, data):
    req = DeleteData.model_validate(data)
    return await service.delete(connection.identity_id, req.mid, req.for_everyone)


async def _forward(service, connection, data):
    req = ForwardData.model_validate(data)
    return {"messages": await service.forward(connection.identity_id, req.mid, req.conversation_ids)}


async def _search(service, connection, data):
    req = SearchData.model_validate(data)
    results = await service.search(
        connection.identity_id, req.query, req.conversation_id, req.limit
    )
    return {"messages": results}


async def _history(service, connection, data):
    req = HistoryData.model_validate(data)
    results = await service.history(
        connection.identity_id, req.conversation_id, req.before, req.after, req.limit
    )
    return {"messages": results}


async def _sync(service, connection, data):
    req = SyncData.model_validate(data)
    return {"conversations": await service.sync(connection.identity_id, req.cursors)}


async def _presence(service, connection, data):
    req = PresenceData.model_validate(data)
    return {"presence": await service.presence_of(req.identity_ids)}


async def _subscribe(service, connection, data):
    req = TopicData.model_validate(data)
    return {"subscribed": await service.subscribe_topic(connection, req.topic)}


async def _unsubscribe(service, connection, data):
    req = TopicData.model_validate(data)
    return {"unsubscribed": await service.unsubscribe_topic(connection, req.topic)}


async def _publish(service, connection, data):
    req = PublishData.model_validate(data)
    return {"delivered": await service.publish_topic(connection, req.topic, req.data)}


async def _ping(service, connection, data):
    return {}


HANDLERS: dict[Command, Handler] = {
    Command.JOIN: _join,
    Command.LEAVE: _leave,
    Command.SEND: _send,
    Command.TYPING_START: _typing_start,
    Command.TYPING_STOP: _typing_stop,
    Command.MARK_DELIVERED: _mark_delivered,
    Command.MARK_READ: _mark_read,
    Command.REACT: _react,
    Command.UNREACT: _unreact,
    Command.TOGGLE_REACTION: _toggle_reaction,
    Command.EDIT: _edit,
    Command.DELETE: _delete,
    Command.FORWARD: _forward,
    Command.SEARCH: _search,
    Command.HISTORY: _history,
    Command.SYNC: _sync,
    Command.PRESENCE: _presence,
    Command.SUBSCRIBE: _subscribe,
    Command.UNSUBSCRIBE: _unsubscribe,
    Command.PUBLISH: _publish,
    Command.PING: _ping,
}

_missing = set(Command) - set(HANDLERS)
if _missing:
    raise RuntimeError(f"Gateway handlers missing for {sorted(c.value for c in _missing)}")


def _error(ref: str | None, code: str, message: str) -> WsOutbound:
    return WsOutbound(type=Event.ERROR.value, data={"code": code, "message": message}, ref=ref)


async def dispatch(
    service: MessagingService,
    connection: WebSocketConnection,
    raw: Any,
) -> WsOutbound:
    """Run one inbound request and build its reply envelope."""
    try:
        envelope = WsInbound.model_validate(raw)
    except pydantic.ValidationError as e:
        return _error(None, "validation_error", f"Malformed envelope: {e.errors()[0]['msg']}")

    try:
        command = Command(envelope.type)
    except ValueError:
        return _error(envelope.ref, "validation_error", f"Unknown request type: {envelope.type!r}")

    try:
        result = await HANDLERS[command](service, connection, envelope.data)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first["loc"]) or "data"
        return _error(envelope.ref, "validation_error", f"{field}: {first['msg']}")
    except MessagingError as e:
        return WsOutbound(type=Event.ERROR.value, data=e.to_dict(), ref=envelope.ref)
    except ConnectionClosedError:
        raise
    except Exception:
        logger.exception("Unhandled error in %s handler", command.value)
        return _error(envelope.ref, "internal_error", "Internal error")

    return WsOutbound(type=f"{command.value}:ok", data=result, ref=envelope.ref)


async def serve_connection(
    websocket: WebSocket,
    service: MessagingService,
    identity_id: str,
) -> None:
    """Run the receive loop for an accepted, authenticated socket."""
    connection = WebSocketConnection(websocket, identity_id)
    await service.connect(connection)
    logger.info("Connection %s opened for %s", connection.handle, identity_id)
    try:
        while True:
            text = await websocket.receive_text()
            try:
                raw = json.loads(text)
            except json.JSONDecodeError:
                await connection.send_envelope(
                    _error(None, "validation_error", "Frames must be JSON objects")
                )
                continue
            reply = await dispatch(service, connection, raw)
            await connection.send_envelope(reply)
    except (WebSocketDisconnect, ConnectionClosedError):
        pass
    finally:
        await service.disconnect(connection)
        logger.info("Connection %s closed for %s", connection.handle, identity_id)
