"""FastAPI application for parley."""

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import (
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    WebSocket,
)
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import db
from ._version import __version__
from .auth_provider import Identity, authenticate, extract_bearer_token, get_auth_method_name
from .config import get_config
from .errors import (
    AuthError,
    ConflictError,
    MessagingError,
    NotFoundError,
    PermissionDeniedError,
    TransientStoreError,
    ValidationError,
)
from .gateway import serve_connection
from .metrics import metrics
from .models import MessageKind, ReactionKind
from .service import MessagingService, get_messaging_service, reset_store_executor, run_store

logger = logging.getLogger(__name__)

# Close code sent when a websocket credential is rejected
WS_POLICY_VIOLATION = 4401

_STATUS_CODES: dict[type[MessagingError], int] = {
    ValidationError: 400,
    PermissionDeniedError: 403,
    NotFoundError: 404,
    ConflictError: 409,
    TransientStoreError: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the database, warm caches, and clean up on shutdown."""
    db.init_db()

    from .cache import schedule_cache_warming, stop_cache_warming

    schedule_cache_warming()
    logger.info("parley %s starting (auth: %s)", __version__, get_auth_method_name())

    yield

    stop_cache_warming()
    await get_messaging_service().close()
    reset_store_executor()
    db.close_db()


app = FastAPI(
    title="parley",
    description="Direct and group messaging with real-time delivery",
    version=__version__,
    lifespan=lifespan,
)


# --- Request Timing Middleware ---


def _endpoint_name(path: str) -> str:
    """Collapse IDs out of a path so timings aggregate per route family."""
    parts = [p for p in path.split("/") if p]
    if not parts:
        return "root"
    if parts[0] == "conversations":
        return f"conversations/{parts[2]}" if len(parts) > 2 else "conversations"
    if parts[0] == "messages":
        if len(parts) > 1 and parts[1] in ("search", "delivered"):
            return f"messages/{parts[1]}"
        return f"messages/{parts[2]}" if len(parts) > 2 else "messages"
    if parts[0] in ("health", "metrics", "sync", "presence", "notifications", "admin"):
        return parts[0]
    return "other"


@app.middleware("http")
async def add_timing_middleware(request: Request, call_next):
    start_time = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start_time) * 1000
    metrics.record_request(_endpoint_name(request.url.path), duration_ms)
    response.headers["X-Response-Time-Ms"] = f"{duration_ms:.1f}"
    return response


@app.exception_handler(MessagingError)
async def messaging_error_handler(request: Request, exc: MessagingError):
    status = next(
        (code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)),
        500,
    )
    if status >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"error": exc.to_dict()})


# --- Auth ---


def get_admin_token() -> str | None:
    return get_config().admin_token or os.environ.get("PARLEY_ADMIN_TOKEN")


def require_admin(x_admin_token: str | None) -> None:
    expected = get_admin_token()
    if not expected:
        raise HTTPException(503, "Admin endpoints are disabled: set PARLEY_ADMIN_TOKEN")
    if not x_admin_token:
        raise HTTPException(401, "X-Admin-Token header required")
    if x_admin_token != expected:
        raise HTTPException(403, "Invalid admin token")


async def current_identity(
    authorization: Annotated[str | None, Header()] = None,
) -> Identity:
    """Resolve the bearer credential to a verified identity."""
    token = extract_bearer_token(authorization)
    if not token:
        raise HTTPException(401, "Authorization: Bearer <credential> header required")
    try:
        return await run_store(authenticate, token)
    except AuthError as e:
        raise HTTPException(403, e.message) from e


CurrentIdentity = Annotated[Identity, Depends(current_identity)]


def service() -> MessagingService:
    return get_messaging_service()


Service = Annotated[MessagingService, Depends(service)]


# --- Request Models ---


class CreateIdentityRequest(BaseModel):
    display_name: str | None = None
    metadata: dict[str, Any] | None = None


class CreateIdentityResponse(BaseModel):
    id: str
    secret: str
    metadata: dict[str, Any]


class OpenDirectRequest(BaseModel):
    participant_id: str


class CreateGroupRequest(BaseModel):
    participants: list[str]
    name: str | None = None
    description: str | None = None


class IdentityRef(BaseModel):
    identity_id: str


class PinRequest(BaseModel):
    mid: str


class SendMessageRequest(BaseModel):
    content: str | None = None
    kind: MessageKind = MessageKind.TEXT
    media: dict[str, Any] | None = None
    reply_to: str | None = None
    client_message_id: str | None = None
    expires_at: str | None = None


class MarkReadRequest(BaseModel):
    mids: list[str] | None = None


class MarkDeliveredRequest(BaseModel):
    mids: list[str] = Field(min_length=1)


class EditMessageRequest(BaseModel):
    content: str


class ReactionRequest(BaseModel):
    reaction: ReactionKind


class ForwardRequest(BaseModel):
    conversation_ids: list[str] = Field(min_length=1)


class SyncRequest(BaseModel):
    cursors: dict[str, str | None] = {}


# --- Health, Metrics, Admin ---


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "version": __version__}


@app.get("/metrics")
def get_metrics(x_admin_token: Annotated[str | None, Header()] = None):
    """Application metrics. Requires the admin token."""
    require_admin(x_admin_token)

    from .cache import (
        CACHE_REFRESH_INTERVAL,
        CACHE_WARMING_ENABLED,
        identity_hash_cache,
        participant_cache,
    )
    from .presence import get_presence_registry

    return {
        **metrics.to_dict(),
        "presence": get_presence_registry().snapshot(),
        "caches": {
            "warming_enabled": CACHE_WARMING_ENABLED,
            "refresh_interval_seconds": CACHE_REFRESH_INTERVAL,
            "participants": participant_cache.stats(),
            "identity_hash": identity_hash_cache.stats(),
        },
    }


@app.post("/admin/identities", response_model=CreateIdentityResponse)
async def create_identity(
    request: CreateIdentityRequest,
    x_admin_token: Annotated[str | None, Header()] = None,
):
    """Issue a local credential. The secret is only returned here."""
    require_admin(x_admin_token)
    metadata = dict(request.metadata or {})
    if request.display_name:
        metadata["display_name"] = request.display_name
    created = await run_store(db.create_identity, metadata)
    return CreateIdentityResponse(id=created["id"], secret=created["secret"], metadata=metadata)


@app.get("/admin/identities")
async def list_identities(x_admin_token: Annotated[str | None, Header()] = None):
    require_admin(x_admin_token)
    return {"identities": await run_store(db.list_identities)}


@app.get("/me")
async def whoami(identity: CurrentIdentity):
    return {"id": identity.id, "display_name": identity.display_name}


# --- Conversations ---


@app.get("/conversations")
async def list_conversations(
    identity: CurrentIdentity,
    svc: Service,
    include_archived: bool = False,
    search: str | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1)] = 20,
):
    return await svc.list_conversations(identity.id, include_archived, search, page, limit)


@app.post("/conversations/direct")
async def open_direct(request: OpenDirectRequest, identity: CurrentIdentity, svc: Service):
    conversation, created = await svc.open_direct(identity.id, request.participant_id)
    return JSONResponse(
        status_code=201 if created else 200,
        content=jsonable_encoder({"conversation": conversation, "created": created}),
    )


@app.post("/conversations/groups", status_code=201)
async def create_group(request: CreateGroupRequest, identity: CurrentIdentity, svc: Service):
    conversation = await svc.create_group(
        identity.id, request.participants, request.name, request.description
    )
    return {"conversation": conversation}


@app.get("/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, identity: CurrentIdentity, svc: Service):
    return {"conversation": await svc.get_conversation(identity.id, conversation_id)}


@app.patch("/conversations/{conversation_id}/settings")
async def update_settings(
    conversation_id: str,
    patch: dict[str, Any],
    identity: CurrentIdentity,
    svc: Service,
):
    return {"conversation": await svc.update_settings(identity.id, conversation_id, patch)}


@app.post("/conversations/{conversation_id}/participants")
async def add_participant(
    conversation_id: str, request: IdentityRef, identity: CurrentIdentity, svc: Service
):
    added = await svc.add_participant(identity.id, conversation_id, request.identity_id)
    return {"added": added}


@app.delete("/conversations/{conversation_id}/participants/{target_id}")
async def remove_participant(
    conversation_id: str, target_id: str, identity: CurrentIdentity, svc: Service
):
    await svc.remove_participant(identity.id, conversation_id, target_id)
    return {"removed": True}


@app.post("/conversations/{conversation_id}/admins")
async def add_admin(
    conversation_id: str, request: IdentityRef, identity: CurrentIdentity, svc: Service
):
    return {"added": await svc.add_admin(identity.id, conversation_id, request.identity_id)}


@app.delete("/conversations/{conversation_id}/admins/{target_id}")
async def remove_admin(
    conversation_id: str, target_id: str, identity: CurrentIdentity, svc: Service
):
    return {"removed": await svc.remove_admin(identity.id, conversation_id, target_id)}


@app.post("/conversations/{conversation_id}/pins", status_code=201)
async def pin_message(
    conversation_id: str, request: PinRequest, identity: CurrentIdentity, svc: Service
):
    return {"pin": await svc.pin_message(identity.id, conversation_id, request.mid)}


@app.delete("/conversations/{conversation_id}/pins/{mid}")
async def unpin_message(conversation_id: str, mid: str, identity: CurrentIdentity, svc: Service):
    await svc.unpin_message(identity.id, conversation_id, mid)
    return {"unpinned": True}


@app.get("/conversations/{conversation_id}/messages")
async def get_history(
    conversation_id: str,
    identity: CurrentIdentity,
    svc: Service,
    before: str | None = None,
    after: str | None = None,
    limit: Annotated[int | None, Query(ge=1)] = None,
):
    """History in chronological order; ``before``/``after`` are ISO-8601 cursors."""
    messages = await svc.history(identity.id, conversation_id, before, after, limit)
    return {"messages": messages}


@app.post("/conversations/{conversation_id}/messages")
async def send_message(
    conversation_id: str,
    request: SendMessageRequest,
    identity: CurrentIdentity,
    svc: Service,
):
    message = await svc.send(
        identity.id,
        conversation_id,
        request.content,
        kind=request.kind,
        media=request.media,
        reply_to=request.reply_to,
        client_message_id=request.client_message_id,
        expires_at=request.expires_at,
    )
    return JSONResponse(status_code=201, content=jsonable_encoder({"message": message}))


@app.post("/conversations/{conversation_id}/read")
async def mark_read(
    conversation_id: str,
    request: MarkReadRequest,
    identity: CurrentIdentity,
    svc: Service,
):
    return {"updates": await svc.mark_read(identity.id, conversation_id, request.mids)}


# --- Messages ---


@app.get("/messages/search")
async def search_messages(
    identity: CurrentIdentity,
    svc: Service,
    q: Annotated[str, Query(min_length=1)],
    conversation_id: str | None = None,
    limit: Annotated[int | None, Query(ge=1)] = None,
):
    return {"messages": await svc.search(identity.id, q, conversation_id, limit)}


@app.post("/messages/delivered")
async def mark_delivered(request: MarkDeliveredRequest, identity: CurrentIdentity, svc: Service):
    return {"updates": await svc.mark_delivered(identity.id, request.mids)}


@app.get("/messages/{mid}")
async def get_message(mid: str, identity: CurrentIdentity, svc: Service):
    return {"message": await svc.get_message(identity.id, mid)}


@app.patch("/messages/{mid}")
async def edit_message(
    mid: str, request: EditMessageRequest, identity: CurrentIdentity, svc: Service
):
    return {"message": await svc.edit(identity.id, mid, request.content)}


@app.delete("/messages/{mid}")
async def delete_message(
    mid: str,
    identity: CurrentIdentity,
    svc: Service,
    for_everyone: bool = False,
):
    return await svc.delete(identity.id, mid, for_everyone)


@app.post("/messages/{mid}/reactions")
async def add_reaction(mid: str, request: ReactionRequest, identity: CurrentIdentity, svc: Service):
    return await svc.react(identity.id, mid, request.reaction)


@app.delete("/messages/{mid}/reactions")
async def remove_reaction(
    mid: str,
    identity: CurrentIdentity,
    svc: Service,
    reaction: ReactionKind | None = None,
):
    return await svc.unreact(identity.id, mid, reaction)


@app.post("/messages/{mid}/reactions/toggle")
async def toggle_reaction(
    mid: str, request: ReactionRequest, identity: CurrentIdentity, svc: Service
):
    return await svc.toggle_reaction(identity.id, mid, request.reaction)


@app.post("/messages/{mid}/forward", status_code=201)
async def forward_message(
    mid: str, request: ForwardRequest, identity: CurrentIdentity, svc: Service
):
    return {"messages": await svc.forward(identity.id, mid, request.conversation_ids)}


# --- Sync, Presence, Notifications ---


@app.post("/sync")
async def sync(request: SyncRequest, identity: CurrentIdentity, svc: Service):
    """Conversations with messages newer than the given cursors (reconnect resync)."""
    return {"conversations": await svc.sync(identity.id, request.cursors)}


@app.get("/presence")
async def presence(
    identity: CurrentIdentity,
    svc: Service,
    ids: Annotated[list[str], Query(min_length=1)],
):
    return {"presence": await svc.presence_of(ids)}


@app.get("/notifications")
async def list_notifications(identity: CurrentIdentity, svc: Service, unread_only: bool = False):
    return {"notifications": await svc.list_notifications(identity.id, unread_only)}


@app.post("/notifications/{notification_id}/read")
async def mark_notification_read(notification_id: str, identity: CurrentIdentity, svc: Service):
    if not await svc.mark_notification_read(identity.id, notification_id):
        raise HTTPException(404, "Notification not found or already read")
    return {"read": True}


# --- WebSocket ---


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: str | None = None):
    """Real-time gateway. Credential via ``?token=`` or a Bearer header."""
    credential = token or extract_bearer_token(websocket.headers.get("authorization"))
    try:
        identity = await run_store(authenticate, credential)
    except AuthError as e:
        logger.info("Rejected websocket connection: %s", e.message)
        await websocket.close(code=WS_POLICY_VIOLATION, reason=e.message)
        return

    await websocket.accept()
    await serve_connection(websocket, get_messaging_service(), identity.id)
