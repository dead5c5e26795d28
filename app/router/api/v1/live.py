"""
Live WebSocket: one RideSession per connection.

Auth via query ?token=. The client sends actions as JSON
(``{"action": "watch_requests", "role": "driver"}``) and receives snapshots:
``unread``, ``requests`` and ``chat`` events, plus ``error`` events carrying the
same code/message as the REST API.
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from app.core.dependencies import get_backend
from app.core.exceptions import AppException, NotAuthenticated
from app.schema.ride_request import RequestStatus, ViewerRole
from app.service.ride_backend import RideBackend
from app.session import TokenAuth
from app.sync import ChatSessionController, RequestLifecycleStore, RideSession, UnreadCounter

router = APIRouter()
logger = logging.getLogger(__name__)


def unread_payload(unread: UnreadCounter) -> Dict[str, Any]:
    return {"event": "unread", "total": unread.total, "by_request": unread.by_request, "live": unread.live}


def requests_payload(store: RequestLifecycleStore) -> Dict[str, Any]:
    if store.role is ViewerRole.DRIVER:
        buckets = {"pending": store.pending(), "accepted": store.accepted()}
    else:
        buckets = {"upcoming": store.upcoming(), "history": store.history()}
    return {
        "event": "requests",
        "role": store.role.value,
        "live": store.live,
        "buckets": {name: [v.id for v in views] for name, views in buckets.items()},
        "items": [v.model_dump(mode="json") for v in store.items],
    }


def chat_payload(chat: ChatSessionController) -> Dict[str, Any]:
    return {
        "event": "chat",
        "request_id": chat.request_id,
        "state": chat.state.value,
        "live": chat.live,
        "revoked": chat.revoked,
        "messages": [m.model_dump(mode="json") for m in chat.messages],
        "failed": [f.model_dump(mode="json") for f in chat.failed],
        "restored_draft": chat.restored_draft,
    }


@router.websocket("/ws")
async def live_updates(
    websocket: WebSocket,
    token: Optional[str] = None,
    backend: RideBackend = Depends(get_backend),
):
    await websocket.accept()
    try:
        session = await RideSession.start(TokenAuth(token), backend, backend.broker)
    except NotAuthenticated:
        await websocket.close(code=4001)
        return

    outbox: asyncio.Queue = asyncio.Queue()

    def push(payload: Dict[str, Any]) -> None:
        outbox.put_nowait(payload)

    def send_error(code: str, message: str) -> None:
        push({"event": "error", "code": code, "message": message})

    async def drain() -> None:
        while True:
            payload = await outbox.get()
            await websocket.send_text(json.dumps(payload, default=str))

    sender = asyncio.create_task(drain())
    watched: Set[ViewerRole] = set()
    chats: Dict[str, ChatSessionController] = {}

    session.unread.add_listener(lambda unread: push(unread_payload(unread)))
    push(unread_payload(session.unread))

    async def watch(role: ViewerRole) -> RequestLifecycleStore:
        store = await session.requests_for(role)
        if role not in watched:
            store.add_listener(lambda s: push(requests_payload(s)))
            watched.add(role)
        return store

    async def handle(obj: Dict[str, Any]) -> None:
        action = obj.get("action")
        request_id = obj.get("request_id")
        if action in ("watch_requests", "refresh", "set_status", "hide"):
            store = await watch(ViewerRole(obj.get("role", ViewerRole.PASSENGER.value)))
            if action == "refresh":
                await store.refresh_all()
            elif action == "set_status":
                await store.transition(request_id, RequestStatus(obj.get("status")))
            elif action == "hide":
                await store.hide(request_id)
            push(requests_payload(store))
        elif action == "open_chat":
            chat = await session.open_chat(request_id)
            if chats.get(request_id) is not chat:
                chat.add_listener(lambda c: push(chat_payload(c)))
                chats[request_id] = chat
            push(chat_payload(chat))
        elif action == "send":
            await session.chat(request_id).send(obj.get("content") or "")
        elif action == "retry":
            await session.chat(request_id).retry(obj.get("failed_id"))
        elif action == "focus":
            session.chat(request_id).focus(bool(obj.get("visible", True)))
        elif action == "close_chat":
            chats.pop(request_id, None)
            session.close_chat(request_id)
        else:
            send_error(
                "UNKNOWN_ACTION",
                "Expected action: watch_requests, refresh, set_status, hide, open_chat, send, retry, focus or close_chat.",
            )

    try:
        while True:
            data = await websocket.receive_text()
            try:
                obj = json.loads(data)
            except json.JSONDecodeError:
                send_error("INVALID_JSON", "Request body must be valid JSON.")
                continue
            if not isinstance(obj, dict):
                send_error("INVALID_JSON", "Request body must be a JSON object.")
                continue
            try:
                await handle(obj)
            except AppException as e:
                push({"event": "error", "action": obj.get("action"), **e.detail})
            except ValueError as e:
                send_error("INVALID_PAYLOAD", str(e))
    except WebSocketDisconnect:
        logger.info("Live socket closed for %s", session.user_id)
    finally:
        session.close()
        sender.cancel()
