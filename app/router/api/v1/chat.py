"""
Chat API (REST): history, send, read receipts and the unread badge.
The live chat runs over the WebSocket in app.router.api.v1.live.
"""
import logging

from fastapi import APIRouter, Depends, status

from app.core.dependencies import get_backend, get_current_user_id
from app.schema.chat import (
    MarkReadResponse,
    MessageCreateBody,
    MessageListResponse,
    MessageRow,
    UnreadCountResponse,
)
from app.service.ride_backend import RideBackend, ensure_chat_access

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/unread", response_model=UnreadCountResponse)
async def unread_count(
    user_id: str = Depends(get_current_user_id),
    backend: RideBackend = Depends(get_backend),
):
    by_request = await backend.count_unread_by_request(user_id)
    return UnreadCountResponse(total=sum(by_request.values()), by_request=by_request)


@router.get("/{request_id}/messages", response_model=MessageListResponse)
async def list_messages(
    request_id: str,
    user_id: str = Depends(get_current_user_id),
    backend: RideBackend = Depends(get_backend),
):
    """Full history, oldest first. Marks the caller's incoming messages read."""
    context = await backend.get_request_context(request_id)
    ensure_chat_access(context, user_id)
    await backend.mark_read(request_id, user_id)
    items = await backend.list_messages(request_id)
    return MessageListResponse(items=items, total=len(items))


@router.post("/{request_id}/messages", response_model=MessageRow, status_code=status.HTTP_201_CREATED)
async def create_message(
    request_id: str,
    body: MessageCreateBody,
    user_id: str = Depends(get_current_user_id),
    backend: RideBackend = Depends(get_backend),
):
    return await backend.insert_message(request_id, user_id, body.content)


@router.post("/{request_id}/read", response_model=MarkReadResponse)
async def mark_read(
    request_id: str,
    user_id: str = Depends(get_current_user_id),
    backend: RideBackend = Depends(get_backend),
):
    context = await backend.get_request_context(request_id)
    ensure_chat_access(context, user_id)
    rows = await backend.mark_read(request_id, user_id)
    return MarkReadResponse(affected=len(rows))
