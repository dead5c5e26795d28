"""
Chat schemas: messages, optimistic entries and unread counters.
"""
from datetime import datetime
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.utils.timestamps import as_utc


class MessageRow(BaseModel):
    """Columns of messages, as stored and as carried by change events."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    ride_request_id: str
    sender_id: str
    receiver_id: str
    content: str
    created_at: datetime
    is_read: bool = False

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, value: datetime) -> datetime:
        return as_utc(value)


class ChatEntry(MessageRow):
    """A row in an open chat window. pending=True until the server confirms it."""
    pending: bool = False


class FailedSend(BaseModel):
    """A send that was rolled back. Kept so the UI can offer a retry."""
    id: str
    content: str
    error: str
    failed_at: datetime


# --- Bodies / responses ---

class MessageCreateBody(BaseModel):
    """Body for POST /chat/{request_id}/messages."""
    content: str = Field(..., min_length=1, max_length=10_000)


class MessageListResponse(BaseModel):
    items: List[MessageRow]
    total: int


class MarkReadResponse(BaseModel):
    affected: int


class UnreadCountResponse(BaseModel):
    total: int
    by_request: Dict[str, int] = Field(default_factory=dict)
