"""Chat transcript schemas."""

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import Field

from chaingate.schemas.common import CamelModel


class ChatMessage(CamelModel):
    role: Literal["user", "assistant", "system"]
    content: str = Field(..., max_length=10000)
    timestamp: datetime | None = None


class ChatSaveRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
    messages: list[ChatMessage]
    model: str = Field(default="gemini", max_length=50)


class ChatSummary(CamelModel):
    id: UUID
    message_count: int
    model: str
    updated_at: datetime


class ChatSaveResponse(CamelModel):
    message: str
    chat_history: ChatSummary


class ChatHistoryOut(CamelModel):
    id: UUID
    user_id: UUID
    messages: list[ChatMessage]
    model: str
    created_at: datetime
    updated_at: datetime
