"""Per-user chat transcripts."""

import logging
import time
import uuid

from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chaingate.core.dependencies import rate_limit
from chaingate.core.exceptions import NotFoundError
from chaingate.db.postgres import get_db
from chaingate.gateway.envelope import build_metadata
from chaingate.gateway.rate_limiter import RateLimitTier
from chaingate.models.chat_history import ChatHistory
from chaingate.models.user import User
from chaingate.schemas.chat import ChatHistoryOut, ChatSaveRequest, ChatSaveResponse, ChatSummary

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/chat",
    tags=["chat"],
    dependencies=[Depends(rate_limit(RateLimitTier.GENERAL))],
)


async def _get_user_or_404(db: AsyncSession, user_id: str) -> User:
    try:
        uid = uuid.UUID(user_id)
    except ValueError:
        raise NotFoundError("User not found") from None

    user = await db.get(User, uid)
    if user is None:
        raise NotFoundError("User not found")
    return user


@router.post("/save", response_model=ChatSaveResponse)
async def save_chat(body: ChatSaveRequest, db: AsyncSession = Depends(get_db)):
    """Replace the user's stored transcript (created on first save)."""
    user = await _get_user_or_404(db, body.user_id)
    messages = [m.model_dump(mode="json", exclude_none=True) for m in body.messages]

    result = await db.execute(select(ChatHistory).where(ChatHistory.user_id == user.id))
    history = result.scalar_one_or_none()
    if history is None:
        history = ChatHistory(user_id=user.id, messages=messages, model=body.model)
        db.add(history)
    else:
        history.messages = messages
        history.model = body.model

    await db.flush()
    await db.refresh(history)

    logger.info(
        "Chat history saved",
        extra={"context": {"userId": str(user.id), "messageCount": len(messages), "model": body.model}},
    )
    return ChatSaveResponse(
        message="Chat history saved successfully",
        chat_history=ChatSummary(
            id=history.id,
            message_count=len(history.messages),
            model=history.model,
            updated_at=history.updated_at,
        ),
    )


@router.get("/{user_id}")
async def get_chat(user_id: str, request: Request, db: AsyncSession = Depends(get_db)):
    started = getattr(request.state, "started_at", None) or time.monotonic()
    user = await _get_user_or_404(db, user_id)

    result = await db.execute(select(ChatHistory).where(ChatHistory.user_id == user.id))
    history = result.scalar_one_or_none()

    return {
        "chatHistory": ChatHistoryOut.model_validate(history).model_dump(mode="json", by_alias=True)
        if history
        else None,
        "metadata": build_metadata(started),
    }
