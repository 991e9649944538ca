"""
AI Router — Chat with the Google Ads assistant.
Account context is optional: if it cannot be built the chat continues without it.
Responses stream as server-sent events unless stream=false.
"""

import json
import logging
import uuid
from contextlib import aclosing
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ads_copilot.database import async_session, get_db
from ads_copilot.errors import ContextError
from ads_copilot.models import AIConversation
from ads_copilot.routers.context import get_context_builder
from ads_copilot.schemas import DataFilters
from ads_copilot.services.ai_service import (
    build_conversation_messages,
    build_system_prompt,
    create_ai_service,
)
from ads_copilot.services.context_builder import ContextBuilder
from ads_copilot.services.relevance import select_relevant_context
from ads_copilot.utils import parse_uuid, safe_error_detail, utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Request Models ────────────────────────────────────────────────────

class ChatRequest(BaseModel):
    message: str = Field(min_length=1)
    account_id: Optional[str] = None
    conversation_id: Optional[str] = None
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    model_id: Optional[str] = None  # Override default LLM for this request
    filters: DataFilters = Field(default_factory=DataFilters)
    stream: bool = True


# ── Helpers ───────────────────────────────────────────────────────────

async def _get_or_create_conversation(db: AsyncSession, payload: ChatRequest) -> AIConversation:
    conversation = None
    if payload.conversation_id:
        result = await db.execute(
            select(AIConversation).where(AIConversation.id == parse_uuid(payload.conversation_id, "conversation_id"))
        )
        conversation = result.scalar_one_or_none()
        if conversation is not None and payload.user_id and conversation.user_id != payload.user_id:
            raise HTTPException(status_code=404, detail="Conversation not found")

    if conversation is None:
        conversation = AIConversation(
            id=uuid.uuid4(),
            user_id=payload.user_id,
            account_id=parse_uuid(payload.account_id, "account_id") if payload.account_id else None,
            title=payload.message[:100],
            messages=[],
        )
        db.add(conversation)
        await db.flush()
    return conversation


def _append_exchange(conversation: AIConversation, user_message: str, assistant_message: str) -> None:
    now = utcnow().isoformat()
    messages = list(conversation.messages or [])
    messages.append({"role": "user", "content": user_message, "timestamp": now})
    messages.append({"role": "assistant", "content": assistant_message, "timestamp": now})
    conversation.messages = messages
    conversation.updated_at = utcnow()


async def _save_streamed_exchange(conversation_id: uuid.UUID, user_message: str, assistant_message: str) -> None:
    """Streaming outlives the request session, so the reply is stored through a fresh one."""
    async with async_session() as db:
        conversation = await db.get(AIConversation, conversation_id)
        if conversation is None:
            logger.warning(f"Conversation {conversation_id} vanished before the reply was saved")
            return
        _append_exchange(conversation, user_message, assistant_message)
        await db.commit()


def _sse(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


# ── Endpoints ─────────────────────────────────────────────────────────

@router.post("/chat")
async def ai_chat(
    payload: ChatRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    builder: ContextBuilder = Depends(get_context_builder),
):
    """
    Chat with the assistant. Builds the account context (when an account is given),
    attaches the question-relevant data slice and keeps conversation history.
    """
    try:
        ai = create_ai_service(model_id=payload.model_id)
    except ValueError as e:
        raise HTTPException(status_code=503, detail=f"AI service not configured: {e}")

    bundle = None
    if payload.account_id:
        try:
            bundle = await builder.prepare_ai_context(
                payload.account_id, payload.filters, query=payload.message, user_id=payload.user_id
            )
        except ContextError as e:
            logger.warning(f"Chat continuing without account context ({e.code}): {e.message}")
        except Exception as e:
            logger.error(f"Chat continuing without account context: {e}", exc_info=True)

    relevant = select_relevant_context(payload.message, bundle)
    conversation = await _get_or_create_conversation(db, payload)
    messages = build_conversation_messages(
        build_system_prompt(payload.user_name, bundle),
        conversation.messages or [],
        payload.message,
        relevant,
    )
    conversation_id = str(conversation.id)

    if not payload.stream:
        try:
            reply = await ai.complete(messages)
        except Exception as e:
            raise HTTPException(status_code=502, detail=safe_error_detail(e, "AI provider request failed."))
        _append_exchange(conversation, payload.message, reply)
        return {
            "conversation_id": conversation_id,
            "message": reply,
            "context_used": bundle is not None,
            "focus": relevant.focus if relevant else [],
        }

    # Commit the conversation row now; the stream runs after this session is gone.
    await db.commit()

    async def event_stream():
        parts: list[str] = []
        try:
            async with aclosing(ai.stream(messages)) as deltas:
                async for delta in deltas:
                    if await request.is_disconnected():
                        logger.info(f"Client left conversation {conversation_id}; stopping stream")
                        return
                    parts.append(delta)
                    yield _sse({"type": "content", "content": delta, "conversation_id": conversation_id})
        except Exception as e:
            yield _sse({"type": "error", "error": safe_error_detail(e, "AI provider request failed.")})
            return

        await _save_streamed_exchange(conversation.id, payload.message, "".join(parts))
        yield _sse({"type": "done", "conversation_id": conversation_id})

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.get("/conversations")
async def list_conversations(
    user_id: Optional[str] = Query(None),
    limit: int = Query(20),
    db: AsyncSession = Depends(get_db),
):
    """List conversations, most recent first."""
    query = select(AIConversation).order_by(AIConversation.updated_at.desc()).limit(limit)
    if user_id:
        query = query.where(AIConversation.user_id == user_id)
    result = await db.execute(query)
    return [
        {
            "id": str(c.id),
            "account_id": str(c.account_id) if c.account_id else None,
            "title": c.title,
            "message_count": len(c.messages) if c.messages else 0,
            "updated_at": c.updated_at.isoformat() if c.updated_at else None,
        }
        for c in result.scalars().all()
    ]


@router.get("/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, db: AsyncSession = Depends(get_db)):
    """Get a conversation with its full message history."""
    conv = await db.get(AIConversation, parse_uuid(conversation_id))
    if not conv:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {
        "id": str(conv.id),
        "account_id": str(conv.account_id) if conv.account_id else None,
        "title": conv.title,
        "messages": conv.messages or [],
        "created_at": conv.created_at.isoformat() if conv.created_at else None,
        "updated_at": conv.updated_at.isoformat() if conv.updated_at else None,
    }


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str, db: AsyncSession = Depends(get_db)):
    """Delete a conversation."""
    conv = await db.get(AIConversation, parse_uuid(conversation_id))
    if not conv:
        raise HTTPException(status_code=404, detail="Conversation not found")
    await db.delete(conv)
    return {"status": "deleted"}
