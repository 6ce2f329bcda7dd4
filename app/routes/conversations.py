"""
Conversation history endpoints.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from starlette.concurrency import run_in_threadpool

from app.deps import get_history, get_request_context
from core.context import RequestContext
from core.services.conversation_history import ConversationHistory


router = APIRouter(prefix="/conversations")


@router.get("")
async def list_conversations(
    context: RequestContext = Depends(get_request_context),
    history: ConversationHistory = Depends(get_history),
):
    """One summary per conversation, oldest first."""
    conversations = await run_in_threadpool(history.list_conversations, context.auth.account_id)
    return {"success": True, "data": conversations}


@router.get("/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    context: RequestContext = Depends(get_request_context),
    history: ConversationHistory = Depends(get_history),
):
    conversation = await run_in_threadpool(
        history.get_conversation,
        context.auth.account_id,
        conversation_id,
    )
    return {
        "success": True,
        "message": "Messages retrieved successfully",
        "data": conversation,
    }
