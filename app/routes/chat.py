"""
Chat endpoint.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.deps import get_chat_service, get_request_context
from core.context import RequestContext
from core.errors import ValidationIssue
from core.services.chat_service import ChatService


router = APIRouter()


class ChatRequest(BaseModel):
    message: Optional[str] = None
    conversation_id: Optional[str] = None


@router.post("/chat")
async def chat(
    body: ChatRequest,
    context: RequestContext = Depends(get_request_context),
    service: ChatService = Depends(get_chat_service),
):
    """Answer a message using the caller's remembered context."""
    if not body.message or not body.message.strip():
        raise ValidationIssue("message is required", field="message", error_type="required")
    result = await service.send_message(
        context.auth.account_id,
        body.message,
        conversation_id=body.conversation_id,
    )
    return {
        "success": True,
        "data": result.reply,
        "conversation_id": result.conversation_id,
    }
