"""
Dependency helpers for the FastAPI app.
"""

from __future__ import annotations

from fastapi import Depends, Request

from core.context import AuthContext, RequestContext, get_current_request_context
from core.models import Account
from core.services.chat_service import ChatService
from core.services.conversation_history import ConversationHistory
from core.services.session_auth import SessionAuthenticator, bearer_token


def get_authenticator(request: Request) -> SessionAuthenticator:
    return request.app.state.authenticator


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service


def get_history(service: ChatService = Depends(get_chat_service)) -> ConversationHistory:
    return service.history


def get_current_account(
    request: Request,
    authenticator: SessionAuthenticator = Depends(get_authenticator),
) -> Account:
    """Resolve the bearer token to an account; raises Unauthorized."""
    return authenticator.validate(bearer_token(request.headers))


async def get_auth_context(
    account: Account = Depends(get_current_account),
) -> AuthContext:
    actor = account.email or account.name or f"account_{account.id}"
    return AuthContext(account_id=account.id, token_version=account.token_version, actor=actor)


async def get_request_context(
    auth: AuthContext = Depends(get_auth_context),
) -> RequestContext:
    current = get_current_request_context()
    request_id = current.request_id if current else None
    return RequestContext(auth=auth, request_id=request_id, source="http")
