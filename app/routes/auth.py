"""
Session endpoints.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from starlette.concurrency import run_in_threadpool

from app.deps import get_authenticator, get_request_context
from core.context import RequestContext
from core.services.session_auth import SessionAuthenticator


router = APIRouter(prefix="/auth")


@router.post("/logout")
async def logout(
    context: RequestContext = Depends(get_request_context),
    authenticator: SessionAuthenticator = Depends(get_authenticator),
):
    """Revoke every token issued to the caller, including this one."""
    await run_in_threadpool(authenticator.revoke, context.auth.account_id)
    return {"message": "Logout successful. Please remove the token from client storage."}
