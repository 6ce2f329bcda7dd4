"""
FastAPI app wiring for ChatRecall.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

import core.config as config
from core.context import current_request_id
from core.db import dispose_db, init_db
from core.errors import (
    InternalError,
    PersistenceError,
    Unauthorized,
    UpstreamError,
    ValidationIssue,
)
from core.services.chat_service import build_chat_service
from core.services.session_auth import SessionAuthenticator
from app.middleware import configure_middleware
from app.routes.auth import router as auth_router
from app.routes.chat import router as chat_router
from app.routes.conversations import router as conversations_router
from app.routes.health import router as health_router
from app.routes.root import router as root_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize on startup, cleanup on shutdown."""
    init_db()
    app.state.authenticator = SessionAuthenticator()
    app.state.chat_service = build_chat_service()
    await app.state.chat_service.start()
    try:
        yield
    finally:
        await app.state.chat_service.close()
        dispose_db()


async def _unauthorized_handler(request: Request, exc: Unauthorized):
    config.logger.info(
        "request_unauthorized",
        extra={"reason": exc.reason, "path": request.url.path, "request_id": current_request_id()},
    )
    return JSONResponse(
        status_code=401,
        content={"message": "Unauthorized"},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _validation_handler(request: Request, exc: ValidationIssue):
    return JSONResponse(
        status_code=400,
        content={"message": str(exc), "field": exc.field, "error_type": exc.error_type},
    )


async def _internal_handler(request: Request, exc: Exception):
    config.logger.error(
        "request_failed",
        extra={
            "path": request.url.path,
            "error_type": type(exc).__name__,
            "stage": getattr(exc, "stage", None),
            "request_id": current_request_id(),
        },
    )
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


def create_app(*, lifespan_handler=lifespan) -> FastAPI:
    app = FastAPI(title="ChatRecall", redirect_slashes=False, lifespan=lifespan_handler)
    configure_middleware(app)

    app.add_exception_handler(Unauthorized, _unauthorized_handler)
    app.add_exception_handler(ValidationIssue, _validation_handler)
    app.add_exception_handler(InternalError, _internal_handler)
    app.add_exception_handler(PersistenceError, _internal_handler)
    app.add_exception_handler(UpstreamError, _internal_handler)

    app.include_router(root_router)
    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(chat_router)
    app.include_router(conversations_router)
    return app


app = create_app()
