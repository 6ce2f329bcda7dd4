"""
Root endpoint with service metadata.
"""

from __future__ import annotations

from fastapi import APIRouter

import core.config as config


router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": "ChatRecall",
        "version": "0.1.0",
        "description": "Conversational memory for AI chat",
        "embedding_model": config.EMBEDDING_MODEL,
        "retrieval_policy": config.RETRIEVAL_POLICY,
        "persistence_mode": config.PERSISTENCE_MODE,
        "endpoints": {
            "health": "/health",
            "chat": "/chat",
            "conversations": "/conversations",
            "logout": "/auth/logout",
        },
    }
