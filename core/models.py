"""
ChatRecall Database Models
PostgreSQL + pgvector schema (JSON vectors on sqlite)
"""

from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, Index, Enum, JSON,
)
from sqlalchemy.orm import declarative_base

import core.config as config

DB_BACKEND_EFFECTIVE = config.DB_BACKEND_EFFECTIVE
VECTOR_BACKEND_EFFECTIVE = config.VECTOR_BACKEND_EFFECTIVE

try:
    from pgvector.sqlalchemy import Vector as PgVector
    PGVECTOR_AVAILABLE = True
except Exception:
    PgVector = None
    PGVECTOR_AVAILABLE = False

if (
    DB_BACKEND_EFFECTIVE == "postgres"
    and VECTOR_BACKEND_EFFECTIVE == "pgvector"
    and PGVECTOR_AVAILABLE
):
    EMBEDDING_COLUMN_TYPE = PgVector(config.EMBEDDING_DIM)
    VECTOR_COLUMN_NATIVE = True
else:
    EMBEDDING_COLUMN_TYPE = JSON
    VECTOR_COLUMN_NATIVE = False


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


Base = declarative_base()

# =============================================================================
# Enums
# =============================================================================

class MemoryCategory(str, PyEnum):
    fact = "fact"
    conversation = "conversation"


# =============================================================================
# Accounts
# =============================================================================

class Account(Base):
    __tablename__ = "accounts"

    id = Column(String(64), primary_key=True)
    email = Column(String(255), unique=True)
    name = Column(String(255))
    password_hash = Column(String(255))  # written by the registration flow
    token_version = Column(Integer, default=0, server_default="0", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# =============================================================================
# Long-term memory
# =============================================================================

class MemoryRecord(Base):
    __tablename__ = "memory_records"

    id = Column(String(32), primary_key=True)  # sha256 prefix, see memory_persistence
    account_id = Column(String(64), nullable=False)
    category = Column(Enum(MemoryCategory, name="memory_category"), nullable=False)
    user_text = Column(Text, nullable=False)
    response_text = Column(Text)
    embedding = Column(EMBEDDING_COLUMN_TYPE, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_memory_records_account_category", "account_id", "category"),
    )


# =============================================================================
# Message log
# =============================================================================

class MessageRecord(Base):
    __tablename__ = "message_records"

    id = Column(String(32), primary_key=True)
    account_id = Column(String(64), nullable=False)
    conversation_id = Column(String(64), nullable=False)
    user_text = Column(Text, nullable=False)
    response_text = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index(
            "ix_message_records_account_conversation",
            "account_id",
            "conversation_id",
            "created_at",
        ),
    )


class ConversationCounter(Base):
    __tablename__ = "conversation_counters"

    account_id = Column(String(64), primary_key=True)
    value = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


__all__ = [
    "Base",
    "MemoryCategory",
    "Account",
    "MemoryRecord",
    "MessageRecord",
    "ConversationCounter",
    "PGVECTOR_AVAILABLE",
    "VECTOR_COLUMN_NATIVE",
    "utcnow",
]
