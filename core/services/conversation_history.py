"""
Conversation ids and message history, always scoped to one account.
"""

from __future__ import annotations

from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from core.db import open_session
from core.models import ConversationCounter, MessageRecord, utcnow
from core.validators import validate_required_text
import core.config as config


def _serialize_message(record: MessageRecord) -> dict:
    return {
        "id": record.id,
        "message": record.user_text,
        "response": record.response_text,
        "timestamp": record.created_at.isoformat() if record.created_at else None,
    }


class ConversationHistory:
    def __init__(self, session_factory: Optional[Callable] = None):
        self._session_factory = session_factory or open_session

    def next_conversation_id(self, account_id: str) -> str:
        """Allocate the account's next sequential conversation id ("1", "2", ...)."""
        db = self._session_factory()
        try:
            result = db.execute(
                update(ConversationCounter)
                .where(ConversationCounter.account_id == account_id)
                .values(value=ConversationCounter.value + 1, updated_at=utcnow())
            )
            if result.rowcount == 0:
                db.add(ConversationCounter(account_id=account_id, value=1))
                try:
                    db.commit()
                    return "1"
                except IntegrityError:
                    # Another request created the counter first.
                    db.rollback()
                    db.execute(
                        update(ConversationCounter)
                        .where(ConversationCounter.account_id == account_id)
                        .values(value=ConversationCounter.value + 1, updated_at=utcnow())
                    )
            db.commit()
            value = (
                db.query(ConversationCounter.value)
                .filter(ConversationCounter.account_id == account_id)
                .scalar()
            )
            return str(value)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_conversation(self, account_id: str, conversation_id: str) -> dict:
        validate_required_text(conversation_id, "conversation_id", config.MAX_SHORT_TEXT_LENGTH)
        db = self._session_factory()
        try:
            records = (
                db.query(MessageRecord)
                .filter(
                    MessageRecord.account_id == account_id,
                    MessageRecord.conversation_id == conversation_id,
                )
                .order_by(MessageRecord.created_at.asc(), MessageRecord.id.asc())
                .all()
            )
            messages = [_serialize_message(record) for record in records]
        finally:
            db.close()
        return {
            "conversation_id": conversation_id,
            "total_messages": len(messages),
            "messages": messages,
        }

    def list_conversations(self, account_id: str) -> list[dict]:
        db = self._session_factory()
        try:
            records = (
                db.query(MessageRecord)
                .filter(MessageRecord.account_id == account_id)
                .order_by(MessageRecord.created_at.asc(), MessageRecord.id.asc())
                .all()
            )
            summaries: dict[str, dict] = {}
            for record in records:
                summary = summaries.get(record.conversation_id)
                if summary is None:
                    summaries[record.conversation_id] = {
                        "conversation_id": record.conversation_id,
                        "first_message": record.user_text,
                        "timestamp": record.created_at.isoformat() if record.created_at else None,
                        "total_messages": 1,
                    }
                else:
                    summary["total_messages"] += 1
        finally:
            db.close()
        return list(summaries.values())
