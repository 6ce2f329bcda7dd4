"""
Similarity store over memory and message records.

Queries are only reachable through ``MemoryStore.for_account``; the returned
view bakes the account predicate into every statement it issues.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Sequence

import numpy as np
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from core.config import logger
from core.db import open_session
from core.models import MemoryCategory, MemoryRecord, MessageRecord, VECTOR_COLUMN_NATIVE


@dataclass(frozen=True)
class MemoryHit:
    id: str
    account_id: str
    category: MemoryCategory
    user_text: str
    response_text: Optional[str]
    created_at: Optional[datetime]
    distance: float


def cosine_distances(query: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """Cosine distance of each row of ``matrix`` to ``query`` (0 = identical)."""
    q = np.asarray(query, dtype=float)
    q_norm = np.linalg.norm(q)
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * q_norm
    similarity = np.divide(
        matrix @ q,
        denom,
        out=np.zeros(matrix.shape[0], dtype=float),
        where=denom > 0,
    )
    return 1.0 - similarity


def _timestamp_key(value: Optional[datetime]) -> float:
    return value.timestamp() if value else 0.0


class AccountMemoryView:
    """Read access to one account's memories."""

    def __init__(self, account_id: str, session_factory: Callable, native_vectors: bool):
        self.account_id = account_id
        self._session_factory = session_factory
        self._native_vectors = native_vectors

    def count(self, category: Optional[MemoryCategory] = None) -> int:
        db = self._session_factory()
        try:
            query = db.query(func.count(MemoryRecord.id)).filter(
                MemoryRecord.account_id == self.account_id
            )
            if category is not None:
                query = query.filter(MemoryRecord.category == category)
            return int(query.scalar() or 0)
        finally:
            db.close()

    def nearest(
        self,
        vector: Sequence[float],
        *,
        limit: int,
        category: Optional[MemoryCategory] = None,
        max_distance: Optional[float] = None,
    ) -> list[MemoryHit]:
        """Nearest memories by ascending cosine distance, newest first on ties."""
        db = self._session_factory()
        try:
            if self._native_vectors:
                return self._nearest_native(db, vector, limit, category, max_distance)
            return self._nearest_scan(db, vector, limit, category, max_distance)
        finally:
            db.close()

    def _nearest_native(self, db, vector, limit, category, max_distance) -> list[MemoryHit]:
        distance_expr = MemoryRecord.embedding.cosine_distance(list(vector))
        distance = distance_expr.label("distance")
        query = db.query(MemoryRecord, distance).filter(
            MemoryRecord.account_id == self.account_id
        )
        if category is not None:
            query = query.filter(MemoryRecord.category == category)
        if max_distance is not None:
            query = query.filter(distance_expr < max_distance)
        rows = (
            query.order_by(distance, MemoryRecord.created_at.desc(), MemoryRecord.id)
            .limit(limit)
            .all()
        )
        return [_to_hit(record, float(score)) for record, score in rows]

    def _nearest_scan(self, db, vector, limit, category, max_distance) -> list[MemoryHit]:
        query = db.query(MemoryRecord).filter(MemoryRecord.account_id == self.account_id)
        if category is not None:
            query = query.filter(MemoryRecord.category == category)
        records = [
            record for record in query.all()
            if record.embedding and len(record.embedding) == len(vector)
        ]
        if not records:
            return []

        matrix = np.asarray([record.embedding for record in records], dtype=float)
        distances = cosine_distances(vector, matrix)
        ranked = sorted(
            zip(records, distances.tolist()),
            key=lambda item: (item[1], -_timestamp_key(item[0].created_at), item[0].id),
        )
        if max_distance is not None:
            ranked = [item for item in ranked if item[1] < max_distance]
        return [_to_hit(record, score) for record, score in ranked[:limit]]


def _to_hit(record: MemoryRecord, distance: float) -> MemoryHit:
    return MemoryHit(
        id=record.id,
        account_id=record.account_id,
        category=MemoryCategory(record.category),
        user_text=record.user_text,
        response_text=record.response_text,
        created_at=record.created_at,
        distance=distance,
    )


class MemoryStore:
    def __init__(
        self,
        session_factory: Optional[Callable] = None,
        native_vectors: Optional[bool] = None,
    ):
        self._session_factory = session_factory or open_session
        self._native_vectors = VECTOR_COLUMN_NATIVE if native_vectors is None else native_vectors

    def for_account(self, account_id: str) -> AccountMemoryView:
        if not account_id:
            raise ValueError("account_id is required")
        return AccountMemoryView(account_id, self._session_factory, self._native_vectors)

    def _merge(self, record) -> None:
        db = self._session_factory()
        try:
            db.merge(record)
            db.commit()
        except IntegrityError:
            # A concurrent writer inserted the same deterministic id first.
            db.rollback()
            logger.info(
                "store_duplicate_write",
                extra={"table": record.__tablename__, "record_id": record.id},
            )
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def create_memory(self, record: MemoryRecord) -> None:
        self._merge(record)

    def create_message(self, record: MessageRecord) -> None:
        self._merge(record)
