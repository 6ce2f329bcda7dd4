"""
Similarity retrieval with adaptive filtering.
"""

from __future__ import annotations

import time
from typing import Optional, Sequence

import core.config as config
from core.models import MemoryCategory
from core.services.memory_store import MemoryHit, MemoryStore
from core.validators import validate_limit, validate_query_vector

logger = config.logger

PULL_THEN_FILTER = "pull_then_filter"
FILTER_IN_QUERY = "filter_in_query"


class RetrievalEngine:
    def __init__(
        self,
        store: MemoryStore,
        *,
        policy: str = config.RETRIEVAL_POLICY,
        top_k: int = config.RETRIEVAL_TOP_K,
        lenient_threshold: float = config.RETRIEVAL_LENIENT_THRESHOLD,
        strict_threshold: float = config.RETRIEVAL_STRICT_THRESHOLD,
        index_min_records: int = config.RETRIEVAL_INDEX_MIN_RECORDS,
        query_max_distance: float = config.RETRIEVAL_QUERY_MAX_DISTANCE,
        query_limit: int = config.RETRIEVAL_QUERY_LIMIT,
    ):
        if policy not in {PULL_THEN_FILTER, FILTER_IN_QUERY}:
            raise ValueError(f"Unknown retrieval policy: {policy}")
        self.store = store
        self.policy = policy
        self.top_k = top_k
        self.lenient_threshold = lenient_threshold
        self.strict_threshold = strict_threshold
        self.index_min_records = index_min_records
        self.query_max_distance = query_max_distance
        self.query_limit = query_limit

    def threshold_for(self, record_count: int) -> float:
        if record_count >= self.index_min_records:
            return self.strict_threshold
        return self.lenient_threshold

    def search(
        self,
        account_id: str,
        query_vector: Sequence[float],
        category: Optional[MemoryCategory] = None,
        limit: Optional[int] = None,
    ) -> list[MemoryHit]:
        """Return the account's nearest memories, most similar first."""
        validate_query_vector(query_vector)
        if limit is not None:
            validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
        view = self.store.for_account(account_id)
        start = time.perf_counter()

        if self.policy == FILTER_IN_QUERY:
            hits = view.nearest(
                query_vector,
                limit=limit or self.query_limit,
                category=category,
                max_distance=self.query_max_distance,
            )
            logger.info(
                "retrieval_complete",
                extra={
                    "account_id": account_id,
                    "policy": self.policy,
                    "kept": len(hits),
                    "elapsed_ms": int((time.perf_counter() - start) * 1000),
                },
            )
            return hits

        candidates = view.nearest(query_vector, limit=limit or self.top_k, category=category)
        if not candidates:
            logger.info(
                "retrieval_complete",
                extra={
                    "account_id": account_id,
                    "policy": self.policy,
                    "found": 0,
                    "kept": 0,
                    "elapsed_ms": int((time.perf_counter() - start) * 1000),
                },
            )
            return []

        threshold = self.threshold_for(view.count(category))
        kept = [hit for hit in candidates if hit.distance < threshold]
        for position, hit in enumerate(candidates):
            logger.debug(
                "retrieval_candidate",
                extra={
                    "account_id": account_id,
                    "position": position,
                    "distance": round(hit.distance, 4),
                    "kept": hit.distance < threshold,
                    "memory_id": hit.id,
                },
            )
        logger.info(
            "retrieval_complete",
            extra={
                "account_id": account_id,
                "policy": self.policy,
                "found": len(candidates),
                "kept": len(kept),
                "threshold": threshold,
                "distance_min": round(candidates[0].distance, 4),
                "distance_max": round(candidates[-1].distance, 4),
                "elapsed_ms": int((time.perf_counter() - start) * 1000),
            },
        )
        return kept
