"""
Bounded in-process embedding cache.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Awaitable, Callable, List, Optional

from core.config import logger

Vector = List[float]


class EmbeddingCache:
    """
    Maps exact text to its embedding vector, evicting the oldest insertion
    once ``capacity`` entries are held.

    Lookups do not refresh recency. The lock is released while the compute
    call is awaited, so concurrent misses on the same text may each reach the
    gateway; only the bookkeeping is serialized.
    """

    def __init__(self, capacity: int, compute: Callable[[str], Awaitable[Vector]]):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._compute = compute
        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, Vector]" = OrderedDict()
        self._hits = 0
        self._misses = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, text: str) -> bool:
        with self._lock:
            return text in self._entries

    def get(self, text: str) -> Optional[Vector]:
        with self._lock:
            return self._entries.get(text)

    def put(self, text: str, vector: Vector) -> None:
        with self._lock:
            if text in self._entries:
                self._entries[text] = vector
                return
            while len(self._entries) >= self._capacity:
                self._entries.popitem(last=False)
            self._entries[text] = vector

    async def get_or_compute(self, text: str) -> Vector:
        with self._lock:
            cached = self._entries.get(text)
            if cached is not None:
                self._hits += 1
        if cached is not None:
            logger.debug("embedding_cache_hit", extra={"text_length": len(text)})
            return cached

        with self._lock:
            self._misses += 1
        vector = await self._compute(text)
        self.put(text, vector)
        return vector

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict:
        with self._lock:
            return {
                "size": len(self._entries),
                "capacity": self._capacity,
                "hits": self._hits,
                "misses": self._misses,
            }
