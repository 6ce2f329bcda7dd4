"""
Durable write path for chat turns.

Every turn produces one MessageRecord and, when the user text is worth
remembering, one MemoryRecord. Both ids are derived from
``(account_id, timestamp, user_text)`` so a retried or duplicated write lands
on the same row.

Two disciplines are supported per deployment:

``sync_critical``
    The memory write is awaited before the reply is returned, so a follow-up
    question can retrieve it immediately. The message write goes to the
    background writer.

``background``
    Both writes go to the background writer once the reply is ready. A rapid
    follow-up may not see the new memory yet.

Background failures are logged and dropped. A failed awaited memory write
raises ``PersistenceError``.
"""

from __future__ import annotations

import asyncio
import hashlib
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

import core.config as config
from core.errors import PersistenceError, UpstreamError
from core.models import MemoryCategory, MemoryRecord, MessageRecord, utcnow
from core.services.embedding_cache import EmbeddingCache
from core.services.memory_classifier import category_of, worth_storing
from core.services.memory_store import MemoryStore

logger = config.logger

SYNC_CRITICAL = "sync_critical"
BACKGROUND = "background"


def deterministic_id(seed: str) -> str:
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()[:32]


def message_id_for(account_id: str, timestamp: str, user_text: str) -> str:
    return deterministic_id(f"{account_id}-{timestamp}-{user_text}")


def memory_id_for(account_id: str, timestamp: str, user_text: str) -> str:
    return deterministic_id(f"{account_id}-memory-{timestamp}-{user_text}")


@dataclass
class BackgroundJob:
    kind: str
    account_id: str
    run: Callable[[], Awaitable[None]]
    enqueued_at: float = field(default_factory=time.perf_counter)


class BackgroundWriter:
    """Bounded queue of detached writes; failures are logged, never raised."""

    def __init__(
        self,
        maxsize: int = config.BACKGROUND_QUEUE_SIZE,
        workers: int = config.BACKGROUND_WORKERS,
    ):
        self._maxsize = maxsize
        self._worker_count = max(1, workers)
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self.failed = 0
        self.dropped = 0

    def _ensure_started(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self._maxsize)
        if not self._workers:
            self._workers = [
                asyncio.create_task(self._worker(), name=f"background-writer-{index}")
                for index in range(self._worker_count)
            ]
        return self._queue

    async def start(self) -> None:
        self._ensure_started()

    def submit(self, job: BackgroundJob) -> bool:
        queue = self._ensure_started()
        try:
            queue.put_nowait(job)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "background_write_dropped",
                extra={"account_id": job.account_id, "kind": job.kind, "reason": "queue_full"},
            )
            return False
        return True

    async def _worker(self) -> None:
        queue = self._queue
        while True:
            job = await queue.get()
            try:
                await job.run()
            except Exception as exc:
                self.failed += 1
                logger.warning(
                    "background_write_failed",
                    extra={
                        "account_id": job.account_id,
                        "kind": job.kind,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                        "elapsed_ms": int((time.perf_counter() - job.enqueued_at) * 1000),
                    },
                )
            finally:
                queue.task_done()

    async def join(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        await self.join()
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []

    def status(self) -> dict:
        return {
            "queued": self._queue.qsize() if self._queue is not None else 0,
            "workers": len(self._workers),
            "failed": self.failed,
            "dropped": self.dropped,
        }


@dataclass(frozen=True)
class PersistOutcome:
    message_id: str
    memory_id: Optional[str]
    category: Optional[MemoryCategory]
    mode: str


class DurableWriter:
    def __init__(
        self,
        store: MemoryStore,
        cache: EmbeddingCache,
        background: BackgroundWriter,
        mode: str = config.PERSISTENCE_MODE,
    ):
        if mode not in {SYNC_CRITICAL, BACKGROUND}:
            raise ValueError(f"Unknown persistence mode: {mode}")
        self.store = store
        self.cache = cache
        self.background = background
        self.mode = mode

    async def _write_message(self, record: MessageRecord) -> None:
        await asyncio.to_thread(self.store.create_message, record)
        logger.debug("message_saved", extra={"account_id": record.account_id, "message_id": record.id})

    async def _write_memory(
        self,
        account_id: str,
        memory_id: str,
        category: MemoryCategory,
        user_text: str,
        ai_text: str,
        embedding: Optional[List[float]],
        created_at: datetime,
    ) -> None:
        vector = embedding if embedding is not None else await self.cache.get_or_compute(user_text)
        record = MemoryRecord(
            id=memory_id,
            account_id=account_id,
            category=category,
            user_text=user_text,
            response_text=ai_text,
            embedding=list(vector),
            created_at=created_at,
        )
        await asyncio.to_thread(self.store.create_memory, record)
        logger.info(
            "memory_saved",
            extra={"account_id": account_id, "memory_id": memory_id, "category": category.value},
        )

    async def persist_exchange(
        self,
        account_id: str,
        conversation_id: str,
        user_text: str,
        ai_text: str,
        *,
        embedding: Optional[List[float]] = None,
        timestamp: Optional[datetime] = None,
    ) -> PersistOutcome:
        created_at = timestamp or utcnow()
        stamp = created_at.isoformat()
        message_record = MessageRecord(
            id=message_id_for(account_id, stamp, user_text),
            account_id=account_id,
            conversation_id=conversation_id,
            user_text=user_text,
            response_text=ai_text,
            created_at=created_at,
        )
        self.background.submit(
            BackgroundJob(
                kind="message",
                account_id=account_id,
                run=lambda: self._write_message(message_record),
            )
        )

        if not worth_storing(user_text):
            logger.debug("memory_save_skipped", extra={"account_id": account_id})
            return PersistOutcome(message_record.id, None, None, self.mode)

        memory_id = memory_id_for(account_id, stamp, user_text)
        category = category_of(user_text)

        async def write_memory() -> None:
            await self._write_memory(
                account_id, memory_id, category, user_text, ai_text, embedding, created_at,
            )

        if self.mode == BACKGROUND:
            self.background.submit(
                BackgroundJob(kind="memory", account_id=account_id, run=write_memory)
            )
            return PersistOutcome(message_record.id, memory_id, category, self.mode)

        start = time.perf_counter()
        try:
            await write_memory()
        except UpstreamError as exc:
            logger.error(
                "memory_write_failed",
                extra={
                    "account_id": account_id,
                    "stage": "memory_embedding",
                    "elapsed_ms": int((time.perf_counter() - start) * 1000),
                },
            )
            raise PersistenceError("memory embedding unavailable", stage="memory_embedding") from exc
        except Exception as exc:
            logger.error(
                "memory_write_failed",
                extra={
                    "account_id": account_id,
                    "stage": "memory_write",
                    "error_type": type(exc).__name__,
                    "elapsed_ms": int((time.perf_counter() - start) * 1000),
                },
            )
            raise PersistenceError("memory write failed", stage="memory_write") from exc
        return PersistOutcome(message_record.id, memory_id, category, self.mode)
