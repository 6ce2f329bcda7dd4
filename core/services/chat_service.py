"""
Per-request chat orchestration.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import List, Optional

import core.config as config
from core.context import current_request_id
from core.errors import InternalError, PersistenceError, UpstreamError
from core.services.context_assembler import AssembledContext, assemble, build_prompt
from core.services.conversation_history import ConversationHistory
from core.services.embedding_cache import EmbeddingCache
from core.services.embedding_gateway import EmbeddingGateway
from core.services.memory_classifier import needs_retrieval
from core.services.memory_persistence import BackgroundWriter, DurableWriter
from core.services.memory_retrieval import RetrievalEngine
from core.services.memory_store import MemoryStore
from core.services.reply_generation import ReplyGenerator
from core.validators import validate_optional_text, validate_required_text

logger = config.logger


@dataclass(frozen=True)
class ChatReply:
    reply: str
    conversation_id: str
    retrieved: int
    memory_stored: bool


@dataclass(frozen=True)
class _RetrievalResult:
    context: AssembledContext
    embedding: Optional[List[float]]
    retrieved: int


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class ChatService:
    def __init__(
        self,
        *,
        cache: EmbeddingCache,
        retrieval: RetrievalEngine,
        generator: ReplyGenerator,
        writer: DurableWriter,
        history: ConversationHistory,
        gateway: Optional[EmbeddingGateway] = None,
        retrieval_timeout_seconds: float = config.RETRIEVAL_TIMEOUT_SECONDS,
    ):
        self.cache = cache
        self.retrieval = retrieval
        self.generator = generator
        self.writer = writer
        self.history = history
        self.gateway = gateway
        self.retrieval_timeout_seconds = retrieval_timeout_seconds

    async def start(self) -> None:
        await self.writer.background.start()

    async def close(self) -> None:
        await self.writer.background.stop()
        await self.generator.aclose()
        if self.gateway is not None:
            await self.gateway.aclose()

    async def _retrieve(self, account_id: str, text: str) -> _RetrievalResult:
        embedding = await self.cache.get_or_compute(text)
        hits = await asyncio.to_thread(self.retrieval.search, account_id, embedding)
        return _RetrievalResult(assemble(hits), embedding, len(hits))

    async def _retrieve_or_degrade(self, account_id: str, text: str) -> _RetrievalResult:
        start = time.perf_counter()
        try:
            return await asyncio.wait_for(
                self._retrieve(account_id, text),
                timeout=self.retrieval_timeout_seconds,
            )
        except (UpstreamError, asyncio.TimeoutError) as exc:
            reason = "timeout" if isinstance(exc, asyncio.TimeoutError) else "upstream"
        except Exception as exc:
            reason = f"store:{type(exc).__name__}"
        logger.warning(
            "retrieval_degraded",
            extra={
                "account_id": account_id,
                "stage": "retrieval",
                "reason": reason,
                "elapsed_ms": _elapsed_ms(start),
                "request_id": current_request_id(),
            },
        )
        return _RetrievalResult(AssembledContext.empty(), None, 0)

    async def _resolve_conversation(self, account_id: str, conversation_id: Optional[str]) -> str:
        if conversation_id:
            return conversation_id
        return await asyncio.to_thread(self.history.next_conversation_id, account_id)

    async def send_message(
        self,
        account_id: str,
        text: str,
        conversation_id: Optional[str] = None,
    ) -> ChatReply:
        """Answer one user message and record the turn."""
        validate_required_text(account_id, "account_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_required_text(text, "message", config.MAX_MESSAGE_LENGTH)
        validate_optional_text(conversation_id, "conversation_id", config.MAX_SHORT_TEXT_LENGTH)

        total_start = time.perf_counter()
        retrieval_start = total_start
        retrieval_task = None
        if needs_retrieval(text):
            retrieval_task = asyncio.create_task(self._retrieve_or_degrade(account_id, text))
        else:
            logger.debug("retrieval_skipped", extra={"account_id": account_id})

        try:
            resolved_conversation = await self._resolve_conversation(account_id, conversation_id)
        except Exception as exc:
            if retrieval_task is not None:
                retrieval_task.cancel()
            logger.error(
                "chat_request_failed",
                extra={
                    "account_id": account_id,
                    "stage": "conversation",
                    "error_type": type(exc).__name__,
                    "elapsed_ms": _elapsed_ms(total_start),
                },
            )
            raise InternalError(stage="conversation") from exc

        if retrieval_task is not None:
            retrieved = await retrieval_task
        else:
            retrieved = _RetrievalResult(AssembledContext.empty(), None, 0)
        retrieval_ms = _elapsed_ms(retrieval_start)

        generation_start = time.perf_counter()
        prompt = build_prompt(retrieved.context, text)
        try:
            reply = await self.generator.generate(self.generator.messages_for(prompt))
        except UpstreamError as exc:
            logger.error(
                "chat_request_failed",
                extra={
                    "account_id": account_id,
                    "stage": "generation",
                    "error": str(exc),
                    "elapsed_ms": _elapsed_ms(total_start),
                    "request_id": current_request_id(),
                },
            )
            raise InternalError(stage="generation") from exc
        generation_ms = _elapsed_ms(generation_start)

        persist_start = time.perf_counter()
        try:
            outcome = await self.writer.persist_exchange(
                account_id,
                resolved_conversation,
                text,
                reply,
                embedding=retrieved.embedding,
            )
        except PersistenceError as exc:
            logger.error(
                "chat_request_failed",
                extra={
                    "account_id": account_id,
                    "stage": exc.stage,
                    "elapsed_ms": _elapsed_ms(total_start),
                    "request_id": current_request_id(),
                },
            )
            raise InternalError(stage=exc.stage) from exc

        logger.info(
            "chat_request_complete",
            extra={
                "account_id": account_id,
                "conversation_id": resolved_conversation,
                "retrieved": retrieved.retrieved,
                "memory_id": outcome.memory_id,
                "retrieval_ms": retrieval_ms,
                "generation_ms": generation_ms,
                "persist_ms": _elapsed_ms(persist_start),
                "total_ms": _elapsed_ms(total_start),
                "request_id": current_request_id(),
            },
        )
        return ChatReply(
            reply=reply,
            conversation_id=resolved_conversation,
            retrieved=retrieved.retrieved,
            memory_stored=outcome.memory_id is not None,
        )


def build_chat_service(
    *,
    gateway: Optional[EmbeddingGateway] = None,
    generator: Optional[ReplyGenerator] = None,
    store: Optional[MemoryStore] = None,
    background: Optional[BackgroundWriter] = None,
    history: Optional[ConversationHistory] = None,
) -> ChatService:
    """Wire the default components from configuration."""
    gateway = gateway or EmbeddingGateway()
    store = store or MemoryStore()
    cache = EmbeddingCache(config.EMBEDDING_CACHE_SIZE, gateway.embed)
    return ChatService(
        cache=cache,
        retrieval=RetrievalEngine(store),
        generator=generator or ReplyGenerator(),
        writer=DurableWriter(store, cache, background or BackgroundWriter()),
        history=history or ConversationHistory(),
        gateway=gateway,
    )
