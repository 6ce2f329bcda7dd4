import asyncio
from datetime import datetime, timezone

import pytest

from core.errors import PersistenceError, UpstreamError
from core.models import MemoryCategory, MemoryRecord, MessageRecord
from core.services.embedding_cache import EmbeddingCache
from core.services.memory_persistence import (
    BackgroundJob,
    BackgroundWriter,
    DurableWriter,
    memory_id_for,
    message_id_for,
)


TIMESTAMP = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)


async def _vector(text):
    return [1.0, 0.0, 0.0]


def _rows(session_factory, model, account_id="acct-1"):
    db = session_factory()
    try:
        return db.query(model).filter(model.account_id == account_id).all()
    finally:
        db.close()


def test_ids_are_deterministic_and_distinct():
    stamp = TIMESTAMP.isoformat()
    assert message_id_for("acct-1", stamp, "I am vegetarian") == message_id_for(
        "acct-1", stamp, "I am vegetarian"
    )
    assert len(message_id_for("acct-1", stamp, "I am vegetarian")) == 32
    assert message_id_for("acct-1", stamp, "I am vegetarian") != memory_id_for(
        "acct-1", stamp, "I am vegetarian"
    )
    assert message_id_for("acct-1", stamp, "I am vegetarian") != message_id_for(
        "acct-2", stamp, "I am vegetarian"
    )


def test_sync_critical_writes_memory_before_returning(session_factory, memory_store):
    writer = DurableWriter(
        memory_store,
        EmbeddingCache(8, _vector),
        BackgroundWriter(maxsize=10, workers=1),
        mode="sync_critical",
    )

    async def scenario():
        outcome = await writer.persist_exchange(
            "acct-1", "1", "I am vegetarian", "Noted!", timestamp=TIMESTAMP
        )
        memories_before_join = _rows(session_factory, MemoryRecord)
        await writer.background.stop()
        return outcome, memories_before_join

    outcome, memories = asyncio.run(scenario())

    assert outcome.category == MemoryCategory.fact
    assert [memory.id for memory in memories] == [outcome.memory_id]
    assert memories[0].embedding == [1.0, 0.0, 0.0]
    messages = _rows(session_factory, MessageRecord)
    assert [message.id for message in messages] == [outcome.message_id]
    assert messages[0].conversation_id == "1"


def test_repeated_exchange_is_idempotent(session_factory, memory_store):
    writer = DurableWriter(
        memory_store,
        EmbeddingCache(8, _vector),
        BackgroundWriter(maxsize=10, workers=2),
        mode="sync_critical",
    )

    async def scenario():
        first = await writer.persist_exchange(
            "acct-1", "1", "I am vegetarian", "Noted!", timestamp=TIMESTAMP
        )
        second = await writer.persist_exchange(
            "acct-1", "1", "I am vegetarian", "Noted again!", timestamp=TIMESTAMP
        )
        await writer.background.stop()
        return first, second

    first, second = asyncio.run(scenario())

    assert first.memory_id == second.memory_id
    assert first.message_id == second.message_id
    assert len(_rows(session_factory, MemoryRecord)) == 1
    assert len(_rows(session_factory, MessageRecord)) == 1


def test_acknowledgement_is_not_remembered(session_factory, memory_store):
    writer = DurableWriter(
        memory_store,
        EmbeddingCache(8, _vector),
        BackgroundWriter(maxsize=10, workers=1),
    )

    async def scenario():
        outcome = await writer.persist_exchange("acct-1", "1", "thanks", "You're welcome!")
        await writer.background.stop()
        return outcome

    outcome = asyncio.run(scenario())

    assert outcome.memory_id is None
    assert _rows(session_factory, MemoryRecord) == []
    assert len(_rows(session_factory, MessageRecord)) == 1


def test_background_mode_defers_memory_write(session_factory, memory_store):
    writer = DurableWriter(
        memory_store,
        EmbeddingCache(8, _vector),
        BackgroundWriter(maxsize=10, workers=1),
        mode="background",
    )

    async def scenario():
        outcome = await writer.persist_exchange(
            "acct-1", "1", "I like jazz", "Great taste!", timestamp=TIMESTAMP
        )
        before = _rows(session_factory, MemoryRecord)
        await writer.background.join()
        after = _rows(session_factory, MemoryRecord)
        await writer.background.stop()
        return outcome, before, after

    outcome, before, after = asyncio.run(scenario())

    assert outcome.mode == "background"
    assert before == []
    assert [memory.id for memory in after] == [outcome.memory_id]


def test_sync_embedding_failure_raises_persistence_error(session_factory, memory_store):
    async def unavailable(text):
        raise UpstreamError("down", service="embedding")

    writer = DurableWriter(
        memory_store,
        EmbeddingCache(8, unavailable),
        BackgroundWriter(maxsize=10, workers=1),
        mode="sync_critical",
    )

    async def scenario():
        try:
            await writer.persist_exchange("acct-1", "1", "I am vegetarian", "Noted!")
        finally:
            await writer.background.stop()

    with pytest.raises(PersistenceError) as exc_info:
        asyncio.run(scenario())
    assert exc_info.value.stage == "memory_embedding"
    assert _rows(session_factory, MemoryRecord) == []


def test_sync_store_failure_raises_persistence_error(session_factory, memory_store, monkeypatch):
    def broken_create(record):
        raise RuntimeError("disk full")

    monkeypatch.setattr(memory_store, "create_memory", broken_create)
    writer = DurableWriter(
        memory_store,
        EmbeddingCache(8, _vector),
        BackgroundWriter(maxsize=10, workers=1),
        mode="sync_critical",
    )

    async def scenario():
        try:
            await writer.persist_exchange("acct-1", "1", "I am vegetarian", "Noted!")
        finally:
            await writer.background.stop()

    with pytest.raises(PersistenceError) as exc_info:
        asyncio.run(scenario())
    assert exc_info.value.stage == "memory_write"


def test_background_writer_drops_when_full():
    ran = []

    async def job():
        ran.append(True)

    async def scenario():
        background = BackgroundWriter(maxsize=1, workers=1)
        accepted = [
            background.submit(BackgroundJob(kind="message", account_id="acct-1", run=job)),
            background.submit(BackgroundJob(kind="message", account_id="acct-1", run=job)),
        ]
        await background.stop()
        return accepted, background.status()

    accepted, status = asyncio.run(scenario())

    assert accepted == [True, False]
    assert status["dropped"] == 1
    assert ran == [True]


def test_background_failures_are_counted_not_raised():
    async def failing():
        raise RuntimeError("store offline")

    async def scenario():
        background = BackgroundWriter(maxsize=5, workers=1)
        background.submit(BackgroundJob(kind="memory", account_id="acct-1", run=failing))
        await background.join()
        status = background.status()
        await background.stop()
        return status

    status = asyncio.run(scenario())

    assert status["failed"] == 1
    assert status["queued"] == 0


def test_unknown_mode_rejected(memory_store):
    with pytest.raises(ValueError):
        DurableWriter(memory_store, EmbeddingCache(8, _vector), BackgroundWriter(), mode="eventual")
