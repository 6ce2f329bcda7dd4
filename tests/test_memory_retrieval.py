from datetime import datetime, timedelta, timezone

import pytest

from core.errors import ValidationIssue
from core.models import MemoryCategory, MemoryRecord
from core.services.memory_retrieval import FILTER_IN_QUERY, PULL_THEN_FILTER, RetrievalEngine


BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
QUERY = [1.0, 0.0, 0.0]


def _seed(memory_store, account_id, memory_id, vector, *, minutes=0, category=MemoryCategory.fact):
    memory_store.create_memory(
        MemoryRecord(
            id=memory_id,
            account_id=account_id,
            category=category,
            user_text=f"text {memory_id}",
            response_text=f"reply {memory_id}",
            embedding=vector,
            created_at=BASE_TIME + timedelta(minutes=minutes),
        )
    )


def test_results_ordered_by_distance_then_newest(session_factory, memory_store):
    _seed(memory_store, "acct-1", "far", [0.3, 1.0, 0.0], minutes=0)
    _seed(memory_store, "acct-1", "exact-old", [2.0, 0.0, 0.0], minutes=1)
    _seed(memory_store, "acct-1", "exact-new", [1.0, 0.0, 0.0], minutes=5)
    _seed(memory_store, "acct-1", "near", [1.0, 1.0, 0.0], minutes=2)

    engine = RetrievalEngine(memory_store, policy=PULL_THEN_FILTER, top_k=5)
    hits = engine.search("acct-1", QUERY)

    assert [hit.id for hit in hits] == ["exact-new", "exact-old", "near", "far"]
    distances = [hit.distance for hit in hits]
    assert distances == sorted(distances)


def test_search_never_crosses_accounts(session_factory, memory_store):
    _seed(memory_store, "acct-1", "mine", [1.0, 0.0, 0.0])
    _seed(memory_store, "acct-2", "theirs", [1.0, 0.0, 0.0])

    engine = RetrievalEngine(memory_store)
    hits = engine.search("acct-1", QUERY)

    assert [hit.id for hit in hits] == ["mine"]
    assert all(hit.account_id == "acct-1" for hit in hits)


def test_empty_account_returns_nothing(session_factory, memory_store):
    _seed(memory_store, "acct-2", "theirs", [1.0, 0.0, 0.0])

    for policy in (PULL_THEN_FILTER, FILTER_IN_QUERY):
        assert RetrievalEngine(memory_store, policy=policy).search("acct-1", QUERY) == []


def test_lenient_threshold_for_small_collections(session_factory, memory_store):
    _seed(memory_store, "acct-1", "close", [1.0, 0.0, 0.0])
    _seed(memory_store, "acct-1", "middling", [0.3, 1.0, 0.0])  # distance ~0.71
    _seed(memory_store, "acct-1", "unrelated", [0.0, 0.0, 1.0])  # distance 1.0

    engine = RetrievalEngine(
        memory_store,
        policy=PULL_THEN_FILTER,
        lenient_threshold=0.8,
        strict_threshold=0.6,
        index_min_records=10,
    )
    hits = engine.search("acct-1", QUERY)

    assert [hit.id for hit in hits] == ["close", "middling"]


def test_strict_threshold_once_collection_is_large(session_factory, memory_store):
    _seed(memory_store, "acct-1", "close", [1.0, 0.0, 0.0])
    _seed(memory_store, "acct-1", "middling", [0.3, 1.0, 0.0])
    _seed(memory_store, "acct-1", "unrelated", [0.0, 0.0, 1.0])

    engine = RetrievalEngine(
        memory_store,
        policy=PULL_THEN_FILTER,
        lenient_threshold=0.8,
        strict_threshold=0.6,
        index_min_records=3,
    )
    hits = engine.search("acct-1", QUERY)

    assert [hit.id for hit in hits] == ["close"]


def test_threshold_counts_only_the_searched_category(session_factory, memory_store):
    for index in range(3):
        _seed(memory_store, "acct-1", f"fact-{index}", [0.0, 0.0, 1.0], minutes=index)
    _seed(memory_store, "acct-1", "chat", [0.3, 1.0, 0.0], category=MemoryCategory.conversation)

    engine = RetrievalEngine(
        memory_store,
        policy=PULL_THEN_FILTER,
        lenient_threshold=0.8,
        strict_threshold=0.6,
        index_min_records=3,
    )
    hits = engine.search("acct-1", QUERY, category=MemoryCategory.conversation)

    assert [hit.id for hit in hits] == ["chat"]


def test_threshold_for_switches_at_index_minimum(memory_store):
    engine = RetrievalEngine(memory_store, index_min_records=1000)
    assert engine.threshold_for(999) == engine.lenient_threshold
    assert engine.threshold_for(1000) == engine.strict_threshold


def test_pull_then_filter_considers_only_top_k(session_factory, memory_store):
    for index in range(4):
        _seed(memory_store, "acct-1", f"m{index}", [1.0, 0.0, 0.0], minutes=index)

    engine = RetrievalEngine(memory_store, policy=PULL_THEN_FILTER, top_k=2)
    hits = engine.search("acct-1", QUERY)

    assert [hit.id for hit in hits] == ["m3", "m2"]


def test_filter_in_query_applies_distance_and_limit(session_factory, memory_store):
    _seed(memory_store, "acct-1", "a", [1.0, 0.0, 0.0], minutes=1)
    _seed(memory_store, "acct-1", "b", [1.0, 0.2, 0.0], minutes=2)
    _seed(memory_store, "acct-1", "c", [1.0, 1.0, 0.0], minutes=3)
    _seed(memory_store, "acct-1", "d", [0.0, 1.0, 0.0], minutes=4)

    engine = RetrievalEngine(
        memory_store,
        policy=FILTER_IN_QUERY,
        query_max_distance=0.6,
        query_limit=2,
    )
    hits = engine.search("acct-1", QUERY)

    assert [hit.id for hit in hits] == ["a", "b"]


def test_category_filter(session_factory, memory_store):
    _seed(memory_store, "acct-1", "fact", [1.0, 0.0, 0.0])
    _seed(memory_store, "acct-1", "chat", [1.0, 0.0, 0.0], category=MemoryCategory.conversation)

    engine = RetrievalEngine(memory_store)
    hits = engine.search("acct-1", QUERY, category=MemoryCategory.conversation)

    assert [hit.id for hit in hits] == ["chat"]
    assert hits[0].category == MemoryCategory.conversation


def test_invalid_arguments_rejected(memory_store):
    engine = RetrievalEngine(memory_store)
    with pytest.raises(ValidationIssue):
        engine.search("acct-1", [])
    with pytest.raises(ValidationIssue):
        engine.search("acct-1", QUERY, limit=0)
    with pytest.raises(ValueError):
        engine.search("", QUERY)
    with pytest.raises(ValueError):
        RetrievalEngine(memory_store, policy="nearest_only")
