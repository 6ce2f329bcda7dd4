import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from core.errors import UpstreamError
from core.services.embedding_cache import EmbeddingCache


class CountingCompute:
    def __init__(self):
        self.calls = []

    async def __call__(self, text):
        self.calls.append(text)
        return [float(len(text)), 1.0]


def test_get_or_compute_calls_provider_once_per_text():
    compute = CountingCompute()
    cache = EmbeddingCache(4, compute)

    async def scenario():
        first = await cache.get_or_compute("I am vegetarian")
        second = await cache.get_or_compute("I am vegetarian")
        return first, second

    first, second = asyncio.run(scenario())
    assert first == second
    assert compute.calls == ["I am vegetarian"]
    assert cache.stats() == {"size": 1, "capacity": 4, "hits": 1, "misses": 1}


def test_oldest_insertion_is_evicted_at_capacity():
    cache = EmbeddingCache(2, CountingCompute())
    cache.put("a", [1.0])
    cache.put("b", [2.0])
    # Reads do not refresh recency.
    assert cache.get("a") == [1.0]
    cache.put("c", [3.0])

    assert "a" not in cache
    assert cache.get("b") == [2.0]
    assert cache.get("c") == [3.0]
    assert len(cache) == 2


def test_overwriting_existing_key_keeps_size():
    cache = EmbeddingCache(2, CountingCompute())
    cache.put("a", [1.0])
    cache.put("b", [2.0])
    cache.put("a", [9.0])

    assert len(cache) == 2
    assert cache.get("a") == [9.0]
    cache.put("c", [3.0])
    assert "a" not in cache


def test_failed_compute_is_not_cached():
    attempts = []

    async def failing(text):
        attempts.append(text)
        raise UpstreamError("down", service="embedding")

    cache = EmbeddingCache(2, failing)
    with pytest.raises(UpstreamError):
        asyncio.run(cache.get_or_compute("hello there"))
    with pytest.raises(UpstreamError):
        asyncio.run(cache.get_or_compute("hello there"))
    assert len(attempts) == 2
    assert len(cache) == 0


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        EmbeddingCache(0, CountingCompute())


def test_clear_empties_cache():
    cache = EmbeddingCache(3, CountingCompute())
    cache.put("a", [1.0])
    cache.clear()
    assert cache.get("a") is None
    assert len(cache) == 0


def test_threaded_puts_never_exceed_capacity():
    cache = EmbeddingCache(16, CountingCompute())
    texts = [[f"thread-{worker}-text-{index}" for index in range(50)] for worker in range(8)]
    sizes = []
    done = threading.Event()

    def watch():
        while not done.is_set():
            sizes.append(len(cache))

    def fill(batch):
        for position, text in enumerate(batch):
            cache.put(text, [float(position)])

    watcher = threading.Thread(target=watch)
    watcher.start()
    try:
        with ThreadPoolExecutor(max_workers=8) as executor:
            list(executor.map(fill, texts))
    finally:
        done.set()
        watcher.join()

    inserted = [text for batch in texts for text in batch]
    assert max(sizes, default=0) <= 16
    assert len(cache) == 16
    assert sum(text in cache for text in inserted) == 16
    # Eviction is oldest-first, so what survives of one worker's batch is its tail.
    for batch in texts:
        held = [position for position, text in enumerate(batch) if text in cache]
        assert held == list(range(len(batch) - len(held), len(batch)))


def test_concurrent_misses_keep_most_recent_texts():
    async def compute(text):
        await asyncio.sleep(0)
        return [float(len(text))]

    cache = EmbeddingCache(5, compute)
    texts = [f"question number {index}" for index in range(20)]

    async def scenario():
        return await asyncio.gather(*(cache.get_or_compute(text) for text in texts))

    vectors = asyncio.run(scenario())

    assert vectors == [[float(len(text))] for text in texts]
    assert len(cache) == 5
    assert [text for text in texts if text in cache] == texts[-5:]
    assert cache.stats()["misses"] == 20
