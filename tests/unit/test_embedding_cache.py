import threading

import pytest

from ctx_engine.infrastructure.embeddings.cache import EmbeddingCache


def test_get_returns_stored_vector():
    cache = EmbeddingCache(max_size=10)
    cache.put("hello", "document", [1.0, 0.0])

    assert cache.get("hello", "document") == [1.0, 0.0]
    assert cache.get("  hello  ", "document") == [1.0, 0.0]


def test_mode_is_part_of_the_key():
    cache = EmbeddingCache()
    cache.put("hello", "document", [1.0])

    assert cache.get("hello", "query") is None


def test_fifo_eviction():
    cache = EmbeddingCache(max_size=2)
    cache.put("a", "document", [1.0])
    cache.put("b", "document", [2.0])
    cache.get("a", "document")
    cache.put("c", "document", [3.0])

    assert cache.get("a", "document") is None
    assert cache.get("b", "document") == [2.0]
    assert cache.get("c", "document") == [3.0]
    assert len(cache) == 2


def test_stats_and_clear():
    cache = EmbeddingCache(max_size=5)
    cache.put("a", "document", [1.0])
    cache.get("a", "document")
    cache.get("missing", "document")

    stats = cache.stats()
    assert (stats.size, stats.max_size, stats.hits, stats.misses) == (1, 5, 1, 1)

    cache.clear()
    assert cache.stats().size == 0
    assert cache.stats().hits == 0


def test_invalid_size():
    with pytest.raises(ValueError):
        EmbeddingCache(max_size=0)


def test_concurrent_puts_respect_bound():
    cache = EmbeddingCache(max_size=50)

    def fill(offset):
        for i in range(200):
            cache.put(f"{offset}-{i}", "document", [float(i)])

    threads = [threading.Thread(target=fill, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(cache) == 50
