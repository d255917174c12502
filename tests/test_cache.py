"""Tests for the response cache."""
from cache import ResponseCache, cache_key


class TestCacheKey:
    def test_query_order_does_not_matter(self):
        assert cache_key("/api/search", {"q": "a", "page": "2"}) == cache_key("/api/search", {"page": "2", "q": "a"})
        assert cache_key("/api/queue", {}) == "/api/queue"


class TestResponseCache:
    def test_entries_expire(self):
        now = [0.0]
        cache = ResponseCache(clock=lambda: now[0])
        cache.set("k", {"v": 1}, ttl=30)

        assert cache.get("k") == {"v": 1}
        now[0] = 30
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_size_is_bounded(self):
        now = [0.0]
        cache = ResponseCache(clock=lambda: now[0], max_entries=2)
        cache.set("a", 1, ttl=10)
        cache.set("b", 2, ttl=20)
        cache.set("c", 3, ttl=30)

        assert len(cache) == 2
        assert cache.get("a") is None
        assert cache.get("c") == 3
