"""
Payment Cache Tests
"""

from unittest.mock import MagicMock

from caching.simple_cache import SimpleCache, invalidate, read_through


class Ticker:
    def __init__(self):
        self.value = 0.0

    def __call__(self):
        return self.value


class TestSimpleCache:
    def test_entries_expire_after_ttl(self):
        ticker = Ticker()
        cache = SimpleCache(default_ttl=10, clock=ticker)
        cache.set("PAY_1", "completed")

        ticker.value = 9.9
        assert cache.get("PAY_1") == "completed"

        ticker.value = 10
        assert cache.get("PAY_1") is None
        assert cache.stats["evictions"] == 1

    def test_stats(self):
        cache = SimpleCache(default_ttl=10, clock=Ticker())
        cache.set("a", 1)
        cache.get("a")
        cache.get("b")

        stats = cache.get_stats()

        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate_percent"] == 50.0
        assert stats["cache_size"] == 1

    def test_cleanup_expired(self):
        ticker = Ticker()
        cache = SimpleCache(default_ttl=5, clock=ticker)
        cache.set("short", 1)
        cache.set("long", 2, ttl=60)
        ticker.value = 30

        assert cache.cleanup_expired() == 1
        assert cache.get("long") == 2


class TestReadThrough:
    def test_loads_once_then_serves_from_cache(self):
        cache = SimpleCache(default_ttl=60, clock=Ticker())
        loader = MagicMock(return_value="row")

        assert read_through(cache, "k", loader) == "row"
        assert read_through(cache, "k", loader) == "row"
        loader.assert_called_once()

    def test_should_cache_decides_what_is_stored(self):
        cache = SimpleCache(default_ttl=60, clock=Ticker())
        loader = MagicMock(return_value={"status": "pending"})

        read_through(cache, "k", loader, should_cache=lambda row: row["status"] == "completed")
        read_through(cache, "k", loader, should_cache=lambda row: row["status"] == "completed")

        assert loader.call_count == 2
        assert cache.get_stats()["cache_size"] == 0

    def test_cache_failures_fall_through_to_loader(self):
        broken = MagicMock()
        broken.get.side_effect = RuntimeError("cache down")
        broken.set.side_effect = RuntimeError("cache down")

        assert read_through(broken, "k", lambda: "fresh") == "fresh"

    def test_no_cache(self):
        assert read_through(None, "k", lambda: 42) == 42


class TestInvalidate:
    def test_removes_entry(self):
        cache = SimpleCache(default_ttl=60, clock=Ticker())
        cache.set("k", "v")

        invalidate(cache, "k")

        assert cache.get("k") is None

    def test_errors_are_swallowed(self):
        broken = MagicMock()
        broken.delete.side_effect = RuntimeError("cache down")

        invalidate(broken, "k")
        invalidate(None, "k")
