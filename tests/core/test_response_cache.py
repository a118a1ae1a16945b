"""
Tests for stateset.core.cache.

Covers:
- ResponseCache: get/set/has/delete/clear, TTL expiry, oldest-first eviction
- Stats, cache-aside helpers and the background sweep
- Path normalisation, key derivation and CacheKeyIndex invalidation, pruning and sweep listeners
"""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from stateset.core.cache import (
    CacheKeyIndex,
    ResponseCache,
    build_cache_key,
    normalize_path,
    paths_overlap,
)


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestResponseCache:
    """Test ResponseCache operations."""

    def test_basic_get_set(self):
        cache = ResponseCache(max_size=10, default_ttl=60)
        cache.set("orders:", {"data": [1, 2, 3]})
        assert cache.get("orders:") == {"data": [1, 2, 3]}

    def test_get_missing_key(self):
        cache = ResponseCache()
        assert cache.get("missing") is None
        assert cache.get("missing", "fallback") == "fallback"

    def test_falsy_values_are_cached(self):
        cache = ResponseCache()
        cache.set("empty", [])
        sentinel = object()
        assert cache.get("empty", sentinel) == []

    def test_ttl_expiry_removes_entry(self):
        clock = FakeClock()
        cache = ResponseCache(default_ttl=60, clock=clock)
        cache.set("k", "v", ttl=5)
        assert cache.get("k") == "v"

        clock.advance(5.1)

        assert cache.get("k") is None
        assert cache.size() == 0

    def test_entry_alive_at_exact_expiry(self):
        clock = FakeClock()
        cache = ResponseCache(clock=clock)
        cache.set("k", "v", ttl=5)
        clock.advance(5)
        assert cache.get("k") == "v"

    def test_default_ttl_used(self):
        clock = FakeClock()
        cache = ResponseCache(default_ttl=10, clock=clock)
        cache.set("k", "v")
        clock.advance(9)
        assert cache.has("k")
        clock.advance(2)
        assert not cache.has("k")
        assert "k" not in cache

    def test_hit_count_increments(self):
        cache = ResponseCache()
        cache.set("k", "v")
        cache.get("k")
        cache.get("k")
        assert cache._entries["k"].hit_count == 2

    def test_delete_and_clear(self):
        cache = ResponseCache()
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.delete("a") is True
        assert cache.delete("a") is False
        cache.clear()
        assert len(cache) == 0

    def test_evicts_oldest_by_creation_not_access(self):
        clock = FakeClock()
        cache = ResponseCache(max_size=2, clock=clock)
        cache.set("first", 1)
        clock.advance(1)
        cache.set("second", 2)
        clock.advance(1)
        cache.get("first")

        cache.set("third", 3)

        assert cache.get("first") is None
        assert cache.get("second") == 2
        assert cache.get("third") == 3
        assert cache.stats()["evictions"] == 1

    def test_overwrite_at_capacity_does_not_evict(self):
        cache = ResponseCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)
        assert cache.get("a") == 10
        assert cache.get("b") == 2

    def test_cleanup_removes_only_expired(self):
        clock = FakeClock()
        cache = ResponseCache(clock=clock)
        cache.set("short", 1, ttl=1)
        cache.set("long", 2, ttl=100)
        clock.advance(2)

        assert cache.cleanup() == 1
        assert cache.size() == 1
        assert cache.get("long") == 2

    def test_stats(self):
        clock = FakeClock()
        cache = ResponseCache(max_size=50, clock=clock)
        cache.set("a", 1)
        clock.advance(3)
        cache.set("b", 2)
        cache.get("a")
        cache.get("a")
        cache.get("missing")

        stats = cache.stats()
        assert stats["size"] == 2
        assert stats["max_size"] == 50
        assert stats["total_hits"] == 2
        assert stats["hit_rate"] == pytest.approx(0.5)
        assert stats["misses"] == 1
        assert stats["oldest_entry"] == 1_000.0
        assert stats["newest_entry"] == 1_003.0

    def test_stats_empty(self):
        stats = ResponseCache().stats()
        assert stats["hit_rate"] == 0.0
        assert stats["oldest_entry"] is None

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            ResponseCache(max_size=0)
        with pytest.raises(ValueError):
            ResponseCache(default_ttl=0)


class TestCacheAside:
    @pytest.mark.asyncio
    async def test_get_or_set_calls_factory_once(self):
        cache = ResponseCache(check_interval=3600)
        factory = AsyncMock(return_value={"id": 1})

        assert await cache.get_or_set("k", factory) == {"id": 1}
        assert await cache.get_or_set("k", factory) == {"id": 1}

        factory.assert_awaited_once()
        await cache.close()

    @pytest.mark.asyncio
    async def test_get_or_set_propagates_factory_error(self):
        cache = ResponseCache()
        with pytest.raises(RuntimeError):
            await cache.get_or_set("k", AsyncMock(side_effect=RuntimeError("boom")))
        assert not cache.has("k")

    @pytest.mark.asyncio
    async def test_wrap(self):
        cache = ResponseCache(check_interval=3600)
        fetch = AsyncMock(side_effect=lambda order_id: {"id": order_id})
        cached_fetch = cache.wrap(fetch, key_fn=lambda order_id: f"order:{order_id}")

        await cached_fetch(1)
        await cached_fetch(1)
        await cached_fetch(2)

        assert fetch.await_count == 2
        await cache.close()


class TestBackgroundSweep:
    @pytest.mark.asyncio
    async def test_sweep_removes_entries_never_read_again(self):
        cache = ResponseCache(default_ttl=0.05, check_interval=0.05)
        cache.set("k", "v")
        assert cache._sweeper is not None

        await asyncio.sleep(0.2)

        assert cache.size() == 0
        await cache.close()
        assert cache._sweeper is None

    def test_no_sweep_without_running_loop(self):
        cache = ResponseCache()
        cache.set("k", "v")
        assert cache._sweeper is None

    def test_sweep_notifies_listeners(self):
        clock = FakeClock()
        cache = ResponseCache(default_ttl=5, clock=clock)
        cache.set("k", "v")
        calls = []
        cache.add_sweep_listener(lambda: calls.append(cache.size()))

        clock.advance(6)

        assert cache.sweep() == 1
        assert calls == [0]

    def test_failing_listener_does_not_stop_sweep(self):
        cache = ResponseCache()
        calls = []

        def broken():
            raise RuntimeError("listener down")

        cache.add_sweep_listener(broken)
        cache.add_sweep_listener(lambda: calls.append("ran"))

        assert cache.sweep() == 0
        assert calls == ["ran"]


class TestPathHelpers:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("/orders", "orders"),
            ("orders/", "orders"),
            ("//orders/123//", "orders/123"),
            ("/orders?limit=10", "orders"),
            ("", ""),
            (None, ""),
        ],
    )
    def test_normalize_path(self, raw, expected):
        assert normalize_path(raw) == expected

    @pytest.mark.parametrize(
        "a, b, overlap",
        [
            ("orders", "orders", True),
            ("orders", "orders/123", True),
            ("orders/123", "orders", True),
            ("orders", "orders2", False),
            ("orders", "order-templates", False),
            ("", "orders", False),
        ],
    )
    def test_paths_overlap(self, a, b, overlap):
        assert paths_overlap(a, b) is overlap

    def test_build_cache_key_is_canonical(self):
        assert build_cache_key("/orders") == "/orders:"
        assert build_cache_key("/orders", {}) == "/orders:"
        assert build_cache_key("/orders", {"b": 2, "a": 1}) == build_cache_key(
            "/orders", {"a": 1, "b": 2}
        )
        assert build_cache_key("/orders", {"a": 1}) == '/orders:{"a":1}'


class TestCacheKeyIndex:
    def _populated(self):
        cache = ResponseCache()
        index = CacheKeyIndex()
        for path, key in [
            ("orders", "orders:"),
            ("orders", 'orders:{"limit":5}'),
            ("orders/123", "orders/123:"),
            ("order-templates", "order-templates:"),
            ("orders2", "orders2:"),
        ]:
            cache.set(key, path)
            index.add(path, key)
        return cache, index

    def test_invalidate_parent_removes_children(self):
        cache, index = self._populated()

        removed = index.invalidate("orders", cache)

        assert removed == 3
        assert cache.get("orders:") is None
        assert cache.get("orders/123:") is None
        assert cache.get("order-templates:") == "order-templates"
        assert cache.get("orders2:") == "orders2"

    def test_invalidate_child_removes_parent_listing(self):
        cache, index = self._populated()

        index.invalidate("orders/123", cache)

        assert cache.get("orders:") is None
        assert cache.get("orders/123:") is None
        assert cache.get("orders2:") == "orders2"

    def test_stale_keys_are_harmless(self):
        cache, index = self._populated()
        cache.clear()

        assert index.invalidate("orders", cache) == 0
        assert index.keys_for("orders") == set()

    def test_empty_path_ignored(self):
        cache, index = self._populated()
        index.add("", "x")
        assert index.invalidate("", cache) == 0
        assert len(index) == 4

    def test_invalidate_many(self):
        cache, index = self._populated()
        assert index.invalidate_many(["order-templates", "orders2"], cache) == 2

    def test_prune_drops_dead_keys_and_empty_paths(self):
        cache, index = self._populated()
        cache.delete("orders/123:")
        cache.delete('orders:{"limit":5}')

        dropped = index.prune(cache)

        assert dropped == 2
        assert len(index) == 3
        assert index.keys_for("orders") == {"orders:"}
        assert index.keys_for("orders/123") == set()

    def test_prune_bounds_index_to_cache(self):
        clock = FakeClock()
        cache = ResponseCache(max_size=2, clock=clock)
        index = CacheKeyIndex()
        for n in range(200):
            clock.advance(1)
            key = f"orders/{n}:"
            cache.set(key, n)
            index.add(f"orders/{n}", key)

        assert len(index) == 200
        assert index.prune(cache) == 198
        assert len(index) == 2

    def test_prune_empty_cache_clears_index(self):
        cache, index = self._populated()
        cache.clear()

        index.prune(cache)

        assert len(index) == 0


def test_real_clock_expiry():
    cache = ResponseCache(default_ttl=0.05)
    cache.set("k", "v")
    time.sleep(0.1)
    assert cache.get("k") is None
