"""
test_cache.py
-------------
AgentForge — Claims Automation Engine — Tests for the AI result cache
---------------------------------------------------------------------
Read-through behaviour, TTL expiry, invalidation, tenant settings,
counters, and the degrade-to-pass-through policy when the store is missing
or failing.

Run: pytest tests/test_cache.py -v --tb=short

Project: AgentForge — Claims Automation Engine
"""

import asyncio

import pytest

from ai_control.cache import AICache
from ai_control.keys import build_key
from claims_guidelines import CACHE_DEFAULT_TTL_SECONDS, CACHE_MAX_TTL_SECONDS
from tests.fakes import FailingKVStore, FakeKVStore, InMemoryStore


def _counting_fn(value):
    calls = {"n": 0}

    async def fn():
        calls["n"] += 1
        return value

    return fn, calls


class TestWithCache:
    def test_miss_then_hit(self):
        """First call computes and stores; second call is served from the store."""
        cache = AICache(FakeKVStore())
        fn, calls = _counting_fn({"summary": "ok"})

        async def scenario():
            first = await cache.with_cache("route", {"x": 1}, fn)
            second = await cache.with_cache("route", {"x": 1}, fn)
            return first, second

        first, second = asyncio.run(scenario())
        assert first.cached is False
        assert second.cached is True
        assert second.data == {"summary": "ok"}
        assert first.key == second.key == build_key("route", {"x": 1})
        assert calls["n"] == 1

    def test_entry_expires_after_ttl(self):
        """An entry written with ttl 10s is gone once the clock passes 10s."""
        store = FakeKVStore()
        cache = AICache(store)
        fn, calls = _counting_fn({"v": 1})

        async def scenario():
            await cache.with_cache("route", {"x": 1}, fn, ttl_seconds=10)
            store.advance(9)
            mid = await cache.with_cache("route", {"x": 1}, fn, ttl_seconds=10)
            store.advance(2)
            late = await cache.with_cache("route", {"x": 1}, fn, ttl_seconds=10)
            return mid, late

        mid, late = asyncio.run(scenario())
        assert mid.cached is True
        assert late.cached is False
        assert calls["n"] == 2

    def test_invalidate_forces_recompute(self):
        """After invalidate(key) the next call recomputes."""
        cache = AICache(FakeKVStore())
        fn, calls = _counting_fn({"v": 1})

        async def scenario():
            first = await cache.with_cache("route", {"x": 1}, fn)
            removed = await cache.invalidate(first.key)
            again = await cache.with_cache("route", {"x": 1}, fn)
            return removed, again

        removed, again = asyncio.run(scenario())
        assert removed is True
        assert again.cached is False
        assert calls["n"] == 2

    def test_invalidate_by_prefix_only_touches_one_route(self):
        """Route invalidation leaves other routes' entries alone."""
        cache = AICache(FakeKVStore())

        async def scenario():
            await cache.set(build_key("route-a", 1), {"v": 1})
            await cache.set(build_key("route-a", 2), {"v": 2})
            await cache.set(build_key("route-b", 1), {"v": 3})
            removed = await cache.invalidate_by_prefix("route-a")
            return removed, await cache.exists(build_key("route-a", 1)), await cache.exists(build_key("route-b", 1))

        removed, a_exists, b_exists = asyncio.run(scenario())
        assert removed == 2
        assert a_exists is False
        assert b_exists is True

    def test_failure_leaves_no_entry(self):
        """A raising fn propagates and nothing is cached."""
        store = FakeKVStore()
        cache = AICache(store)

        async def boom():
            raise RuntimeError("model down")

        with pytest.raises(RuntimeError):
            asyncio.run(cache.with_cache("route", {"x": 1}, boom))
        assert asyncio.run(cache.exists(build_key("route", {"x": 1}))) is False


class TestDegradedCache:
    def test_no_store_is_pass_through(self):
        """Without a store every call computes and reports cached=False."""
        cache = AICache(None)
        fn, calls = _counting_fn({"v": 1})

        async def scenario():
            return [await cache.with_cache("route", {"x": 1}, fn) for _ in range(2)]

        results = asyncio.run(scenario())
        assert [r.cached for r in results] == [False, False]
        assert results[0].data == {"v": 1}
        assert calls["n"] == 2
        assert cache.available is False

    def test_failing_store_is_pass_through(self):
        """A store that raises on every call never fails the wrapped call."""
        cache = AICache(FailingKVStore())
        fn, calls = _counting_fn({"v": 1})

        result = asyncio.run(cache.with_cache("route", {"x": 1}, fn))
        assert result.cached is False
        assert result.data == {"v": 1}
        assert asyncio.run(cache.invalidate_by_prefix("route")) == 0
        assert asyncio.run(cache.store_stats())["hits"] == 0

    def test_no_store_primitives_are_noops(self):
        """get/set/exists/invalidate all report nothing happened."""
        cache = AICache(None)

        async def scenario():
            return (
                await cache.set("k", {"v": 1}),
                await cache.get("k"),
                await cache.exists("k"),
                await cache.invalidate("k"),
            )

        assert asyncio.run(scenario()) == (False, None, False, False)


class TestTtlAndSettings:
    def test_default_and_image_ttl(self):
        """Plain entries use the default TTL, image-keyed entries the 30-day max."""
        cache = AICache(None)
        assert cache.resolve_ttl() == CACHE_DEFAULT_TTL_SECONDS
        assert cache.resolve_ttl(image_keyed=True) == CACHE_MAX_TTL_SECONDS

    def test_ttl_is_clamped(self):
        """TTLs are clamped to [1s, 30 days]."""
        cache = AICache(None)
        assert cache.resolve_ttl(0) == 1
        assert cache.resolve_ttl(CACHE_MAX_TTL_SECONDS * 2) == CACHE_MAX_TTL_SECONDS

    def test_image_keyed_entry_written_with_max_ttl(self):
        """with_cache(image_keyed=True) writes the 30-day expiry."""
        store = FakeKVStore()
        cache = AICache(store)
        fn, _ = _counting_fn({"v": 1})
        asyncio.run(cache.with_cache("vision", {"img": "u1"}, fn, image_keyed=True))
        assert store.set_calls[0]["ex"] == CACHE_MAX_TTL_SECONDS

    def test_tenant_ttl_applies(self):
        """A tenant's ttl_seconds is used when the caller gives none."""
        store = FakeKVStore()
        settings = InMemoryStore()
        settings.cache_settings["org_1"] = {"enabled": True, "ttl_seconds": 60}
        cache = AICache(store, settings_reader=settings)
        fn, _ = _counting_fn({"v": 1})
        asyncio.run(cache.with_cache("route", {"x": 1}, fn, org_id="org_1"))
        assert store.set_calls[0]["ex"] == 60

    def test_disabled_tenant_bypasses_cache(self):
        """A tenant with caching disabled never reads or writes the store."""
        store = FakeKVStore()
        settings = InMemoryStore()
        settings.cache_settings["org_1"] = {"enabled": False}
        cache = AICache(store, settings_reader=settings)
        fn, calls = _counting_fn({"v": 1})

        async def scenario():
            await cache.with_cache("route", {"x": 1}, fn, org_id="org_1")
            return await cache.with_cache("route", {"x": 1}, fn, org_id="org_1")

        second = asyncio.run(scenario())
        assert second.cached is False
        assert calls["n"] == 2
        assert store.set_calls == []


class TestCounters:
    def test_hits_and_sets_counted(self):
        """One miss and two hits: sets=1, hits=2, hit_rate=2/3."""
        store = FakeKVStore()
        cache = AICache(store)
        fn, _ = _counting_fn({"v": 1})

        async def scenario():
            for _ in range(3):
                await cache.with_cache("route", {"x": 1}, fn)
            return await cache.store_stats()

        mirrored = asyncio.run(scenario())
        local = cache.stats()
        assert local["hits"] == 2
        assert local["sets"] == 1
        assert local["hit_rate"] == pytest.approx(0.6667, abs=1e-4)
        assert mirrored["hits"] == 2
        assert mirrored["sets"] == 1

    def test_stats_route_invalidation_keeps_counters(self):
        """Invalidating a route named "stats" removes its entries but not the mirrored counters."""
        store = FakeKVStore()
        cache = AICache(store)
        fn, _ = _counting_fn({"v": 1})

        async def scenario():
            await cache.with_cache("stats", {"x": 1}, fn)
            await cache.with_cache("stats", {"x": 1}, fn)
            removed = await cache.invalidate_by_prefix("stats")
            return removed, await cache.store_stats()

        removed, mirrored = asyncio.run(scenario())
        assert removed == 1
        assert mirrored["hits"] == 1
        assert mirrored["sets"] == 1

    def test_reset_stats(self):
        """reset_stats() zeroes the in-process counters."""
        cache = AICache(FakeKVStore())
        fn, _ = _counting_fn({"v": 1})
        asyncio.run(cache.with_cache("route", {"x": 1}, fn))
        cache.reset_stats()
        assert cache.stats()["sets"] == 0
        assert cache.stats()["hit_rate"] == 0.0
