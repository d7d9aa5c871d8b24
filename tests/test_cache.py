"""
Cache manager tests: coalescing, stale-while-revalidate, error handling,
invalidation and statistics.
"""
import asyncio

import pytest

from app.cache import (
    CacheConfigurationError,
    CacheEntry,
    CacheManager,
    CacheSource,
    RequestCoalescer,
)
from app.tracking import ManualConnectivity


class Upstream:
    """Counts calls and returns a sequence of values (or raises)."""

    def __init__(self, *values):
        self.values = list(values)
        self.calls = 0
        self.gate = None

    async def __call__(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        value = self.values[min(self.calls, len(self.values)) - 1]
        if isinstance(value, Exception):
            raise value
        return value


# =============================================================================
# Entries
# =============================================================================

class TestCacheEntry:

    def test_rejects_expiry_before_fetch(self):
        with pytest.raises(ValueError):
            CacheEntry(key="k", value=1, fetched_at=10.0, expires_at=5.0)

    def test_freshness_boundaries(self):
        entry = CacheEntry(key="k", value=1, fetched_at=0.0, expires_at=1.0)
        assert not entry.needs_refresh(0.75, 0.75)
        assert entry.needs_refresh(0.76, 0.75)
        assert not entry.is_expired(1.0)
        assert entry.is_expired(1.01)


# =============================================================================
# Coalescing
# =============================================================================

class TestCoalescing:

    async def test_concurrent_gets_share_one_fetch(self, cache):
        """Five callers before the first fetch settles -> one upstream call."""
        fetch = Upstream("v1")
        fetch.gate = asyncio.Event()

        tasks = [asyncio.ensure_future(cache.get("k", fetch)) for _ in range(5)]
        await asyncio.sleep(0)
        fetch.gate.set()
        results = await asyncio.gather(*tasks)

        assert fetch.calls == 1
        assert [r.value for r in results] == ["v1"] * 5
        assert all(r.source == CacheSource.UPSTREAM for r in results)

    async def test_shared_failure_reaches_every_caller(self, cache):
        fetch = Upstream(RuntimeError("boom"))
        fetch.gate = asyncio.Event()

        tasks = [asyncio.ensure_future(cache.get("k", fetch)) for _ in range(3)]
        await asyncio.sleep(0)
        fetch.gate.set()
        results = await asyncio.gather(*tasks)

        assert fetch.calls == 1
        assert all(isinstance(r.error, RuntimeError) for r in results)
        assert all(r.value is None for r in results)

    async def test_cancelled_waiter_does_not_cancel_shared_fetch(self):
        coalescer = RequestCoalescer()
        gate = asyncio.Event()

        async def fetch():
            await gate.wait()
            return "done"

        first = asyncio.ensure_future(coalescer.get_or_fetch("k", fetch))
        second = asyncio.ensure_future(coalescer.get_or_fetch("k", fetch))
        await asyncio.sleep(0)
        first.cancel()
        await asyncio.sleep(0)
        gate.set()

        assert await second == "done"
        assert first.cancelled()
        assert coalescer.active_requests == 0

    async def test_timeout_raises_without_cancelling_fetch(self):
        coalescer = RequestCoalescer(timeout=0.01)
        gate = asyncio.Event()

        async def fetch():
            await gate.wait()
            return "late"

        with pytest.raises(TimeoutError):
            await coalescer.get_or_fetch("k", fetch)
        assert coalescer.is_in_flight("k")

        gate.set()
        await asyncio.sleep(0.01)
        assert not coalescer.is_in_flight("k")

    async def test_registration_released_after_settle(self):
        coalescer = RequestCoalescer()

        async def fetch():
            return 1

        assert await coalescer.get_or_fetch("k", fetch) == 1
        await asyncio.sleep(0)
        assert coalescer.get_stats() == {"active_requests": 0, "active_keys": []}


# =============================================================================
# Stale-while-revalidate
# =============================================================================

class TestStaleWhileRevalidate:

    async def test_fresh_hit_does_not_fetch(self, cache, clock):
        fetch = Upstream("v1", "v2")
        await cache.get("k", fetch)
        clock.advance(0.5)

        result = await cache.get("k", fetch)
        assert result.value == "v1"
        assert result.source == CacheSource.FRESH
        assert fetch.calls == 1

    async def test_aging_entry_served_then_refreshed_once(self, cache, clock):
        """Past 75% of the TTL: old value now, one background refresh."""
        first = Upstream("v1")
        await cache.get("k", first)
        clock.advance(0.8)

        refresh = Upstream("v2")
        a = await cache.get("k", refresh)
        b = await cache.get("k", refresh)

        for result in (a, b):
            assert result.value == "v1"
            assert result.source == CacheSource.STALE
            assert result.loading is False
            assert result.is_stale is False

        await cache.wait_idle()
        assert refresh.calls == 1

        fresh = await cache.get("k", refresh)
        assert fresh.value == "v2"
        assert fresh.source == CacheSource.FRESH

    async def test_expired_entry_blocks_on_fetch(self, cache, clock):
        await cache.get("k", Upstream("v1"))
        clock.advance(1.1)

        result = await cache.get("k", Upstream("v2"))
        assert result.value == "v2"
        assert result.source == CacheSource.UPSTREAM

    async def test_background_failure_keeps_value_and_flags_it(self, cache, clock):
        await cache.get("k", Upstream("v1"))
        clock.advance(0.8)

        failing = Upstream(RuntimeError("upstream down"))
        first = await cache.get("k", failing)
        assert first.is_stale is False
        await cache.wait_idle()

        result = await cache.get("k", failing)
        assert result.value == "v1"
        assert result.is_stale is True
        assert isinstance(result.error, RuntimeError)
        await cache.wait_idle()

    async def test_foreground_failure_returns_expired_value(self, cache, clock):
        await cache.get("k", Upstream("v1"))
        clock.advance(5)

        result = await cache.get("k", Upstream(RuntimeError("down")))
        assert result.value == "v1"
        assert result.is_stale is True
        assert result.source == CacheSource.STALE
        assert "down" in result.to_dict()["error"]

    async def test_failure_with_nothing_cached_returns_initial_value(self, cache):
        result = await cache.get("k", Upstream(RuntimeError("down")), initial_value=[])
        assert result.value == []
        assert result.source == CacheSource.INITIAL
        assert result.error is not None
        assert "k" not in cache

    async def test_successful_refresh_clears_error(self, cache, clock):
        await cache.get("k", Upstream("v1"))
        clock.advance(2)
        await cache.get("k", Upstream(RuntimeError("down")))

        result = await cache.get("k", Upstream("v2"))
        assert result.value == "v2"
        assert result.error is None
        assert result.is_stale is False

    async def test_scenario_stale_threshold_with_one_second_ttl(self, clock):
        """T=0 fetch, 0.8s stale read, 1.1s blocking fetch."""
        cache = CacheManager(clock=clock, default_ttl=1.0, stale_threshold=0.75)
        fetch = Upstream("a", "b", "c")

        assert (await cache.get("k", fetch)).value == "a"

        clock.advance(0.8)
        stale = await cache.get("k", fetch)
        assert stale.value == "a"
        await cache.wait_idle()
        assert fetch.calls == 2

        clock.advance(1.1)
        blocked = await cache.get("k", fetch)
        assert blocked.value == "c"
        assert blocked.source == CacheSource.UPSTREAM
        assert fetch.calls == 3

    async def test_scenario_new_fetcher_at_900ms(self, cache, clock):
        await cache.get("A", Upstream("v1"))
        clock.advance(0.9)

        fetch_a2 = Upstream("v2")
        immediate = await cache.get("A", fetch_a2)
        assert immediate.value == "v1"
        assert immediate.is_stale is False

        await cache.wait_idle()
        assert (await cache.get("A", fetch_a2)).value == "v2"


# =============================================================================
# Other reads
# =============================================================================

class TestReads:

    async def test_disabled_read_never_fetches(self, cache):
        fetch = Upstream("v1")
        result = await cache.get("k", fetch, enabled=False, initial_value="placeholder")
        assert result.value == "placeholder"
        assert result.source == CacheSource.INITIAL
        assert fetch.calls == 0

    async def test_peek_reports_loading_during_first_fetch(self, cache):
        fetch = Upstream("v1")
        fetch.gate = asyncio.Event()

        pending = asyncio.ensure_future(cache.get("k", fetch))
        await asyncio.sleep(0)
        assert cache.peek("k").loading is True

        fetch.gate.set()
        await pending
        peeked = cache.peek("k")
        assert peeked.loading is False
        assert peeked.value == "v1"

    async def test_refetch_forces_fetch(self, cache):
        fetch = Upstream("v1", "v2")
        await cache.get("k", fetch)

        result = await cache.refetch("k")
        assert result.value == "v2"
        assert fetch.calls == 2

    async def test_refetch_without_fetcher_raises(self, cache):
        with pytest.raises(CacheConfigurationError):
            await cache.refetch("unknown")

    async def test_per_call_ttl(self, cache, clock):
        await cache.get("k", Upstream("v1"), ttl=10)
        clock.advance(5)
        assert (await cache.get("k", Upstream("v2"))).value == "v1"

    async def test_negative_ttl_rejected(self, cache):
        with pytest.raises(ValueError):
            await cache.get("k", Upstream("v1"), ttl=-1)

    def test_invalid_threshold_rejected(self):
        with pytest.raises(ValueError):
            CacheManager(stale_threshold=0)
        with pytest.raises(ValueError):
            CacheManager(stale_threshold=1.5)


# =============================================================================
# Invalidation
# =============================================================================

class TestInvalidation:

    async def test_invalidate_refetches(self, cache):
        fetch = Upstream("v1", "v2")
        await cache.get("k", fetch)

        result = await cache.invalidate("k")
        assert result.value == "v2"
        assert result.source == CacheSource.UPSTREAM

    async def test_invalidate_discards_in_flight_refresh(self, cache, clock):
        """A refresh started before invalidation must not overwrite the new value."""
        await cache.get("k", Upstream("v1"))
        clock.advance(0.8)

        slow = Upstream("old")
        slow.gate = asyncio.Event()
        await cache.get("k", slow)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert slow.calls == 1

        result = await cache.invalidate("k", Upstream("new"))
        assert result.value == "new"

        slow.gate.set()
        await cache.wait_idle()
        assert cache.peek("k").value == "new"

    async def test_refresh_scheduled_before_prefix_invalidation_is_skipped(self, cache, clock):
        """The next read after invalidation fetches for itself and is stored."""
        fetch = Upstream(1, 2, 3)
        await cache.get("k", fetch)
        clock.advance(0.8)
        await cache.get("k", fetch)

        assert cache.invalidate_by_prefix("k") == 1
        await asyncio.sleep(0)

        result = await cache.get("k", fetch)
        assert result.value == 2
        assert result.source == CacheSource.UPSTREAM
        assert "k" in cache
        await cache.wait_idle()
        assert fetch.calls == 2
        assert cache.peek("k").value == 2

    async def test_invalidate_by_prefix(self, cache):
        async def value():
            return 1

        for key in ("tenant:1:screens:list", "tenant:1:media:list", "tenant:2:screens:list"):
            await cache.get(key, value)

        assert cache.invalidate_by_prefix("tenant:1:") == 2
        assert "tenant:2:screens:list" in cache
        assert len(cache) == 1

    async def test_invalidate_pattern_and_clear(self, cache):
        async def value():
            return 1

        await cache.get("tenant:1:screens:list", value)
        await cache.get("tenant:2:screens:list", value)
        await cache.get("tenant:2:media:list", value)

        assert cache.invalidate_pattern("screens") == 2
        assert cache.clear() == 1
        assert len(cache) == 0


# =============================================================================
# Prefetch, reconnect, stats
# =============================================================================

class TestMaintenance:

    async def test_prefetch_skips_unexpired_and_swallows_errors(self, cache):
        assert await cache.prefetch("k", Upstream("v1")) is True
        assert await cache.prefetch("k", Upstream("v2")) is False
        assert await cache.prefetch("other", Upstream(RuntimeError("down"))) is False
        assert cache.peek("k").value == "v1"

    async def test_reconnect_refreshes_aging_entries(self, cache, clock):
        connectivity = ManualConnectivity(online=False)
        cache.attach(connectivity)

        fetch = Upstream("v1", "v2")
        await cache.get("k", fetch)
        clock.advance(0.9)

        connectivity.go_online()
        await cache.wait_idle()
        assert fetch.calls == 2
        assert cache.peek("k").value == "v2"

        cache.detach()
        assert connectivity.subscriber_count == 0

    async def test_stats_classification(self, clock):
        cache = CacheManager(clock=clock, default_ttl=10)

        async def value():
            return 1

        await cache.get("expired", value, ttl=1)
        await cache.get("stale", value, ttl=4)
        await cache.get("valid", value, ttl=100)
        clock.advance(3.5)

        stats = cache.stats()
        assert (stats.total, stats.valid, stats.stale, stats.expired) == (3, 1, 1, 1)
        assert cache.get_stats()["entries"] == {
            "totalEntries": 3,
            "validEntries": 1,
            "staleEntries": 1,
            "expiredEntries": 1,
        }

    async def test_hit_counters(self, cache, clock):
        fetch = Upstream("v1")
        await cache.get("k", fetch)
        await cache.get("k", fetch)

        stats = cache.get_stats()
        assert stats["misses"] == 1
        assert stats["hits_fresh"] == 1
        assert stats["hit_rate_percent"] == 50.0
