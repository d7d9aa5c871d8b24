"""
Read-through cache with stale-while-revalidate and per-key fetch deduplication.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from .core import CacheEntry, CacheResult, CacheSource, CacheStats
from .coalescer import RequestCoalescer
from app.clock import Clock, SystemClock

logger = logging.getLogger("cache.manager")

FetchFn = Callable[[], Awaitable[Any]]

DEFAULT_TTL_SECONDS = 120.0
DEFAULT_STALE_THRESHOLD = 0.75


class CacheConfigurationError(Exception):
    """Raised when a key is refetched without any known fetch function."""
    pass


class CacheManager:
    """
    Main cache orchestration with:
    - Per-entry TTL and a stale threshold that triggers background refresh
    - Request coalescing so one fetch per key is in flight at a time
    - Stale data kept (and flagged) when a refresh fails
    - Hit/miss statistics

    Instances are independent; construct as many as needed.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        stale_threshold: float = DEFAULT_STALE_THRESHOLD,
        coalesce_timeout: Optional[float] = None,
    ):
        """
        Initialize the cache manager.

        Args:
            clock: Time source (defaults to the wall clock)
            default_ttl: TTL in seconds for calls that don't pass one
            stale_threshold: Fraction of TTL after which a read triggers
                             a background refresh
            coalesce_timeout: Optional timeout for waiting on a shared fetch
        """
        if default_ttl < 0:
            raise ValueError("default_ttl must be >= 0")
        if not 0 < stale_threshold <= 1:
            raise ValueError("stale_threshold must be in (0, 1]")

        self._clock = clock or SystemClock()
        self._default_ttl = default_ttl
        self._stale_threshold = stale_threshold

        self._cache: Dict[str, CacheEntry] = {}
        self._coalescer = RequestCoalescer(timeout=coalesce_timeout)

        # Last fetch function and TTL seen for each key (refetch/invalidate/reconnect)
        self._fetchers: Dict[str, Tuple[FetchFn, float]] = {}
        # Bumped on delete; fetches started under an older generation are not stored
        self._generations: Dict[str, int] = {}

        self._background: Set["asyncio.Task[None]"] = set()
        self._connectivity = None
        self._subscription = None

        # Stats tracking
        self._stats = {
            "hits_fresh": 0,
            "hits_stale": 0,
            "misses": 0,
            "revalidations": 0,
            "fetch_errors": 0,
        }

    @classmethod
    def from_settings(cls, settings=None, clock: Optional[Clock] = None) -> "CacheManager":
        """Build a manager from application settings."""
        if settings is None:
            from config.settings import settings
        return cls(
            clock=clock,
            default_ttl=settings.cache_default_ttl_seconds,
            stale_threshold=settings.cache_stale_threshold,
            coalesce_timeout=settings.cache_coalesce_timeout,
        )

    @property
    def stale_threshold(self) -> float:
        return self._stale_threshold

    # ========================================================================
    # Reads
    # ========================================================================

    async def get(
        self,
        cache_key: str,
        fetch_fn: FetchFn,
        ttl: Optional[float] = None,
        enabled: bool = True,
        initial_value: Any = None,
    ) -> CacheResult:
        """
        Get data from cache or fetch it.

        Args:
            cache_key: Unique cache key
            fetch_fn: No-argument coroutine function producing the value
            ttl: Seconds the fetched value stays unexpired
            enabled: False suppresses all fetching
            initial_value: Returned when nothing is cached

        Returns:
            CacheResult; fetch failures are reported on ``error``, never raised
        """
        ttl = self._resolve_ttl(ttl)

        if not enabled:
            return self.peek(cache_key, initial_value=initial_value)

        self._fetchers[cache_key] = (fetch_fn, ttl)
        now = self._clock.now()
        entry = self._cache.get(cache_key)

        # Cache miss or expired - must fetch
        if entry is None or entry.is_expired(now):
            if entry is None:
                logger.debug(f"CACHE MISS: {cache_key}")
            else:
                logger.debug(f"CACHE EXPIRED: {cache_key} [age={entry.age(now):.1f}s]")
            self._stats["misses"] += 1
            return await self._foreground_fetch(cache_key, fetch_fn, ttl, initial_value)

        # Aging - serve cached value, refresh in the background
        if entry.needs_refresh(now, self._stale_threshold):
            logger.debug(
                f"CACHE HIT (stale, revalidating): {cache_key} "
                f"[age={entry.age(now):.1f}s]"
            )
            self._stats["hits_stale"] += 1
            self._trigger_background_revalidate(cache_key, fetch_fn, ttl)
            return self._result_from_entry(entry, CacheSource.STALE)

        logger.debug(f"CACHE HIT (fresh): {cache_key} [age={entry.age(now):.1f}s]")
        self._stats["hits_fresh"] += 1
        return self._result_from_entry(entry, CacheSource.FRESH)

    def peek(self, cache_key: str, initial_value: Any = None) -> CacheResult:
        """
        Snapshot of what the cache holds for a key, without fetching.

        ``loading`` is True while a foreground fetch for the key is pending.
        """
        now = self._clock.now()
        entry = self._cache.get(cache_key)
        in_flight = self._coalescer.is_in_flight(cache_key)

        if entry is None:
            return CacheResult(
                value=initial_value,
                loading=in_flight,
                source=CacheSource.INITIAL,
            )

        source = CacheSource.FRESH
        if entry.is_expired(now) or entry.needs_refresh(now, self._stale_threshold):
            source = CacheSource.STALE
        result = self._result_from_entry(entry, source)
        result.loading = in_flight and entry.is_expired(now)
        return result

    async def refetch(
        self,
        cache_key: str,
        fetch_fn: Optional[FetchFn] = None,
        ttl: Optional[float] = None,
    ) -> CacheResult:
        """
        Force a foreground fetch regardless of freshness.

        Uses the fetch function last seen for the key when none is given.

        Raises:
            CacheConfigurationError: No fetch function known for the key
        """
        fetch_fn, ttl = self._resolve_fetcher(cache_key, fetch_fn, ttl)
        logger.info(f"FORCE REFRESH: {cache_key}")
        return await self._foreground_fetch(cache_key, fetch_fn, ttl, None)

    async def prefetch(
        self,
        cache_key: str,
        fetch_fn: FetchFn,
        ttl: Optional[float] = None,
    ) -> bool:
        """
        Warm the cache for a key if it is absent or expired.

        Best-effort: fetch errors are logged and swallowed.

        Returns:
            True if a value was fetched and stored
        """
        ttl = self._resolve_ttl(ttl)
        self._fetchers[cache_key] = (fetch_fn, ttl)

        entry = self._cache.get(cache_key)
        if entry is not None and not entry.is_expired(self._clock.now()):
            return False

        generation = self._generations.get(cache_key, 0)
        try:
            await self._coalescer.get_or_fetch(
                cache_key,
                lambda: self._fetch_and_store(cache_key, fetch_fn, ttl, generation),
            )
        except Exception as e:
            logger.warning(f"Prefetch failed for {cache_key}: {e}")
            return False
        return self._generations.get(cache_key, 0) == generation

    # ========================================================================
    # Fetching
    # ========================================================================

    async def _foreground_fetch(
        self,
        cache_key: str,
        fetch_fn: FetchFn,
        ttl: float,
        initial_value: Any,
    ) -> CacheResult:
        """Fetch through the coalescer and shape the outcome for the caller."""
        generation = self._generations.get(cache_key, 0)
        try:
            value = await self._coalescer.get_or_fetch(
                cache_key,
                lambda: self._fetch_and_store(cache_key, fetch_fn, ttl, generation),
            )
        except Exception as e:
            entry = self._cache.get(cache_key)
            if entry is not None:
                logger.info(f"Serving stale data for {cache_key} after fetch error: {e}")
                return CacheResult(
                    value=entry.value,
                    error=e,
                    is_stale=True,
                    source=CacheSource.STALE,
                    fetched_at=entry.fetched_at,
                )
            return CacheResult(
                value=initial_value,
                error=e,
                is_stale=True,
                source=CacheSource.INITIAL,
            )

        entry = self._cache.get(cache_key)
        fetched_at = entry.fetched_at if entry is not None else self._clock.now()
        return CacheResult(value=value, source=CacheSource.UPSTREAM, fetched_at=fetched_at)

    async def _fetch_and_store(
        self,
        cache_key: str,
        fetch_fn: FetchFn,
        ttl: float,
        generation: int,
    ) -> Any:
        """
        Run one fetch and store its result.

        This is the body of the shared, coalesced task: it runs once per
        in-flight fetch no matter how many callers are waiting on it.
        """
        try:
            value = await fetch_fn()
        except Exception as e:
            self._stats["fetch_errors"] += 1
            entry = self._current_entry(cache_key, generation)
            if entry is not None:
                entry.last_error = e
            raise
        finally:
            entry = self._current_entry(cache_key, generation)
            if entry is not None:
                entry.refreshing = False

        if self._generations.get(cache_key, 0) != generation:
            logger.debug(f"Discarding superseded fetch result: {cache_key}")
            return value

        self._store(cache_key, value, ttl)
        return value

    def _current_entry(self, cache_key: str, generation: int) -> Optional[CacheEntry]:
        if self._generations.get(cache_key, 0) != generation:
            return None
        return self._cache.get(cache_key)

    def _store(self, cache_key: str, value: Any, ttl: float) -> None:
        """Store data in cache."""
        now = self._clock.now()
        self._cache[cache_key] = CacheEntry(
            key=cache_key,
            value=value,
            fetched_at=now,
            expires_at=now + ttl,
        )

    def _trigger_background_revalidate(
        self,
        cache_key: str,
        fetch_fn: FetchFn,
        ttl: float,
    ) -> bool:
        """Trigger background refresh without blocking."""
        entry = self._cache.get(cache_key)
        if entry is None:
            return False
        if entry.refreshing or self._coalescer.is_in_flight(cache_key):
            logger.debug(f"Already revalidating: {cache_key}")
            return False

        # Claim before yielding to the loop
        entry.refreshing = True
        generation = self._generations.get(cache_key, 0)

        async def do_revalidate():
            if self._generations.get(cache_key, 0) != generation:
                logger.debug(f"Skipping revalidation of invalidated key: {cache_key}")
                return
            try:
                logger.debug(f"Background revalidation started: {cache_key}")
                await self._coalescer.get_or_fetch(
                    cache_key,
                    lambda: self._fetch_and_store(cache_key, fetch_fn, ttl, generation),
                )
                self._stats["revalidations"] += 1
                logger.debug(f"Background revalidation complete: {cache_key}")
            except Exception as e:
                logger.warning(f"Background revalidation failed: {cache_key} - {e}")
            finally:
                current = self._current_entry(cache_key, generation)
                if current is not None:
                    current.refreshing = False

        task = asyncio.ensure_future(do_revalidate())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return True

    def refresh_stale(self) -> int:
        """
        Start a background refresh for every aging or expired entry
        whose fetch function is known.

        Returns:
            Number of refreshes started
        """
        now = self._clock.now()
        started = 0
        for cache_key, entry in list(self._cache.items()):
            if cache_key not in self._fetchers:
                continue
            if not (entry.is_expired(now) or entry.needs_refresh(now, self._stale_threshold)):
                continue
            fetch_fn, ttl = self._fetchers[cache_key]
            if self._trigger_background_revalidate(cache_key, fetch_fn, ttl):
                started += 1
        if started:
            logger.info(f"Refreshing {started} aging cache entries")
        return started

    async def wait_idle(self) -> None:
        """Wait for all background refreshes to settle."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ========================================================================
    # Reconnect refresh
    # ========================================================================

    def attach(self, connectivity) -> None:
        """Refresh aging entries whenever the connectivity source comes back online."""
        self.detach()
        self._connectivity = connectivity
        self._subscription = connectivity.subscribe(on_online=self._handle_online)

    def detach(self) -> None:
        if self._connectivity is not None and self._subscription is not None:
            self._connectivity.unsubscribe(self._subscription)
        self._connectivity = None
        self._subscription = None

    def _handle_online(self) -> None:
        logger.info("Connection restored, refreshing cache")
        self.refresh_stale()

    # ========================================================================
    # Invalidation
    # ========================================================================

    async def invalidate(
        self,
        cache_key: str,
        fetch_fn: Optional[FetchFn] = None,
        ttl: Optional[float] = None,
    ) -> CacheResult:
        """
        Delete an entry, then refetch it in the foreground.

        A fetch for the key that was already in flight keeps running but
        its result is not stored.
        """
        fetch_fn, ttl = self._resolve_fetcher(cache_key, fetch_fn, ttl)
        self._drop(cache_key)
        logger.info(f"Invalidated cache: {cache_key}")
        return await self._foreground_fetch(cache_key, fetch_fn, ttl, None)

    def invalidate_by_prefix(self, prefix: str) -> int:
        """
        Delete all entries whose key starts with ``prefix``.

        Returns:
            Number of entries invalidated
        """
        return self._drop_matching(lambda key: key.startswith(prefix), f"prefix '{prefix}'")

    def invalidate_pattern(self, pattern: str) -> int:
        """
        Delete all entries whose key contains ``pattern``.

        Returns:
            Number of entries invalidated
        """
        return self._drop_matching(lambda key: pattern in key, f"'{pattern}'")

    def clear(self) -> int:
        """
        Clear all cache entries.

        Returns:
            Number of entries cleared
        """
        count = len(self._cache)
        self._drop_matching(lambda key: True, "clear")
        logger.info(f"Cleared {count} cache entries")
        return count

    def _drop(self, cache_key: str) -> bool:
        self._generations[cache_key] = self._generations.get(cache_key, 0) + 1
        self._coalescer.forget(cache_key)
        return self._cache.pop(cache_key, None) is not None

    def _drop_matching(self, predicate: Callable[[str], bool], label: str) -> int:
        keys = set(self._cache) | set(self._coalescer.in_flight_keys())
        removed = 0
        for cache_key in keys:
            if predicate(cache_key) and self._drop(cache_key):
                removed += 1
        if removed:
            logger.info(f"Invalidated {removed} entries matching {label}")
        return removed

    # ========================================================================
    # Helpers
    # ========================================================================

    def _resolve_ttl(self, ttl: Optional[float]) -> float:
        if ttl is None:
            return self._default_ttl
        if ttl < 0:
            raise ValueError("ttl must be >= 0")
        return ttl

    def _resolve_fetcher(
        self,
        cache_key: str,
        fetch_fn: Optional[FetchFn],
        ttl: Optional[float],
    ) -> Tuple[FetchFn, float]:
        known = self._fetchers.get(cache_key)
        if fetch_fn is None:
            if known is None:
                raise CacheConfigurationError(
                    f"No fetch function registered for cache key {cache_key!r}"
                )
            fetch_fn = known[0]
        if ttl is None and known is not None:
            ttl = known[1]
        ttl = self._resolve_ttl(ttl)
        self._fetchers[cache_key] = (fetch_fn, ttl)
        return fetch_fn, ttl

    def _result_from_entry(self, entry: CacheEntry, source: CacheSource) -> CacheResult:
        return CacheResult(
            value=entry.value,
            error=entry.last_error,
            is_stale=entry.last_error is not None,
            source=source,
            fetched_at=entry.fetched_at,
        )

    def __contains__(self, cache_key: str) -> bool:
        return cache_key in self._cache

    def __len__(self) -> int:
        return len(self._cache)

    # ========================================================================
    # Stats
    # ========================================================================

    def stats(self) -> CacheStats:
        """Classify every entry against the current clock."""
        now = self._clock.now()
        result = CacheStats(total=len(self._cache))
        for entry in self._cache.values():
            if entry.is_expired(now):
                result.expired += 1
            elif entry.needs_refresh(now, self._stale_threshold):
                result.stale += 1
            else:
                result.valid += 1
        return result

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        total_hits = self._stats["hits_fresh"] + self._stats["hits_stale"]
        total_requests = total_hits + self._stats["misses"]
        hit_rate = (total_hits / total_requests * 100) if total_requests > 0 else 0

        return {
            "entries": self.stats().to_dict(),
            "hits_fresh": self._stats["hits_fresh"],
            "hits_stale": self._stats["hits_stale"],
            "misses": self._stats["misses"],
            "revalidations": self._stats["revalidations"],
            "fetch_errors": self._stats["fetch_errors"],
            "hit_rate_percent": round(hit_rate, 1),
            "coalescer": self._coalescer.get_stats(),
            "revalidating_count": sum(1 for e in self._cache.values() if e.refreshing),
        }
