"""
Cache warm-up helpers.

Prefetching is best-effort: failures are logged by the cache and never
reach the caller.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .manager import CacheManager, FetchFn
from .ttl_policies import get_ttl_for_key

logger = logging.getLogger("cache.prefetch")


@dataclass
class PrefetchJob:
    """A key to keep warm and how to load it."""
    key: str
    fetch_fn: FetchFn
    ttl: Optional[float] = None

    def resolved_ttl(self) -> float:
        if self.ttl is not None:
            return self.ttl
        return get_ttl_for_key(self.key)


async def prefetch_all(cache: CacheManager, jobs: Iterable[PrefetchJob]) -> int:
    """
    Warm several keys concurrently.

    Returns:
        Number of keys that were fetched and stored
    """
    jobs = list(jobs)
    if not jobs:
        return 0
    results = await asyncio.gather(
        *(cache.prefetch(job.key, job.fetch_fn, job.resolved_ttl()) for job in jobs)
    )
    stored = sum(1 for ok in results if ok)
    logger.debug(f"Prefetched {stored}/{len(jobs)} keys")
    return stored


class PrefetchScheduler:
    """
    Keeps a fixed set of keys warm by prefetching them on an interval.

    Usage:
        scheduler = PrefetchScheduler(cache, jobs, interval=300)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        cache: CacheManager,
        jobs: Iterable[PrefetchJob],
        interval: float = 300.0,
    ):
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.cache = cache
        self.jobs: List[PrefetchJob] = list(jobs)
        self.interval = interval
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def add_job(self, job: PrefetchJob) -> None:
        self.jobs.append(job)

    async def run_once(self) -> int:
        """Prefetch every job once."""
        return await prefetch_all(self.cache, self.jobs)

    def start(self) -> None:
        """Start the periodic warm-up (first pass runs immediately)."""
        if self.running:
            return
        self._task = asyncio.ensure_future(self._loop())
        logger.info(f"PrefetchScheduler started ({len(self.jobs)} jobs, interval={self.interval}s)")

    async def stop(self) -> None:
        """Stop the periodic warm-up."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("PrefetchScheduler stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Prefetch pass failed: {e}")
            await asyncio.sleep(self.interval)
