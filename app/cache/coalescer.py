"""
Request coalescing to prevent duplicate upstream fetches.

When multiple concurrent callers ask for the same key, only one
fetch is made and all callers share the result.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger("cache.coalescer")


@dataclass
class InFlightRequest:
    """Tracks an in-progress fetch."""
    task: "asyncio.Future[Any]"
    started_at: float
    waiter_count: int = 1


class RequestCoalescer:
    """
    Ensures concurrent requests for the same key share one fetch.

    Pattern:
    - First request for a key schedules the fetch as a task and registers
      it before yielding to the event loop, so there is no check-then-act gap
    - Subsequent requests for the same key await that task
    - When the fetch completes, all waiters receive the same result or error
    - A waiter that is cancelled (or times out) never cancels the shared fetch

    Usage:
        coalescer = RequestCoalescer()
        result = await coalescer.get_or_fetch(
            cache_key="tenant:42:screens:list",
            fetch_fn=load_screens,
        )
    """

    def __init__(self, timeout: Optional[float] = None):
        """
        Initialize the coalescer.

        Args:
            timeout: Max seconds a caller waits on a shared fetch
                     (None waits for as long as the fetch takes)
        """
        self._in_flight: Dict[str, InFlightRequest] = {}
        self._timeout = timeout

    async def get_or_fetch(
        self,
        cache_key: str,
        fetch_fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Either join an existing in-flight fetch or initiate a new one.

        Args:
            cache_key: Unique key for this request
            fetch_fn: No-argument coroutine function to call if we need to fetch

        Returns:
            The fetched data (shared among all concurrent callers)

        Raises:
            TimeoutError: If waiting for the shared fetch times out
            Exception: Any error from fetch_fn is propagated
        """
        in_flight = self._in_flight.get(cache_key)
        if in_flight is not None:
            in_flight.waiter_count += 1
            logger.debug(
                f"Coalescing request for {cache_key} "
                f"(waiters: {in_flight.waiter_count})"
            )
        else:
            loop = asyncio.get_running_loop()
            task = asyncio.ensure_future(fetch_fn())
            in_flight = InFlightRequest(task=task, started_at=loop.time())
            self._in_flight[cache_key] = in_flight
            task.add_done_callback(
                lambda done, key=cache_key: self._release(key, done)
            )
            logger.debug(f"Initiating fetch for {cache_key}")

        shared = asyncio.shield(in_flight.task)
        if self._timeout is None:
            return await shared

        try:
            return await asyncio.wait_for(shared, timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.error(f"Timeout waiting for coalesced request: {cache_key}")
            raise TimeoutError(
                f"Request for {cache_key} timed out after {self._timeout}s"
            ) from None

    def _release(self, cache_key: str, task: "asyncio.Future[Any]") -> None:
        """Drop the registration once the fetch settles."""
        current = self._in_flight.get(cache_key)
        if current is not None and current.task is task:
            del self._in_flight[cache_key]
        # Mark the exception retrieved even if every waiter went away
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Fetch failed for {cache_key}: {task.exception()}")

    def in_flight_keys(self) -> List[str]:
        """Keys with a fetch currently registered."""
        return list(self._in_flight.keys())

    def is_in_flight(self, cache_key: str) -> bool:
        return cache_key in self._in_flight

    def forget(self, cache_key: str) -> bool:
        """
        Detach an in-flight fetch so the next caller starts a new one.

        The detached fetch still runs to completion for whoever awaits it.
        """
        return self._in_flight.pop(cache_key, None) is not None

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight fetches."""
        return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        return {
            "active_requests": len(self._in_flight),
            "active_keys": self.in_flight_keys(),
        }
