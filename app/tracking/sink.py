"""
Delivery targets for event batches.

A sink either confirms a batch (returns how many events it accepted) or
fails (raises). Sinks that can send without waiting for confirmation
implement ``send_beacon`` for teardown-time flushes.
"""
import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import requests

from .events import QueuedEvent

logger = logging.getLogger("tracking.sink")


class DeliveryError(Exception):
    """Raised when a sink rejects or cannot deliver a batch."""
    pass


class EventSink(ABC):
    """Remote destination for event batches."""

    @abstractmethod
    async def deliver(self, batch: Sequence[QueuedEvent]) -> int:
        """
        Deliver an ordered batch.

        Returns:
            Number of events accepted

        Raises:
            DeliveryError (or any exception) if the batch was not delivered
        """
        pass

    def send_beacon(self, batch: Sequence[QueuedEvent]) -> bool:
        """
        Hand a batch off without waiting for confirmation.

        Returns:
            True if the batch was dispatched, False if this sink has no
            fire-and-forget mode
        """
        return False


class CallableSink(EventSink):
    """
    Sink backed by plain callables.

    Usage:
        async def deliver(batch):
            await rpc("insert_playback_events", [e.to_dict() for e in batch])
            return len(batch)

        sink = CallableSink(deliver)
    """

    def __init__(
        self,
        deliver_fn: Callable[[List[QueuedEvent]], Awaitable[Any]],
        beacon_fn: Optional[Callable[[List[QueuedEvent]], Any]] = None,
    ):
        self._deliver_fn = deliver_fn
        self._beacon_fn = beacon_fn

    async def deliver(self, batch: Sequence[QueuedEvent]) -> int:
        result = await self._deliver_fn(list(batch))
        if result is False:
            raise DeliveryError(f"Sink rejected batch of {len(batch)} events")
        if isinstance(result, int) and not isinstance(result, bool):
            return result
        return len(batch)

    def send_beacon(self, batch: Sequence[QueuedEvent]) -> bool:
        if self._beacon_fn is None:
            return False
        self._beacon_fn(list(batch))
        return True


class HttpEventSink(EventSink):
    """
    POSTs batches as ``{"events": [...]}`` JSON.

    ``deliver`` runs the blocking request in a worker thread; ``send_beacon``
    starts a daemon thread and returns immediately.
    """

    def __init__(
        self,
        url: str,
        beacon_url: Optional[str] = None,
        timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.beacon_url = beacon_url or url
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json", **(headers or {})}
        self._session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings=None) -> Optional["HttpEventSink"]:
        """Build a sink from settings; None when no sink URL is configured."""
        if settings is None:
            from config.settings import settings
        if not settings.tracking_sink_url:
            return None
        return cls(
            url=settings.tracking_sink_url,
            beacon_url=settings.tracking_beacon_url,
            timeout=settings.tracking_request_timeout_seconds,
        )

    @staticmethod
    def _body(batch: Sequence[QueuedEvent]) -> Dict[str, Any]:
        return {"events": [event.to_dict() for event in batch]}

    def _post(self, url: str, body: Dict[str, Any]) -> requests.Response:
        return self._session.post(url, json=body, headers=self.headers, timeout=self.timeout)

    def _deliver_blocking(self, batch: Sequence[QueuedEvent]) -> int:
        try:
            response = self._post(self.url, self._body(batch))
            response.raise_for_status()
        except requests.RequestException as e:
            raise DeliveryError(f"POST {self.url} failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            return len(batch)
        if isinstance(data, dict) and isinstance(data.get("inserted"), int):
            errors = data.get("errors") or 0
            if errors and not data["inserted"]:
                raise DeliveryError(f"Sink rejected all {errors} events")
            return data["inserted"]
        return len(batch)

    async def deliver(self, batch: Sequence[QueuedEvent]) -> int:
        return await asyncio.to_thread(self._deliver_blocking, list(batch))

    def send_beacon(self, batch: Sequence[QueuedEvent]) -> bool:
        body = self._body(batch)

        def fire():
            try:
                self._post(self.beacon_url, body)
            except requests.RequestException as e:
                logger.warning(f"Beacon to {self.beacon_url} failed: {e}")

        threading.Thread(target=fire, name="event-beacon", daemon=True).start()
        return True
