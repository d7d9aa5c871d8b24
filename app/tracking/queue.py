"""
Batched event queue with periodic flushing and an offline fallback.

Events are queued in memory and delivered to a sink in batches: on a
timer, when the queue reaches its size limit, on reconnect, and once
more at shutdown. While offline, or after a failed delivery, the queue
is written to durable storage so a restart can replay it. Delivery is
at-least-once; nothing is dropped to relieve pressure.
"""
import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from .events import ActiveSpan, EventType, FlushResult, QueuedEvent, event_type_value
from .sink import EventSink
from .storage import JsonFileQueueStorage, QueueStorage
from .connectivity import ConnectivitySource
from app.clock import Clock, SystemClock

logger = logging.getLogger("tracking.queue")

ConnectivityListener = Callable[[bool], None]


class TrackingNotInitializedError(Exception):
    """Raised when an operation needs a session and ``init()`` has not run."""
    pass


class EventQueue:
    """
    Event queue and offline relay.

    Key features:
    - In-memory queue flushed every ``flush_interval`` seconds
    - Immediate flush once ``max_queue_size`` events are waiting
    - Each flush snapshots the queue; events tracked meanwhile go to a fresh queue
    - Failed batches go back to the head of the queue and to durable storage
    - One open span at a time; spans under ``min_span_seconds`` are dropped
    """

    def __init__(
        self,
        sink: EventSink,
        storage: Optional[QueueStorage] = None,
        connectivity: Optional[ConnectivitySource] = None,
        clock: Optional[Clock] = None,
        flush_interval: float = 30.0,
        max_queue_size: int = 50,
        min_span_seconds: float = 1.0,
    ):
        if flush_interval <= 0:
            raise ValueError("flush_interval must be > 0")
        if max_queue_size < 1:
            raise ValueError("max_queue_size must be >= 1")
        if min_span_seconds < 0:
            raise ValueError("min_span_seconds must be >= 0")

        self.sink = sink
        self.storage = storage
        self.connectivity = connectivity
        self.flush_interval = flush_interval
        self.max_queue_size = max_queue_size
        self.min_span_seconds = min_span_seconds
        self._clock = clock or SystemClock()

        self._queue: List[QueuedEvent] = []
        self._session_id: Optional[str] = None
        self._context: Dict[str, Any] = {}
        self._active_span: Optional[ActiveSpan] = None
        self._online = connectivity.is_online if connectivity is not None else True

        # Batches handed to the sink and not yet confirmed, oldest first
        self._inflight: List[List[QueuedEvent]] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._flush_task: Optional["asyncio.Task[None]"] = None
        self._pending: Set["asyncio.Task[FlushResult]"] = set()
        self._subscription: Optional[int] = None
        self._listeners: List[ConnectivityListener] = []

        self._stats = {
            "events_tracked": 0,
            "events_flushed": 0,
            "batches_flushed": 0,
            "flush_errors": 0,
            "spans_discarded": 0,
        }

    @classmethod
    def from_settings(
        cls,
        sink: EventSink,
        settings=None,
        storage: Optional[QueueStorage] = None,
        connectivity: Optional[ConnectivitySource] = None,
        clock: Optional[Clock] = None,
    ) -> "EventQueue":
        """Build a queue from settings, persisting to the configured JSON file."""
        if settings is None:
            from config.settings import settings
        if storage is None:
            storage = JsonFileQueueStorage(settings.tracking_offline_storage_path)
        return cls(
            sink=sink,
            storage=storage,
            connectivity=connectivity,
            clock=clock,
            flush_interval=settings.tracking_flush_interval_seconds,
            max_queue_size=settings.tracking_max_queue_size,
            min_span_seconds=settings.tracking_min_span_seconds,
        )

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def init(self, context: Optional[Dict[str, Any]] = None) -> str:
        """
        Start a tracking session.

        Loads events persisted by a previous run ahead of anything already
        queued, starts the periodic flush and subscribes to connectivity.
        Must be called from a running event loop.

        Returns:
            The new session id
        """
        if self._session_id is not None:
            raise RuntimeError("EventQueue already initialized; call stop() first")
        loop = asyncio.get_running_loop()
        self._loop = loop

        now = self._clock.now()
        self._session_id = f"{int(now * 1000)}-{uuid.uuid4().hex[:7]}"
        self._context = dict(context or {})

        restored = self._load_persisted()
        if restored:
            self._queue = restored + self._queue
            logger.debug(f"Loaded {len(restored)} events from offline storage")

        self._flush_task = loop.create_task(self._periodic_flush())

        if self.connectivity is not None:
            self._online = self.connectivity.is_online
            self._subscription = self.connectivity.subscribe(
                on_online=self._handle_online,
                on_offline=self._handle_offline,
            )

        logger.info(
            f"Tracking initialized (session={self._session_id}, "
            f"restored={len(restored)}, online={self._online})"
        )
        return self._session_id

    async def stop(self) -> FlushResult:
        """
        End the session: close the open span, stop the timer, flush one
        last time and detach from connectivity. Safe to call twice.
        """
        if self._session_id is None:
            return FlushResult()

        if self._active_span is not None:
            self.end_span()

        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

        await self.wait_idle()
        result = await self.flush(force_synchronous=True)

        if self.connectivity is not None and self._subscription is not None:
            self.connectivity.unsubscribe(self._subscription)
        self._subscription = None

        logger.info(f"Tracking stopped (session={self._session_id})")
        self._session_id = None
        self._context = {}
        return result

    async def _periodic_flush(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            try:
                await self.flush()
            except Exception as e:
                logger.error(f"Periodic flush error: {e}")

    # ========================================================================
    # Tracking
    # ========================================================================

    def track_event(
        self,
        event_type: Union[EventType, str],
        payload: Optional[Dict[str, Any]] = None,
    ) -> QueuedEvent:
        """
        Queue an event stamped with the current time.

        Reaching ``max_queue_size`` starts a flush before returning; the
        caller does not wait for the delivery itself.
        """
        session_id = self._require_session()
        event = QueuedEvent(
            event_type=event_type_value(event_type),
            payload=dict(payload or {}),
            recorded_at=self._clock.now(),
            session_id=session_id,
        )
        self._append(event)
        return event

    def _append(self, event: QueuedEvent) -> None:
        self._queue.append(event)
        self._stats["events_tracked"] += 1
        logger.debug(f"Queued {event.event_type} (queue size {len(self._queue)})")

        if not self._online:
            # Offline: every mutation goes straight to durable storage
            self._persist()
        elif len(self._queue) >= self.max_queue_size:
            logger.debug(f"Queue full, flushing (queue size {len(self._queue)})")
            self._schedule_flush()

    def start_span(
        self,
        event_type: Union[EventType, str],
        payload: Optional[Dict[str, Any]] = None,
        end_event_type: Optional[Union[EventType, str]] = None,
    ) -> ActiveSpan:
        """
        Open the interval event, closing (and queueing) any span already open.

        Args:
            event_type: Type of the open span
            payload: Data carried into the completed event
            end_event_type: Type the completed event is queued as
                            (defaults to ``event_type``)
        """
        self._require_session()
        if self._active_span is not None:
            self.end_span()

        span = ActiveSpan(
            event_type=event_type_value(end_event_type or event_type),
            payload=dict(payload or {}),
            started_at=self._clock.now(),
        )
        self._active_span = span
        logger.debug(f"Span started: {event_type_value(event_type)}")
        return span

    def end_span(self) -> Optional[int]:
        """
        Close the open span and queue it as one event.

        Returns:
            Duration in whole seconds, or None when no span was open
        """
        span = self._active_span
        if span is None:
            return None
        self._active_span = None

        now = self._clock.now()
        duration = span.close(now)
        if now - span.started_at < self.min_span_seconds:
            self._stats["spans_discarded"] += 1
            logger.debug(f"Span too short, skipped ({now - span.started_at:.2f}s)")
            return duration

        self._append(QueuedEvent(
            event_type=span.event_type,
            payload=span.completed_payload(),
            recorded_at=now,
            session_id=self._session_id or "",
        ))
        logger.debug(f"Span ended: {span.event_type} ({duration}s)")
        return duration

    # ========================================================================
    # Flushing
    # ========================================================================

    async def flush(self, force_synchronous: bool = False) -> FlushResult:
        """
        Deliver everything queued.

        Offline: the queue is persisted and nothing is sent.
        Online: the queue is swapped out and delivered; on failure the
        batch is put back at the head of the queue and persisted.

        Args:
            force_synchronous: Teardown flush; uses the sink's
                               fire-and-forget mode when it has one
        """
        batch, result = self._begin_flush()
        if batch is None:
            return result
        return await self._deliver(batch, force_synchronous)

    def _begin_flush(self) -> Tuple[Optional[List[QueuedEvent]], FlushResult]:
        """Take the snapshot to send, or persist when offline."""
        if not self._queue:
            return None, FlushResult()
        if not self._online:
            self._persist()
            return None, FlushResult(offline=True)

        batch = self._queue
        self._queue = []
        self._inflight.append(batch)
        return batch, FlushResult()

    async def _deliver(self, batch: List[QueuedEvent], force_synchronous: bool) -> FlushResult:
        logger.debug(f"Flushing {len(batch)} events")

        if force_synchronous:
            try:
                dispatched = self.sink.send_beacon(batch)
            except Exception as e:
                logger.warning(f"Beacon dispatch failed, using normal delivery: {e}")
                dispatched = False
            if dispatched:
                self._delivered(batch)
                return FlushResult(inserted=len(batch), beacon=True)

        try:
            inserted = await self.sink.deliver(batch)
        except asyncio.CancelledError:
            self._requeue(batch)
            raise
        except Exception as e:
            self._stats["flush_errors"] += 1
            logger.error(f"Flush failed for {len(batch)} events: {e}")
            self._requeue(batch)
            return FlushResult(errors=len(batch))

        self._delivered(batch)
        return FlushResult(inserted=inserted, errors=max(len(batch) - inserted, 0))

    def _schedule_flush(self) -> Optional["asyncio.Task[FlushResult]"]:
        """Snapshot now, deliver in the background."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Called from another thread (e.g. a connectivity callback)
            if self._loop is None or self._loop.is_closed():
                logger.warning("No event loop to flush on; events stay queued")
                return None
            self._loop.call_soon_threadsafe(self._schedule_flush)
            return None
        batch, _ = self._begin_flush()
        if batch is None:
            return None
        task = loop.create_task(self._deliver(batch, False))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for background flushes to settle."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _delivered(self, batch: List[QueuedEvent]) -> None:
        self._release(batch)
        self._stats["events_flushed"] += len(batch)
        self._stats["batches_flushed"] += 1
        # Keep everything not yet confirmed on disk, including other flushes in flight
        if self._queue or self._inflight:
            self._persist()
        else:
            self._clear_persisted()

    def _requeue(self, batch: List[QueuedEvent]) -> None:
        self._release(batch)
        self._queue = batch + self._queue
        self._persist()

    def _release(self, batch: List[QueuedEvent]) -> None:
        self._inflight = [b for b in self._inflight if b is not batch]

    def _unconfirmed(self) -> List[QueuedEvent]:
        """In-flight batches (oldest first) followed by the queue."""
        events = [event for batch in self._inflight for event in batch]
        return events + self._queue

    # ========================================================================
    # Durable storage (advisory: failures are logged and ignored)
    # ========================================================================

    def _persist(self) -> None:
        if self.storage is None:
            return
        try:
            events = self._unconfirmed()
            self.storage.save([event.to_dict() for event in events])
            logger.debug(f"Saved {len(events)} events to offline storage")
        except Exception as e:
            logger.warning(f"Failed to save offline queue: {e}")

    def _load_persisted(self) -> List[QueuedEvent]:
        if self.storage is None:
            return []
        try:
            stored = self.storage.load()
        except Exception as e:
            logger.warning(f"Failed to load offline queue: {e}")
            return []
        if not stored:
            return []

        events = []
        for record in stored:
            try:
                events.append(QueuedEvent.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed offline event: {e}")
        return events

    def _clear_persisted(self) -> None:
        if self.storage is None:
            return
        try:
            self.storage.clear()
        except Exception as e:
            logger.warning(f"Failed to clear offline queue: {e}")

    # ========================================================================
    # Connectivity
    # ========================================================================

    def add_connectivity_listener(self, listener: ConnectivityListener) -> None:
        """Call ``listener(online)`` on every transition, before the queue reacts."""
        self._listeners.append(listener)

    def remove_connectivity_listener(self, listener: ConnectivityListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, online: bool) -> None:
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception as e:
                logger.warning(f"Connectivity listener failed: {e}")

    def _handle_offline(self) -> None:
        logger.info("Connection lost")
        self._online = False
        if self._active_span is not None:
            self.end_span()
        self._notify(False)
        self._persist()

    def _handle_online(self) -> None:
        logger.info("Connection restored")
        self._online = True
        self._notify(True)
        self._schedule_flush()

    # ========================================================================
    # State
    # ========================================================================

    def _require_session(self) -> str:
        if self._session_id is None:
            raise TrackingNotInitializedError(
                "EventQueue.init() must be called before tracking events"
            )
        return self._session_id

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def is_initialized(self) -> bool:
        return self._session_id is not None

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    @property
    def pending_events(self) -> List[QueuedEvent]:
        return list(self._queue)

    @property
    def active_span(self) -> Optional[ActiveSpan]:
        return self._active_span

    @property
    def context(self) -> Dict[str, Any]:
        return dict(self._context)

    def update_context(self, **updates: Any) -> None:
        """Merge values into the session context (e.g. when a screen changes group)."""
        self._require_session()
        self._context.update(updates)

    def get_summary(self) -> Dict[str, Any]:
        """Snapshot of the session for diagnostics."""
        counts: Dict[str, int] = {}
        for event in self._queue:
            counts[event.event_type] = counts.get(event.event_type, 0) + 1
        return {
            "sessionId": self._session_id,
            "queueSize": len(self._queue),
            "isOnline": self._online,
            "activeSpan": self._active_span.event_type if self._active_span else None,
            "eventCounts": counts,
            **self._stats,
        }
