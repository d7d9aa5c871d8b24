"""
Event queue with batched delivery and an offline fallback.
"""
from .events import ActiveSpan, EventType, FlushResult, QueuedEvent
from .storage import JsonFileQueueStorage, MemoryQueueStorage, QueueStorage
from .sink import CallableSink, DeliveryError, EventSink, HttpEventSink
from .connectivity import ConnectivitySource, ManualConnectivity
from .queue import EventQueue, TrackingNotInitializedError
from .playback import PlaybackTracker

__all__ = [
    # Records
    "ActiveSpan",
    "EventType",
    "FlushResult",
    "QueuedEvent",
    # Durable storage
    "QueueStorage",
    "MemoryQueueStorage",
    "JsonFileQueueStorage",
    # Delivery
    "EventSink",
    "CallableSink",
    "HttpEventSink",
    "DeliveryError",
    # Connectivity
    "ConnectivitySource",
    "ManualConnectivity",
    # Queue
    "EventQueue",
    "TrackingNotInitializedError",
    "PlaybackTracker",
]
