"""
Shared fixtures: a hand-driven clock, in-memory storage and a sink that
records what it receives.
"""
import asyncio
from typing import List, Optional, Sequence

import pytest

from app.cache import CacheManager
from app.clock import ManualClock
from app.tracking import (
    DeliveryError,
    EventQueue,
    EventSink,
    ManualConnectivity,
    MemoryQueueStorage,
    QueuedEvent,
)


class RecordingSink(EventSink):
    """Sink that stores delivered batches; can be made to fail or to block."""

    def __init__(self):
        self.batches: List[List[QueuedEvent]] = []
        self.beacons: List[List[QueuedEvent]] = []
        self.fail = False
        self.beacon_supported = False
        self.gate: Optional[asyncio.Event] = None
        self.attempts = 0

    async def deliver(self, batch: Sequence[QueuedEvent]) -> int:
        self.attempts += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise DeliveryError("sink unavailable")
        self.batches.append(list(batch))
        return len(batch)

    def send_beacon(self, batch: Sequence[QueuedEvent]) -> bool:
        if not self.beacon_supported:
            return False
        self.beacons.append(list(batch))
        return True

    @property
    def delivered(self) -> List[QueuedEvent]:
        return [event for batch in self.batches for event in batch]


@pytest.fixture
def clock():
    return ManualClock(start=1_700_000_000.0)


@pytest.fixture
def cache(clock):
    """Cache with a 1 second TTL so thresholds are easy to reason about."""
    return CacheManager(clock=clock, default_ttl=1.0)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def storage():
    return MemoryQueueStorage()


@pytest.fixture
def connectivity():
    return ManualConnectivity(online=True)


@pytest.fixture
def make_queue(sink, storage, connectivity, clock):
    """Factory for queues sharing the same sink, storage and network."""
    def factory(**overrides) -> EventQueue:
        options = {
            "sink": sink,
            "storage": storage,
            "connectivity": connectivity,
            "clock": clock,
            # Long interval: tests flush explicitly
            "flush_interval": 3600.0,
        }
        options.update(overrides)
        return EventQueue(**options)
    return factory
