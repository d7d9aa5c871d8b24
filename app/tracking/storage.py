"""
Durable fallback storage for the offline event queue.

Adapters hold a serialized queue (a list of ``QueuedEvent.to_dict()``
records). They are allowed to fail; the queue treats every call as
advisory and keeps working in memory.
"""
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger("tracking.storage")

SerializedQueue = List[Dict[str, Any]]


class QueueStorage(ABC):
    """Persistence for events that could not be delivered yet."""

    @abstractmethod
    def load(self) -> Optional[SerializedQueue]:
        """Return the persisted queue, or None if nothing is stored."""
        pass

    @abstractmethod
    def save(self, events: SerializedQueue) -> None:
        """Replace the persisted queue."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove the persisted queue."""
        pass


class MemoryQueueStorage(QueueStorage):
    """
    Process-local storage.

    Outlives the EventQueue that writes to it, which is enough to
    simulate a restart in tests.
    """

    def __init__(self):
        self._events: Optional[SerializedQueue] = None

    def load(self) -> Optional[SerializedQueue]:
        if self._events is None:
            return None
        return [dict(event) for event in self._events]

    def save(self, events: SerializedQueue) -> None:
        self._events = [dict(event) for event in events]

    def clear(self) -> None:
        self._events = None


class JsonFileQueueStorage(QueueStorage):
    """Queue persisted as a JSON array in a single file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> Optional[SerializedQueue]:
        if not self.path.exists():
            return None
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, list):
            raise ValueError(f"Offline queue file {self.path} does not hold a list")
        return data

    def save(self, events: SerializedQueue) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(events, f, ensure_ascii=False)
        os.replace(tmp_path, self.path)
        logger.debug(f"Saved {len(events)} events to {self.path}")

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
