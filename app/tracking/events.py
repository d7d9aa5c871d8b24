"""
Event records for the playback relay.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union


class EventType(str, Enum):
    """Known event types. Any other string is accepted as an event type too."""
    SCENE_START = "scene_start"
    SCENE_END = "scene_end"
    PLAYER_ONLINE = "player_online"
    PLAYER_OFFLINE = "player_offline"
    MEDIA_PLAY = "media_play"
    SEGMENT_PROGRESS = "segment_progress"
    MEDIA_LOAD = "media_load"
    MEDIA_ERROR = "media_error"
    INTERACTION = "interaction"
    NETWORK_CHANGE = "network_change"
    FRAME_DROP = "frame_drop"


def event_type_value(event_type: Union[EventType, str]) -> str:
    """Plain string form of an event type."""
    if isinstance(event_type, EventType):
        return event_type.value
    return str(event_type)


def to_iso(timestamp: float) -> str:
    """Epoch seconds -> ISO-8601 UTC with a Z suffix."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class QueuedEvent:
    """
    One captured event.

    ``recorded_at`` is capture time, not delivery time, and never changes.
    """
    event_type: str
    payload: Dict[str, Any]
    recorded_at: float
    session_id: str

    def to_dict(self) -> Dict[str, Any]:
        """Wire/storage form."""
        return {
            "eventType": self.event_type,
            "payload": self.payload,
            "recordedAt": to_iso(self.recorded_at),
            "recordedAtEpoch": self.recorded_at,
            "sessionId": self.session_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueuedEvent":
        """Inverse of ``to_dict``; raises KeyError/ValueError on malformed input."""
        recorded_at = data.get("recordedAtEpoch")
        if recorded_at is None:
            recorded_at = datetime.fromisoformat(
                data["recordedAt"].replace("Z", "+00:00")
            ).timestamp()
        return cls(
            event_type=str(data["eventType"]),
            payload=dict(data.get("payload") or {}),
            recorded_at=float(recorded_at),
            session_id=str(data["sessionId"]),
        )


@dataclass
class ActiveSpan:
    """An open-ended interval event (e.g. a scene currently on screen)."""
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    started_at: float = 0.0
    ended_at: Optional[float] = None
    duration_seconds: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    def close(self, now: float) -> int:
        """End the span and return its duration rounded half-up to whole seconds."""
        self.ended_at = now
        self.duration_seconds = int(math.floor(now - self.started_at + 0.5))
        return self.duration_seconds

    def completed_payload(self) -> Dict[str, Any]:
        """Payload of the single event a closed span is recorded as."""
        if self.ended_at is None:
            raise ValueError("span is still open")
        return {
            **self.payload,
            "startedAt": to_iso(self.started_at),
            "endedAt": to_iso(self.ended_at),
            "durationSeconds": self.duration_seconds,
        }


@dataclass
class FlushResult:
    """Outcome of one flush attempt."""
    inserted: int = 0
    errors: int = 0
    offline: bool = False
    beacon: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inserted": self.inserted,
            "errors": self.errors,
            "offline": self.offline,
            "beacon": self.beacon,
        }
