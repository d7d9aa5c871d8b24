"""
Pydantic schemas for API request/response models
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


# ===== INGEST SCHEMAS =====

class PlaybackEventIn(BaseModel):
    """One event as serialized by ``QueuedEvent.to_dict()``"""
    event_type: str = Field(alias="eventType", min_length=1)
    session_id: str = Field(alias="sessionId", min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    recorded_at: Optional[datetime] = Field(default=None, alias="recordedAt")
    recorded_at_epoch: Optional[float] = Field(default=None, alias="recordedAtEpoch")

    class Config:
        populate_by_name = True

    @model_validator(mode="after")
    def _require_timestamp(self):
        if self.recorded_at is None and self.recorded_at_epoch is None:
            raise ValueError("recordedAt or recordedAtEpoch is required")
        return self

    def recorded_at_utc(self) -> datetime:
        """Capture time as a naive UTC datetime (how it is stored)."""
        if self.recorded_at_epoch is not None:
            moment = datetime.fromtimestamp(self.recorded_at_epoch, tz=timezone.utc)
        else:
            moment = self.recorded_at
            if moment.tzinfo is None:
                moment = moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(timezone.utc).replace(tzinfo=None)


class InsertResult(BaseModel):
    """Outcome of a batch insert"""
    inserted: int
    errors: int


class PlaybackEventOut(BaseModel):
    """Stored event"""
    id: int
    event_type: str
    session_id: str
    tenant_id: Optional[str] = None
    screen_id: Optional[str] = None
    scene_id: Optional[str] = None
    recorded_at: datetime
    duration_seconds: Optional[float] = None
    payload: Dict[str, Any]
    received_at: datetime

    class Config:
        from_attributes = True


class PlaybackSummary(BaseModel):
    """Per-type event counts for a tenant, with cache metadata"""
    tenant_id: str
    total: int
    counts: Dict[str, int]
    total_duration_seconds: float
    cache: Dict[str, Any]


class EventList(BaseModel):
    events: List[PlaybackEventOut]
    count: int
