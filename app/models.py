"""
Database models for received playback events.
SQLAlchemy ORM, one row per delivered event.
"""
from datetime import datetime
from sqlalchemy import Column, DateTime, Float, Integer, JSON, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class PlaybackEvent(Base):
    """
    A playback/telemetry event delivered by a player's event queue.

    ``recorded_at`` is when the player captured the event; ``received_at``
    is when it arrived here (events replayed after an outage arrive late).
    """
    __tablename__ = "playback_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String, nullable=False, index=True)
    session_id = Column(String, nullable=False, index=True)
    tenant_id = Column(String, nullable=True, index=True)
    screen_id = Column(String, nullable=True, index=True)
    scene_id = Column(String, nullable=True)
    recorded_at = Column(DateTime, nullable=False, index=True)
    duration_seconds = Column(Float, nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    received_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return (
            f"<PlaybackEvent(id={self.id}, type='{self.event_type}', "
            f"screen='{self.screen_id}')>"
        )
