"""
CRUD operations (Create, Read, Update, Delete)
Database query functions for received playback events
"""
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models import PlaybackEvent
from app.schemas import PlaybackEventIn


# ===== INSERT =====

def insert_playback_events(
    db: Session,
    records: Sequence[Dict[str, Any]],
) -> Tuple[int, int, List[str]]:
    """
    Validate and store a batch of serialized events.

    Invalid records are counted as errors; valid ones are stored in one
    transaction.

    Returns:
        (inserted, errors, tenant ids touched)
    """
    rows = []
    errors = 0
    tenants = set()

    for record in records:
        try:
            event = PlaybackEventIn.model_validate(record)
        except ValidationError:
            errors += 1
            continue

        payload = event.payload
        tenant_id = payload.get("tenantId")
        duration = payload.get("durationSeconds")
        rows.append(PlaybackEvent(
            event_type=event.event_type,
            session_id=event.session_id,
            tenant_id=tenant_id,
            screen_id=payload.get("screenId"),
            scene_id=payload.get("sceneId"),
            recorded_at=event.recorded_at_utc(),
            duration_seconds=float(duration) if isinstance(duration, (int, float)) else None,
            payload=payload,
        ))
        if tenant_id:
            tenants.add(str(tenant_id))

    if rows:
        db.add_all(rows)
        db.commit()

    return len(rows), errors, sorted(tenants)


# ===== QUERIES =====

def get_playback_events(
    db: Session,
    tenant_id: Optional[str] = None,
    session_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[PlaybackEvent]:
    """
    Get events in capture order, optionally filtered by tenant and session
    """
    query = db.query(PlaybackEvent)
    if tenant_id is not None:
        query = query.filter(PlaybackEvent.tenant_id == tenant_id)
    if session_id is not None:
        query = query.filter(PlaybackEvent.session_id == session_id)
    return (
        query.order_by(PlaybackEvent.recorded_at, PlaybackEvent.id)
        .offset(skip)
        .limit(limit)
        .all()
    )


def get_event_counts(db: Session, tenant_id: str) -> Dict[str, int]:
    """
    Count a tenant's events by type
    """
    rows = (
        db.query(PlaybackEvent.event_type, func.count(PlaybackEvent.id))
        .filter(PlaybackEvent.tenant_id == tenant_id)
        .group_by(PlaybackEvent.event_type)
        .all()
    )
    return {event_type: count for event_type, count in rows}


def get_total_duration(db: Session, tenant_id: str) -> float:
    """
    Total seconds of recorded playback for a tenant
    """
    total = (
        db.query(func.sum(PlaybackEvent.duration_seconds))
        .filter(PlaybackEvent.tenant_id == tenant_id)
        .scalar()
    )
    return float(total or 0)
