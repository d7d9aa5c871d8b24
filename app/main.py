"""
Signage Sync - FastAPI application
Receives playback event batches from players and serves cached analytics
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import sessionmaker

from app import crud
from app.cache import CacheKeys, CacheManager, get_ttl_for_key, invalidate_for_write
from app.db import SessionLocal, init_db
from app.schemas import EventList, InsertResult, PlaybackEventOut, PlaybackSummary

# Version tracking
APP_VERSION = "v0.3.0"
APP_NAME = "Signage Sync"

logger = logging.getLogger("main")

MAX_BATCH_SIZE = 1000


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create tables on startup; let background cache refreshes settle on shutdown."""
    init_db(app.state.session_factory.kw.get("bind"))
    logger.info(f"{APP_NAME} {APP_VERSION} started")
    yield
    await app.state.cache.wait_idle()
    logger.info(f"{APP_NAME} stopped")


def create_app(
    session_factory: Optional[sessionmaker] = None,
    cache: Optional[CacheManager] = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        session_factory: SQLAlchemy session factory (defaults to the configured database)
        cache: Read-through cache for analytics reads
    """
    app = FastAPI(
        title=APP_NAME,
        description="Playback event ingest and cached analytics for signage players",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.state.session_factory = session_factory or SessionLocal
    app.state.cache = cache or CacheManager.from_settings()

    # Blocking database work; async handlers run these in the threadpool
    def store_events(records):
        db = app.state.session_factory()
        try:
            return crud.insert_playback_events(db, records)
        finally:
            db.close()

    def read_summary(tenant_id: str):
        db = app.state.session_factory()
        try:
            return {
                "counts": crud.get_event_counts(db, tenant_id),
                "total_duration_seconds": crud.get_total_duration(db, tenant_id),
            }
        finally:
            db.close()

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok"}

    @app.get("/version")
    def version():
        """Get app version info."""
        return {"name": APP_NAME, "version": APP_VERSION}

    @app.get("/cache/stats")
    def cache_stats():
        """Get cache statistics."""
        return app.state.cache.get_stats()

    @app.post("/api/analytics/playback-events", response_model=InsertResult)
    async def ingest_playback_events(request: Request):
        """
        Store a batch of events.

        Accepts ``{"events": [...]}`` from the normal sink and a bare JSON
        array from teardown beacons.
        """
        try:
            body: Any = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Body must be JSON")

        records = body.get("events") if isinstance(body, dict) else body
        if not isinstance(records, list):
            raise HTTPException(status_code=422, detail="Expected a list of events")
        if len(records) > MAX_BATCH_SIZE:
            raise HTTPException(
                status_code=413,
                detail=f"Batch too large ({len(records)} > {MAX_BATCH_SIZE})",
            )

        inserted, errors, tenants = await run_in_threadpool(store_events, records)

        for tenant_id in tenants:
            invalidate_for_write(app.state.cache, "dashboard", tenant_id)

        if errors:
            logger.warning(f"Rejected {errors} malformed events out of {len(records)}")
        return InsertResult(inserted=inserted, errors=errors)

    @app.get("/api/analytics/playback-events", response_model=EventList)
    def list_playback_events(
        tenant_id: Optional[str] = Query(default=None),
        session_id: Optional[str] = Query(default=None),
        skip: int = Query(default=0, ge=0),
        limit: int = Query(default=100, ge=1, le=1000),
    ):
        """List stored events in capture order."""
        db = app.state.session_factory()
        try:
            rows = crud.get_playback_events(
                db, tenant_id=tenant_id, session_id=session_id, skip=skip, limit=limit
            )
            events = [PlaybackEventOut.model_validate(row) for row in rows]
        finally:
            db.close()
        return EventList(events=events, count=len(events))

    @app.get("/api/analytics/playback-events/summary", response_model=PlaybackSummary)
    async def playback_summary(
        tenant_id: str = Query(..., min_length=1),
        forceRefresh: bool = Query(default=False, description="Bypass cache and fetch fresh data"),
    ):
        """
        Per-type event counts for a tenant, served stale-while-revalidate.
        """
        cache: CacheManager = app.state.cache
        key = CacheKeys.playback_summary(tenant_id)

        async def fetch_summary():
            return await run_in_threadpool(read_summary, tenant_id)

        if forceRefresh:
            result = await cache.refetch(key, fetch_summary, ttl=get_ttl_for_key(key))
        else:
            result = await cache.get(key, fetch_summary, ttl=get_ttl_for_key(key))

        if result.value is None:
            raise HTTPException(status_code=503, detail=f"Summary unavailable: {result.error}")

        counts = result.value["counts"]
        meta = result.to_dict()
        meta.pop("data")
        return PlaybackSummary(
            tenant_id=tenant_id,
            total=sum(counts.values()),
            counts=counts,
            total_duration_seconds=result.value["total_duration_seconds"],
            cache=meta,
        )

    return app


logging.basicConfig(level=logging.INFO)

app = create_app()
