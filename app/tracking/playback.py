"""
Playback tracking for a signage player.

Wraps an EventQueue with the device context every event carries
(tenant, screen, group, location) and the player-specific event shapes:
scenes as spans, status changes, media loads and errors, and simple
performance signals.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .events import ActiveSpan, EventType, to_iso
from .queue import EventQueue, TrackingNotInitializedError

logger = logging.getLogger("tracking.playback")

MAX_TEXT_LENGTH = 500
MIN_DROPPED_FRAMES = 3


def _truncate(text: Optional[str], limit: int = MAX_TEXT_LENGTH) -> Optional[str]:
    if text is None:
        return None
    return text[:limit]


def _frame_drop_severity(dropped_frames: int) -> str:
    if dropped_frames > 10:
        return "high"
    if dropped_frames > 5:
        return "medium"
    return "low"


class PlaybackTracker:
    """
    Player-side playback analytics.

    Usage:
        tracker = PlaybackTracker(EventQueue(sink, storage=storage))
        tracker.init(device_id="screen-1", tenant_id="tenant-1")
        tracker.track_scene_start(scene_id="scene-9")
        ...
        await tracker.stop()
    """

    def __init__(self, queue: EventQueue):
        self.queue = queue
        self._device: Optional[Dict[str, Any]] = None
        queue.add_connectivity_listener(self._on_connectivity_change)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def init(
        self,
        device_id: str,
        tenant_id: str,
        group_id: Optional[str] = None,
        location_id: Optional[str] = None,
    ) -> str:
        """Start a session for a device; returns the session id."""
        self._device = {
            "deviceId": device_id,
            "tenantId": tenant_id,
            "groupId": group_id,
            "locationId": location_id,
        }
        session_id = self.queue.init(context=self._device)
        logger.info(f"Playback tracking initialized for device {device_id}")
        return session_id

    async def stop(self):
        """End the current scene, flush and close the session."""
        result = await self.queue.stop()
        self._device = None
        return result

    def update_context(self, **updates: Any) -> None:
        """Change device context, e.g. ``update_context(groupId="g2")``."""
        device = self._require_device()
        device.update(updates)
        self.queue.update_context(**updates)

    @property
    def is_initialized(self) -> bool:
        return self._device is not None and self.queue.is_initialized

    def _require_device(self) -> Dict[str, Any]:
        if self._device is None:
            raise TrackingNotInitializedError(
                "PlaybackTracker.init() must be called before tracking"
            )
        return self._device

    def _base(self, item_type: str, **extra: Any) -> Dict[str, Any]:
        """Fields shared by every event."""
        device = self._require_device()
        payload = {
            "tenantId": device["tenantId"],
            "screenId": device["deviceId"],
            "groupId": device["groupId"],
            "locationId": device["locationId"],
            "playerSessionId": self.queue.session_id,
            "itemType": item_type,
        }
        payload.update(extra)
        return payload

    # ========================================================================
    # Scenes
    # ========================================================================

    def track_scene_start(
        self,
        scene_id: str,
        schedule_id: Optional[str] = None,
        group_id: Optional[str] = None,
    ) -> ActiveSpan:
        """Start a scene; a scene already playing is ended first."""
        payload = self._base("scene", sceneId=scene_id, scheduleId=schedule_id)
        if group_id:
            payload["groupId"] = group_id
        span = self.queue.start_span(
            EventType.SCENE_START,
            payload,
            end_event_type=EventType.SCENE_END,
        )
        logger.debug(f"Scene started: {scene_id}")
        return span

    def track_scene_end(self) -> Optional[int]:
        """End the current scene; returns its duration in seconds or None."""
        return self.queue.end_span()

    @property
    def current_scene_id(self) -> Optional[str]:
        span = self.queue.active_span
        if span is None:
            return None
        return span.payload.get("sceneId")

    # ========================================================================
    # Player status
    # ========================================================================

    def _status_timestamp(self, at: Optional[datetime]) -> str:
        if at is None:
            return to_iso(self.queue.clock.now())
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        return at.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")

    def track_player_online(self, at: Optional[datetime] = None) -> None:
        payload = self._base("status", startedAt=self._status_timestamp(at))
        self.queue.track_event(EventType.PLAYER_ONLINE, payload)
        logger.info(f"Player online: {payload['screenId']}")

    def track_player_offline(self, at: Optional[datetime] = None) -> None:
        """Record the player going offline; the current scene is ended first."""
        if self.queue.active_span is not None:
            self.queue.end_span()
        payload = self._base("status", startedAt=self._status_timestamp(at))
        self.queue.track_event(EventType.PLAYER_OFFLINE, payload)
        logger.info(f"Player offline: {payload['screenId']}")

    def _on_connectivity_change(self, online: bool) -> None:
        if self._device is None or not self.queue.is_initialized:
            return
        if online:
            self.track_player_online()
        else:
            self.track_player_offline()

    # ========================================================================
    # Media
    # ========================================================================

    def track_media_play(
        self,
        media_id: str,
        duration_seconds: float,
        playlist_id: Optional[str] = None,
    ) -> bool:
        """Record media that already finished playing; too-short plays are ignored."""
        if duration_seconds < self.queue.min_span_seconds:
            return False
        now = self.queue.clock.now()
        payload = self._base(
            "media",
            sceneId=self.current_scene_id,
            mediaId=media_id,
            playlistId=playlist_id,
            startedAt=to_iso(now - duration_seconds),
            endedAt=to_iso(now),
            durationSeconds=duration_seconds,
        )
        self.queue.track_event(EventType.MEDIA_PLAY, payload)
        return True

    def track_segment_progress(self, slide_id: str, progress: int, total_duration: float) -> None:
        """Quartile completion of a slide (call at 25, 50, 75 and 100)."""
        payload = self._base(
            "segment",
            sceneId=self.current_scene_id,
            segmentProgress={
                "slideId": slide_id,
                "progress": progress,
                "totalDuration": total_duration,
                "quartile": progress // 25,
            },
        )
        self.queue.track_event(EventType.SEGMENT_PROGRESS, payload)

    def track_media_load(
        self,
        url: str,
        media_type: str,
        latency_ms: float,
        bytes_: Optional[int] = None,
        cached: bool = False,
    ) -> None:
        payload = self._base(
            "media_load",
            sceneId=self.current_scene_id,
            loadLatencyMs=latency_ms,
            mediaLoadDetails={
                "url": _truncate(url),
                "mediaType": media_type,
                "bytes": bytes_,
                "cached": cached,
            },
        )
        self.queue.track_event(EventType.MEDIA_LOAD, payload)

    def track_media_error(
        self,
        url: str,
        media_type: str,
        error: str,
        http_status: Optional[int] = None,
    ) -> None:
        payload = self._base(
            "error",
            sceneId=self.current_scene_id,
            errorDetails={
                "url": _truncate(url),
                "mediaType": media_type,
                "error": _truncate(error),
                "httpStatus": http_status,
            },
        )
        self.queue.track_event(EventType.MEDIA_ERROR, payload)
        logger.warning(
            f"Media error ({media_type}): {_truncate(error, 100)} "
            f"url={_truncate(url, 100)} scene={self.current_scene_id}"
        )

    # ========================================================================
    # Interaction and performance
    # ========================================================================

    def track_interaction(self, action: str, slide_id: Optional[str] = None) -> None:
        """User action on the player: pause, resume, skip, replay."""
        payload = self._base(
            "interaction",
            sceneId=self.current_scene_id,
            interactionDetails={"action": action, "slideId": slide_id},
        )
        self.queue.track_event(EventType.INTERACTION, payload)

    def track_network_change(
        self,
        level: str,
        downlink: Optional[float] = None,
        rtt: Optional[float] = None,
    ) -> None:
        payload = self._base(
            "network",
            networkQuality=level,
            networkDetails={"level": level, "downlink": downlink, "rtt": rtt},
        )
        self.queue.track_event(EventType.NETWORK_CHANGE, payload)

    def track_frame_drop(self, expected_ms: float, actual_ms: float, dropped_frames: int) -> bool:
        """Record a rendering stall; fewer than 3 dropped frames is ignored."""
        if dropped_frames < MIN_DROPPED_FRAMES:
            return False
        payload = self._base(
            "performance",
            sceneId=self.current_scene_id,
            frameDropDetails={
                "expectedMs": expected_ms,
                "actualMs": actual_ms,
                "droppedFrames": dropped_frames,
                "severity": _frame_drop_severity(dropped_frames),
            },
        )
        self.queue.track_event(EventType.FRAME_DROP, payload)
        return True

    def get_summary(self) -> Dict[str, Any]:
        summary = self.queue.get_summary()
        summary["currentScene"] = self.current_scene_id
        summary["deviceId"] = self._device["deviceId"] if self._device else None
        return summary
