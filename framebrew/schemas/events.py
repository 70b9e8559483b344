"""Event-stream schemas pushed to connected clients.

Each event is ``{type, id, data, timestamp}`` and is written to the wire in
Server-Sent Events format:

    id: video_3f2a..._1760870400123
    event: video_status_update
    data: {"type": "video_status_update", "id": "...", "data": {...}, "timestamp": "..."}

Event Types:
    connected: first event on every new connection
    heartbeat: liveness ping every 15s
    video_status_update: a video changed status
    job_progress: a job advanced (status and/or progress)
    job_complete: a job reached READY or FAILED
"""

import enum
import json
import time
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, enum.Enum):
    CONNECTED = "connected"
    HEARTBEAT = "heartbeat"
    VIDEO_STATUS_UPDATE = "video_status_update"
    JOB_PROGRESS = "job_progress"
    JOB_COMPLETE = "job_complete"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _event_id(prefix: str, entity_id: Any = None) -> str:
    millis = int(time.time() * 1000)
    if entity_id is None:
        return f"{prefix}_{millis}"
    return f"{prefix}_{entity_id}_{millis}"


class StreamEvent(BaseModel):
    """One event delivered over the stream."""

    type: EventType
    id: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)

    def to_sse(self) -> str:
        """Render the event as an SSE frame."""
        payload = self.model_dump(mode="json")
        return f"id: {self.id}\nevent: {self.type.value}\ndata: {json.dumps(payload)}\n\n"


def connected_event(connection_id: str) -> StreamEvent:
    return StreamEvent(
        type=EventType.CONNECTED,
        id=_event_id("connected", connection_id),
        data={"connection_id": connection_id},
    )


def heartbeat_event() -> StreamEvent:
    return StreamEvent(type=EventType.HEARTBEAT, id=_event_id("heartbeat"))


def video_status_event(
    video_id: str, status: str, progress: int | None = None, message: str | None = None
) -> StreamEvent:
    data: dict[str, Any] = {"video_id": video_id, "status": status}
    if progress is not None:
        data["progress"] = progress
    if message:
        data["message"] = message
    return StreamEvent(
        type=EventType.VIDEO_STATUS_UPDATE, id=_event_id("video", video_id), data=data
    )


def job_progress_event(
    job_id: str, video_id: str, status: str, progress: int, message: str | None = None
) -> StreamEvent:
    data: dict[str, Any] = {
        "job_id": job_id,
        "video_id": video_id,
        "status": status,
        "progress": progress,
    }
    if message:
        data["message"] = message
    return StreamEvent(type=EventType.JOB_PROGRESS, id=_event_id("job", job_id), data=data)


def job_complete_event(
    job_id: str, video_id: str, success: bool, error: str | None = None
) -> StreamEvent:
    data: dict[str, Any] = {"job_id": job_id, "video_id": video_id, "success": success}
    if error:
        data["error"] = error
    return StreamEvent(
        type=EventType.JOB_COMPLETE, id=_event_id("job_complete", job_id), data=data
    )
