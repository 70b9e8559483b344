"""Server-Sent Events routes.

- GET /api/v1/events?token=...  - Live pipeline events for the caller's organization
- GET /api/v1/events/stats      - Connection counts by organization and user

EventSource cannot send headers, so the stream authenticates with a query
string token. The connection is registered before the response starts: an
invalid token gets a plain 401 and never opens a stream.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from framebrew.exceptions import AuthenticationError
from framebrew.pipeline import Pipeline
from framebrew.routes.dependencies import get_pipeline, get_principal
from framebrew.utils.tokens import Principal

log = structlog.get_logger()
router = APIRouter(prefix="/api/v1/events", tags=["events"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.get("")
async def stream_events(
    token: str | None = Query(default=None),
    pipeline: Pipeline = Depends(get_pipeline),
) -> StreamingResponse:
    """Open the event stream.

    Returns:
        200 OK: text/event-stream, first event is "connected"
        401 Unauthorized: Missing, expired or tampered token
    """
    if pipeline.hub is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Event stream not available",
        )
    try:
        connection_id = pipeline.hub.connect(token)
    except AuthenticationError as e:
        log.warning("sse_unauthorized", reason=str(e))
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e)) from e

    return StreamingResponse(
        pipeline.hub.stream(connection_id),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/stats")
async def event_stats(
    principal: Principal = Depends(get_principal),
    pipeline: Pipeline = Depends(get_pipeline),
) -> dict:
    """Connected client counts."""
    if pipeline.hub is None:
        return {"total_connections": 0, "connections_by_org": {}, "connections_by_user": {}}
    return pipeline.hub.stats()
