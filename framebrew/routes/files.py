"""Serve artifacts written by the local artifact store.

- GET /api/files/{key} - Stored object (e.g. generated/{org}/{video}/video.mp4)

Only mounted when the pipeline uses ``LocalArtifactStore``; GCS artifacts are
served by the bucket itself.
"""

import mimetypes

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import FileResponse

from framebrew.clients.artifact_store import LocalArtifactStore
from framebrew.pipeline import Pipeline
from framebrew.routes.dependencies import get_pipeline

router = APIRouter(prefix="/api/files", tags=["files"])


@router.get("/{key:path}")
async def get_file(key: str, pipeline: Pipeline = Depends(get_pipeline)) -> FileResponse:
    store = pipeline.context.artifact_store
    if not isinstance(store, LocalArtifactStore):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    try:
        path = store.open_path(key)
    except (FileNotFoundError, ValueError) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found") from e

    media_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    return FileResponse(path, media_type=media_type)
