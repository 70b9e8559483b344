"""FastAPI application for the FrameBrew generation pipeline.

This is the API service entry point: job control routes, the live event
stream, and (with the local artifact store) file serving.

With QUEUE_BACKEND=local the stages also run inside this process on the
in-process scheduler. With QUEUE_BACKEND=durable they run in
``python -m framebrew.worker`` processes and their events arrive here over
PostgreSQL LISTEN/NOTIFY.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

from framebrew import __version__
from framebrew.pipeline import build_pipeline
from framebrew.routes import events, files, generation

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build, start and stop the pipeline.

    Startup:
    - Build the pipeline from environment configuration
    - Start the hub heartbeat (and the event relay listener when durable)

    Shutdown:
    - Cancel local stage tasks, close every SSE connection
    - Close provider, scorer and HTTP clients, dispose pools
    """
    pipeline = await build_pipeline()
    await pipeline.start()
    app.state.pipeline = pipeline
    log.info("api_started", queue_backend=pipeline.backend)

    yield  # Application runs here

    log.info("api_shutting_down")
    await pipeline.stop()
    app.state.pipeline = None


app = FastAPI(
    title="FrameBrew - Generation Pipeline",
    description="Prompt-to-video generation jobs with live progress streaming",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(generation.router)
app.include_router(events.router)
app.include_router(files.router)


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> JSONResponse:
    """Health check endpoint for deployment validation.

    Returns:
        JSONResponse: Status and queue backend, when the pipeline is up
    """
    pipeline = getattr(app.state, "pipeline", None)
    return JSONResponse(
        content={
            "status": "healthy",
            "service": "framebrew",
            "queue_backend": pipeline.backend if pipeline is not None else None,
        }
    )


@app.get("/", status_code=status.HTTP_200_OK)
async def root() -> JSONResponse:
    """Root endpoint with API information."""
    return JSONResponse(
        content={
            "service": "FrameBrew - Generation Pipeline",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
            "events": "/api/v1/events",
        }
    )


if __name__ == "__main__":
    import uvicorn

    # Local development
    uvicorn.run(
        "framebrew.main:app",
        host="0.0.0.0",  # noqa: S104
        port=8000,
        reload=True,
    )
