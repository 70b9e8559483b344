"""Dependencies shared by the stage workers.

Built once by the composition root (``framebrew.pipeline.build_pipeline``)
and passed to every worker, so tests can swap any collaborator.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx

from framebrew.clients.artifact_store import ArtifactStore
from framebrew.clients.provider import GenerationProvider
from framebrew.clients.scorer import QualityScorer
from framebrew.config import DEFAULT_MAX_POLL_ITERATIONS, DEFAULT_POLL_INTERVAL_SECONDS
from framebrew.queue import StageQueue
from framebrew.services.status_projector import StatusProjector


@dataclass
class StageContext:
    projector: StatusProjector
    queue: StageQueue
    provider: GenerationProvider
    artifact_store: ArtifactStore
    scorer: QualityScorer
    http_client: httpx.AsyncClient
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS
    max_poll_iterations: int = DEFAULT_MAX_POLL_ITERATIONS
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
