"""Composition root for the generation pipeline.

``build_pipeline`` constructs every long-lived collaborator exactly once and
returns them in a ``Pipeline``. There are no module-level singletons: the API
process keeps its pipeline in ``app.state.pipeline`` and the worker process
keeps its own.

Backends are chosen here, once:
    - Queue: PgQueuerStageQueue (durable) or LocalStageQueue (in-process)
    - Provider: VeoClient when GEMINI_API_KEY is set, else SimulatedProvider
    - Artifact store: GCSArtifactStore or LocalArtifactStore
    - Scorer: HttpQualityScorer when SCORER_URL is set, else SimulatedQualityScorer
    - Event sink: the NotificationHub (local queue) or PgEventRelay (durable
      queue, so worker-process events reach the API process's hub)

Roles:
    "api"    builds the hub and stream token service.
    "worker" builds neither and requires the durable queue.
"""

from dataclasses import dataclass, field

import asyncpg
import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from framebrew.clients.artifact_store import ArtifactStore, GCSArtifactStore, LocalArtifactStore
from framebrew.clients.provider import GenerationProvider, SimulatedProvider
from framebrew.clients.scorer import HttpQualityScorer, QualityScorer, SimulatedQualityScorer
from framebrew.clients.veo import VeoClient
from framebrew.config import (
    ARTIFACT_BACKEND_GCS,
    QUEUE_BACKEND_DURABLE,
    QUEUE_BACKEND_LOCAL,
    get_artifact_backend,
    get_asyncpg_dsn,
    get_database_url,
    get_gcs_bucket_name,
    get_gemini_api_key,
    get_local_storage_root,
    get_max_poll_iterations,
    get_poll_interval_seconds,
    get_public_base_url,
    get_queue_backend,
    get_scorer_url,
    get_stream_token_key,
    get_stream_token_ttl,
)
from framebrew.database import create_engine_and_factory
from framebrew.entrypoints import register_stages
from framebrew.exceptions import ConfigurationError
from framebrew.local_scheduler import LocalStageQueue
from framebrew.models import Base
from framebrew.queue import PgQueuerStageQueue, StageQueue, build_stage_policies, initialize_pgqueuer
from framebrew.services.event_relay import PgEventRelay
from framebrew.services.job_service import JobService
from framebrew.services.notification_hub import NotificationHub
from framebrew.services.status_projector import EventSink, StatusProjector
from framebrew.utils.logging import get_logger
from framebrew.utils.tokens import StreamTokenService
from framebrew.workers import StageContext

log = get_logger(__name__)

ROLE_API = "api"
ROLE_WORKER = "worker"


@dataclass
class Pipeline:
    """Every long-lived pipeline collaborator, built once per process."""

    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    queue: StageQueue
    projector: StatusProjector
    jobs: JobService
    context: StageContext
    backend: str = QUEUE_BACKEND_LOCAL
    hub: NotificationHub | None = None
    tokens: StreamTokenService | None = None
    relay: PgEventRelay | None = None
    pg_pool: asyncpg.Pool | None = None
    owns_pool: bool = False
    _started: bool = field(default=False, repr=False)

    async def start(self) -> None:
        """Start background machinery (schema on SQLite, heartbeats, relay)."""
        if self._started:
            return
        if self.engine.dialect.name == "sqlite":
            # PostgreSQL schemas are managed by alembic
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        await self.queue.start()
        if self.hub is not None:
            await self.hub.start()
            if self.relay is not None:
                await self.relay.listen(self.hub)
        self._started = True
        log.info("pipeline_started", backend=self.backend, hub=self.hub is not None)

    async def stop(self) -> None:
        """Stop background work and release every client and pool."""
        await self.queue.stop()
        if self.relay is not None:
            await self.relay.close()
        if self.hub is not None:
            await self.hub.stop()

        await self.context.provider.close()
        await self.context.scorer.close()
        await self.context.http_client.aclose()

        if self.pg_pool is not None and self.owns_pool:
            await self.pg_pool.close()
            log.info("asyncpg_pool_closed")
        await self.engine.dispose()
        self._started = False
        log.info("pipeline_stopped")


def build_provider() -> GenerationProvider:
    api_key = get_gemini_api_key()
    if api_key:
        return VeoClient(api_key)
    log.warning("veo_provider_disabled", message="GEMINI_API_KEY not set, using simulated renders")
    return SimulatedProvider()


def build_artifact_store() -> ArtifactStore:
    """Build the configured artifact store.

    Raises:
        ConfigurationError: GCS selected without GCS_BUCKET_NAME.
    """
    if get_artifact_backend() == ARTIFACT_BACKEND_GCS:
        bucket = get_gcs_bucket_name()
        if not bucket:
            raise ConfigurationError("GCS_BUCKET_NAME is required when ARTIFACT_BACKEND=gcs")
        return GCSArtifactStore(bucket)
    return LocalArtifactStore(get_local_storage_root(), get_public_base_url())


def build_scorer() -> QualityScorer:
    url = get_scorer_url()
    if url:
        return HttpQualityScorer(url)
    return SimulatedQualityScorer()


async def build_pipeline(
    *,
    role: str = ROLE_API,
    database_url: str | None = None,
    queue_backend: str | None = None,
    pg_pool: asyncpg.Pool | None = None,
    owns_pool: bool = False,
    provider: GenerationProvider | None = None,
    artifact_store: ArtifactStore | None = None,
    scorer: QualityScorer | None = None,
    tokens: StreamTokenService | None = None,
    queue: StageQueue | None = None,
) -> Pipeline:
    """Build the pipeline for this process.

    Args:
        role: ROLE_API or ROLE_WORKER.
        database_url: Overrides DATABASE_URL.
        queue_backend: Overrides QUEUE_BACKEND.
        pg_pool: Existing asyncpg pool (the worker passes PgQueuer's). When
            omitted with the durable backend, a pool is created and owned.
        owns_pool: Close ``pg_pool`` when the pipeline stops.
        provider, artifact_store, scorer, tokens, queue: Optional overrides,
            otherwise built from configuration.

    Returns:
        Pipeline, not yet started.

    Raises:
        ConfigurationError: Worker role without the durable queue, or
            incomplete artifact store configuration.
        ValueError: Required environment variable missing.
    """
    backend = queue_backend or get_queue_backend()
    if role == ROLE_WORKER and backend != QUEUE_BACKEND_DURABLE:
        raise ConfigurationError("Worker processes require QUEUE_BACKEND=durable")

    engine, session_factory = create_engine_and_factory(database_url or get_database_url())

    if backend == QUEUE_BACKEND_DURABLE and pg_pool is None:
        _, pg_pool = await initialize_pgqueuer(get_asyncpg_dsn())
        owns_pool = True

    policies = build_stage_policies()
    if queue is None:
        if backend == QUEUE_BACKEND_DURABLE:
            queue = PgQueuerStageQueue(pg_pool, policies)
        else:
            queue = LocalStageQueue(policies)

    hub = None
    if role == ROLE_API:
        tokens = tokens or StreamTokenService(get_stream_token_key(), get_stream_token_ttl())
        hub = NotificationHub(tokens.verify)

    relay = None
    events: EventSink
    if backend == QUEUE_BACKEND_DURABLE:
        relay = PgEventRelay(pg_pool)
        events = relay
    elif hub is not None:
        events = hub
    else:
        raise ConfigurationError("No event sink available for the local queue")

    projector = StatusProjector(session_factory, events)
    context = StageContext(
        projector=projector,
        queue=queue,
        provider=provider or build_provider(),
        artifact_store=artifact_store or build_artifact_store(),
        scorer=scorer or build_scorer(),
        http_client=httpx.AsyncClient(timeout=httpx.Timeout(120.0, connect=10.0)),
        poll_interval=get_poll_interval_seconds(),
        max_poll_iterations=get_max_poll_iterations(),
    )
    register_stages(queue, context)

    log.info("pipeline_built", role=role, backend=backend, provider=type(context.provider).__name__)
    return Pipeline(
        engine=engine,
        session_factory=session_factory,
        queue=queue,
        projector=projector,
        jobs=JobService(session_factory, projector, queue),
        context=context,
        backend=backend,
        hub=hub,
        tokens=tokens,
        relay=relay,
        pg_pool=pg_pool,
        owns_pool=owns_pool,
    )
