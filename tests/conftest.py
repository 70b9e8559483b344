"""Shared pytest fixtures for the generation pipeline tests.

This module provides an in-memory SQLite database, a recording event sink,
scripted provider and scorer doubles, a zero-delay local stage queue, and a
fully wired ``StageContext`` so stage workers can run without any network.
Route tests get a started pipeline and an ASGI client bound to the app.
"""

from unittest.mock import AsyncMock, Mock

import httpx
import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from framebrew.clients.artifact_store import LocalArtifactStore
from framebrew.database import create_test_engine
from framebrew.entrypoints import register_stages
from framebrew.local_scheduler import LocalStageQueue
from framebrew.main import app
from framebrew.models import Base
from framebrew.pipeline import ROLE_API, build_pipeline
from framebrew.queue import STAGE_POLICIES, StagePolicy
from framebrew.services.status_projector import StatusProjector
from framebrew.utils.tokens import StreamTokenService
from framebrew.workers import StageContext
from tests.support.doubles import FixedScorer, RecordingEventSink, ScriptedProvider, no_sleep


@pytest.fixture
def valid_fernet_key() -> str:
    """Generate a valid Fernet key for stream tokens."""
    return Fernet.generate_key().decode()


@pytest.fixture
def token_service(valid_fernet_key: str) -> StreamTokenService:
    return StreamTokenService(valid_fernet_key, ttl_seconds=3600)


@pytest_asyncio.fixture
async def async_engine():
    """In-memory SQLite engine with all tables created."""
    engine, _ = create_test_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    return async_sessionmaker(bind=async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def event_sink() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def projector(session_factory, event_sink) -> StatusProjector:
    return StatusProjector(session_factory, event_sink)


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def scorer() -> FixedScorer:
    return FixedScorer()


@pytest.fixture
def artifact_store(tmp_path) -> LocalArtifactStore:
    return LocalArtifactStore(tmp_path / "storage", "http://testserver")


@pytest.fixture
def fast_policies() -> dict:
    """Stage policies with the production attempt counts and no delays."""
    return {
        stage: StagePolicy(
            concurrency=policy.concurrency,
            max_attempts=policy.max_attempts,
            backoff=policy.backoff,
            delay_seconds=0,
        )
        for stage, policy in STAGE_POLICIES.items()
    }


@pytest_asyncio.fixture
async def local_queue(fast_policies):
    queue = LocalStageQueue(fast_policies, start_delay=0, sleep=no_sleep)
    yield queue
    await queue.stop()


@pytest.fixture
def direct_url_bytes() -> dict[str, bytes]:
    """URL → body map served by the stage context's HTTP client."""
    return {}


@pytest_asyncio.fixture
async def http_client(direct_url_bytes):
    def handler(request: httpx.Request) -> httpx.Response:
        body = direct_url_bytes.get(str(request.url))
        if body is None:
            return httpx.Response(404)
        return httpx.Response(200, content=body)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    yield client
    await client.aclose()


@pytest.fixture
def stage_context(projector, local_queue, provider, artifact_store, scorer, http_client):
    """Stage dependencies wired to the doubles, with every stage registered."""
    ctx = StageContext(
        projector=projector,
        queue=local_queue,
        provider=provider,
        artifact_store=artifact_store,
        scorer=scorer,
        http_client=http_client,
        poll_interval=0,
        max_poll_iterations=60,
        sleep=no_sleep,
    )
    register_stages(local_queue, ctx)
    return ctx


@pytest.fixture
def recording_queue() -> Mock:
    """Queue double that records enqueues without running any stage."""
    queue = Mock()
    queue.enqueue = AsyncMock()
    queue.cancel = AsyncMock(return_value=0)
    return queue


@pytest.fixture
def worker_context(projector, recording_queue, provider, artifact_store, scorer, http_client):
    """Stage dependencies for testing one worker in isolation."""
    return StageContext(
        projector=projector,
        queue=recording_queue,
        provider=provider,
        artifact_store=artifact_store,
        scorer=scorer,
        http_client=http_client,
        poll_interval=0,
        max_poll_iterations=60,
        sleep=no_sleep,
    )


@pytest_asyncio.fixture
async def api_pipeline(tmp_path, token_service, provider, scorer, artifact_store):
    """Started local-queue pipeline on a SQLite file, as the API lifespan builds it."""
    pipeline = await build_pipeline(
        role=ROLE_API,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        queue_backend="local",
        provider=provider,
        scorer=scorer,
        artifact_store=artifact_store,
        tokens=token_service,
    )
    pipeline.queue.start_delay = 0
    pipeline.context.poll_interval = 0
    await pipeline.start()
    yield pipeline
    await pipeline.stop()


@pytest_asyncio.fixture
async def api_client(api_pipeline):
    """HTTP client bound to the FastAPI app (the lifespan is not run)."""
    app.state.pipeline = api_pipeline
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
    app.state.pipeline = None


@pytest.fixture
def auth_headers(token_service) -> dict[str, str]:
    return {"Authorization": f"Bearer {token_service.issue('u1', 'org1')}"}
