"""Configuration management for the generation pipeline.

This module provides centralized configuration loading from environment variables.
Required values are cached after the first read; tunables are read on each call
so tests can override them with ``monkeypatch.setenv``.

Environment Variables:
    DATABASE_URL: PostgreSQL connection URL (required for the durable queue)
    QUEUE_BACKEND: "durable" (PgQueuer) or "local" (in-process scheduler)
    GEMINI_API_KEY: Google Gemini API key for Veo renders (optional)
    ARTIFACT_BACKEND: "gcs" or "local"
    STREAM_TOKEN_KEY: Fernet key used to sign event-stream tokens

Usage:
    from framebrew.config import get_queue_backend, get_stage_concurrency

    backend = get_queue_backend()  # "durable" or "local"
    limit = get_stage_concurrency("polling")  # 3 unless POLLING_CONCURRENCY is set
"""

import os
from functools import lru_cache

import structlog

log = structlog.get_logger(__name__)

QUEUE_BACKEND_DURABLE = "durable"
QUEUE_BACKEND_LOCAL = "local"

ARTIFACT_BACKEND_GCS = "gcs"
ARTIFACT_BACKEND_LOCAL = "local"

# Worker pool size per stage
DEFAULT_STAGE_CONCURRENCY = {
    "generation": 5,
    "polling": 3,
    "download": 3,
    "scoring": 3,
}

DEFAULT_POLL_INTERVAL_SECONDS = 10
DEFAULT_MAX_POLL_ITERATIONS = 60
DEFAULT_SSE_HEARTBEAT_SECONDS = 15
DEFAULT_SSE_STALE_AFTER_SECONDS = 30
DEFAULT_STREAM_TOKEN_TTL_SECONDS = 3600
DEFAULT_LOCAL_QUEUE_START_DELAY = 1.0
DEFAULT_PROVIDER_MAX_RATE = 10  # requests per minute

DEFAULT_VEO_MODELS = {
    "stable": "veo-3.0-generate-001",
    "fast": "veo-3.0-fast-generate-001",
}


def _read_int(name: str, default: int, minimum: int, maximum: int) -> int:
    """Read an integer env var, clamped to [minimum, maximum].

    Invalid values fall back to the default with a warning.
    """
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return max(minimum, min(maximum, int(raw)))
    except ValueError:
        log.warning("invalid_integer_setting", setting=name, value=raw, using_default=default)
        return default


def _read_float(name: str, default: float, minimum: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return max(minimum, float(raw))
    except ValueError:
        log.warning("invalid_float_setting", setting=name, value=raw, using_default=default)
        return default


@lru_cache
def get_database_url() -> str:
    """Get database URL from environment.

    Converts postgresql:// to postgresql+asyncpg:// for async SQLAlchemy.

    Environment Variable:
        DATABASE_URL: PostgreSQL (or SQLite for local development) connection URL

    Returns:
        Database URL with an async driver.

    Raises:
        ValueError: If DATABASE_URL not set.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")

    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return url


def get_asyncpg_dsn() -> str:
    """Get the plain asyncpg DSN used by the PgQueuer pool.

    asyncpg does not understand the SQLAlchemy "+asyncpg" driver suffix.

    Raises:
        ValueError: If DATABASE_URL not set.
    """
    return get_database_url().replace("postgresql+asyncpg://", "postgresql://", 1)


def get_queue_backend() -> str:
    """Get which stage queue implementation to run.

    Environment Variable:
        QUEUE_BACKEND: "durable" or "local". When unset, the durable queue is
        used if DATABASE_URL points at PostgreSQL, otherwise the local scheduler.

    Returns:
        QUEUE_BACKEND_DURABLE or QUEUE_BACKEND_LOCAL.
    """
    backend = os.getenv("QUEUE_BACKEND", "").strip().lower()
    if backend in (QUEUE_BACKEND_DURABLE, QUEUE_BACKEND_LOCAL):
        return backend
    if backend:
        log.warning("invalid_queue_backend", value=backend, using_default="auto")

    url = os.getenv("DATABASE_URL", "")
    if url.startswith(("postgresql://", "postgresql+asyncpg://", "postgres://")):
        return QUEUE_BACKEND_DURABLE
    return QUEUE_BACKEND_LOCAL


def get_stage_concurrency(stage: str) -> int:
    """Get the worker pool size for a pipeline stage.

    Environment Variable:
        <STAGE>_CONCURRENCY: e.g. POLLING_CONCURRENCY=6 (1-100)

    Note:
        The polling pool bounds how many renders are in flight at once, since
        one poll invocation holds a slot for the whole render.
    """
    default = DEFAULT_STAGE_CONCURRENCY[stage]
    return _read_int(f"{stage.upper()}_CONCURRENCY", default, 1, 100)


def get_poll_interval_seconds() -> float:
    """Get the delay between provider status queries.

    Environment Variable:
        POLL_INTERVAL_SECONDS: Seconds between polls (default: 10)
    """
    return _read_float("POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS, 0.0)


def get_max_poll_iterations() -> int:
    """Get the polling budget per render.

    Environment Variable:
        MAX_POLL_ITERATIONS: Status queries before a render times out (default: 60)
    """
    return _read_int("MAX_POLL_ITERATIONS", DEFAULT_MAX_POLL_ITERATIONS, 1, 1000)


def get_gemini_api_key() -> str | None:
    """Get Gemini API key for the Veo provider.

    Returns:
        API key string, or None when renders should use the simulated provider.
    """
    return os.getenv("GEMINI_API_KEY") or None


def get_veo_model(tier: str) -> str:
    """Resolve a model tier ("stable" or "fast") to a Veo model name.

    Environment Variables:
        VEO_MODEL_STABLE, VEO_MODEL_FAST: Override the default model names.
    """
    return os.getenv(f"VEO_MODEL_{tier.upper()}", DEFAULT_VEO_MODELS[tier])


def get_provider_max_rate() -> int:
    """Get maximum provider requests per minute per process.

    Environment Variable:
        PROVIDER_MAX_RATE: Requests per minute (default: 10)
    """
    return _read_int("PROVIDER_MAX_RATE", DEFAULT_PROVIDER_MAX_RATE, 1, 10_000)


def get_artifact_backend() -> str:
    """Get which artifact store to use.

    Environment Variable:
        ARTIFACT_BACKEND: "gcs" or "local". Defaults to "gcs" when
        GCS_BUCKET_NAME is set, otherwise "local".
    """
    backend = os.getenv("ARTIFACT_BACKEND", "").strip().lower()
    if backend in (ARTIFACT_BACKEND_GCS, ARTIFACT_BACKEND_LOCAL):
        return backend
    return ARTIFACT_BACKEND_GCS if os.getenv("GCS_BUCKET_NAME") else ARTIFACT_BACKEND_LOCAL


def get_gcs_bucket_name() -> str | None:
    """Get the Google Cloud Storage bucket for artifacts."""
    return os.getenv("GCS_BUCKET_NAME") or None


def get_local_storage_root() -> str:
    """Get the directory used by the local artifact store.

    Environment Variable:
        LOCAL_STORAGE_ROOT: Base path for stored artifacts (default: "./storage")
    """
    return os.getenv("LOCAL_STORAGE_ROOT", "./storage")


def get_public_base_url() -> str:
    """Get the public base URL used to build local artifact URLs.

    Environment Variable:
        PUBLIC_BASE_URL: e.g. "https://api.example.com" (default: "http://localhost:8000")
    """
    return os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")


def get_scorer_url() -> str | None:
    """Get the quality scorer service URL, or None to use the simulated scorer."""
    return os.getenv("SCORER_URL") or None


@lru_cache
def get_stream_token_key() -> str:
    """Get the Fernet key used to issue and verify stream tokens.

    Environment Variable:
        STREAM_TOKEN_KEY: Base64-encoded Fernet key

    Raises:
        ValueError: If STREAM_TOKEN_KEY not set.
    """
    key = os.getenv("STREAM_TOKEN_KEY")
    if not key:
        raise ValueError("STREAM_TOKEN_KEY environment variable is required")
    return key


def get_stream_token_ttl() -> int:
    """Get stream token lifetime in seconds (default: 3600)."""
    return _read_int("STREAM_TOKEN_TTL_SECONDS", DEFAULT_STREAM_TOKEN_TTL_SECONDS, 60, 86_400)


def get_sse_heartbeat_interval() -> float:
    """Get seconds between hub heartbeats (default: 15)."""
    return _read_float("SSE_HEARTBEAT_SECONDS", DEFAULT_SSE_HEARTBEAT_SECONDS, 1.0)


def get_sse_stale_after() -> float:
    """Get seconds without an acknowledged delivery before a client is pruned (default: 30)."""
    return _read_float("SSE_STALE_AFTER_SECONDS", DEFAULT_SSE_STALE_AFTER_SECONDS, 1.0)


def get_local_queue_start_delay() -> float:
    """Get the delay before the local scheduler starts a stage (default: 1.0s)."""
    return _read_float("LOCAL_QUEUE_START_DELAY", DEFAULT_LOCAL_QUEUE_START_DELAY, 0.0)
