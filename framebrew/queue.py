"""Stage queues for the generation pipeline.

The pipeline runs as four chained stages (generation → polling → download →
scoring). Each stage registers one handler and one failure path with a
``StageQueue``; the queue owns retry accounting, backoff and lifecycle signals
so both implementations behave the same way:

    - PgQueuerStageQueue: durable, PostgreSQL-backed (PgQueuer) with a
      per-stage ``concurrency_limit``. Used by ``python -m framebrew.worker``.
    - LocalStageQueue (framebrew.local_scheduler): in-process asyncio tasks,
      used when no PostgreSQL broker is configured.

Retry Policy (per stage):
    | Stage      | Concurrency | Attempts | Backoff               |
    |------------|-------------|----------|-----------------------|
    | generation | 5           | 3        | exponential, 30s base |
    | polling    | 3           | 50       | fixed, 10s            |
    | download   | 3           | 3        | exponential, 15s base |
    | scoring    | 3           | 2        | fixed, 10s            |

    A failed attempt is re-enqueued with ``attempt + 1`` after the backoff
    delay. Terminal errors (``is_retriable(error) is False``) and exhausted
    attempts invoke the stage's failure path exactly once.

Signals:
    enqueued, completed, failed, stalled, emitted to listeners registered with
    ``StageQueue.on()``.

Usage:
    from framebrew.queue import initialize_pgqueuer, PgQueuerStageQueue

    pgq, pool = await initialize_pgqueuer(dsn)
    queue = PgQueuerStageQueue(pool)
    queue.register(StageName.POLLING, handle_polling, on_polling_failure)
    queue.bind(pgq)
    await pgq.run()
"""

import asyncio
import enum
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Literal

import asyncpg
from pgqueuer import PgQueuer
from pgqueuer.db import AsyncpgPoolDriver
from pgqueuer.models import Job
from pgqueuer.qm import QueueManager
from pgqueuer.queries import Queries

from framebrew.config import get_stage_concurrency
from framebrew.exceptions import is_retriable
from framebrew.schemas.payloads import (
    DownloadPayload,
    GenerationPayload,
    PollingPayload,
    ScoringPayload,
    StagePayload,
)
from framebrew.utils.logging import get_logger

log = get_logger(__name__)

# Default PgQueuer job table
PGQUEUER_TABLE = "pgqueuer"


class StageName(str, enum.Enum):
    GENERATION = "generation"
    POLLING = "polling"
    DOWNLOAD = "download"
    SCORING = "scoring"


class QueueSignal(str, enum.Enum):
    ENQUEUED = "enqueued"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"


@dataclass(frozen=True)
class StagePolicy:
    """Concurrency and retry policy for one stage.

    Attributes:
        concurrency: Maximum handlers running at once (durable queue only).
        max_attempts: Attempts before the failure path runs.
        backoff: "exponential" doubles ``delay_seconds`` per attempt, "fixed" doesn't.
        delay_seconds: Base delay between attempts.
        stall_after: Seconds a handler may run before a ``stalled`` signal.
    """

    concurrency: int
    max_attempts: int
    backoff: Literal["exponential", "fixed"]
    delay_seconds: float
    stall_after: float | None = None

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based).

        Example:
            >>> StagePolicy(5, 3, "exponential", 30).backoff_delay(2)
            60.0
        """
        if self.backoff == "exponential":
            return float(self.delay_seconds * 2 ** (attempt - 1))
        return float(self.delay_seconds)


STAGE_POLICIES: dict[StageName, StagePolicy] = {
    StageName.GENERATION: StagePolicy(5, 3, "exponential", 30, stall_after=300),
    # One poll invocation holds its slot for the whole render
    StageName.POLLING: StagePolicy(3, 50, "fixed", 10, stall_after=900),
    StageName.DOWNLOAD: StagePolicy(3, 3, "exponential", 15, stall_after=300),
    StageName.SCORING: StagePolicy(3, 2, "fixed", 10, stall_after=300),
}

PAYLOAD_TYPES: dict[StageName, type[StagePayload]] = {
    StageName.GENERATION: GenerationPayload,
    StageName.POLLING: PollingPayload,
    StageName.DOWNLOAD: DownloadPayload,
    StageName.SCORING: ScoringPayload,
}


def build_stage_policies() -> dict[StageName, StagePolicy]:
    """Return the stage policies with concurrency overrides from the environment."""
    policies = {}
    for stage, policy in STAGE_POLICIES.items():
        policies[stage] = StagePolicy(
            concurrency=get_stage_concurrency(stage.value),
            max_attempts=policy.max_attempts,
            backoff=policy.backoff,
            delay_seconds=policy.delay_seconds,
            stall_after=policy.stall_after,
        )
    return policies


StageHandler = Callable[[StagePayload], Awaitable[None]]
FailureHandler = Callable[[StagePayload, BaseException], Awaitable[None]]


@dataclass
class QueueEvent:
    signal: QueueSignal
    stage: StageName
    payload: StagePayload
    error: BaseException | None = None


QueueListener = Callable[[QueueEvent], None]


@dataclass
class StageRegistration:
    handler: StageHandler
    on_failure: FailureHandler


@dataclass
class StageStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "retried": self.retried,
        }


class StageQueue(ABC):
    """Shared stage contract: registration, retry accounting and signals.

    Subclasses only decide how a payload is scheduled (``_schedule``) and
    how waiting payloads are cancelled (``cancel``). Both call
    ``_execute`` to run a handler, so retry and failure semantics are
    identical across implementations.
    """

    def __init__(self, policies: dict[StageName, StagePolicy] | None = None) -> None:
        self.policies = policies or dict(STAGE_POLICIES)
        self._stages: dict[StageName, StageRegistration] = {}
        self._listeners: dict[QueueSignal, list[QueueListener]] = defaultdict(list)
        self._stats = {stage: StageStats() for stage in StageName}

    def register(self, stage: StageName, handler: StageHandler, on_failure: FailureHandler) -> None:
        """Register the handler and failure path for a stage."""
        self._stages[stage] = StageRegistration(handler=handler, on_failure=on_failure)
        log.info("stage_registered", stage=stage.value)

    def on(self, signal: QueueSignal, listener: QueueListener) -> None:
        """Subscribe a listener to a lifecycle signal."""
        self._listeners[signal].append(listener)

    def _emit(self, signal: QueueSignal, stage: StageName, payload: StagePayload,
              error: BaseException | None = None) -> None:
        event = QueueEvent(signal=signal, stage=stage, payload=payload, error=error)
        for listener in self._listeners[signal]:
            try:
                listener(event)
            except Exception as e:
                log.error(
                    "queue_listener_error",
                    signal=signal.value,
                    stage=stage.value,
                    error=str(e),
                    exc_info=True,
                )

    async def enqueue(self, stage: StageName, payload: StagePayload, delay: float = 0.0) -> None:
        """Schedule ``payload`` on ``stage`` after ``delay`` seconds."""
        if stage not in self._stages:
            raise ValueError(f"No handler registered for stage: {stage.value}")

        await self._schedule(stage, payload, delay)
        self._stats[stage].waiting += 1

        log.info(
            "stage_enqueued",
            stage=stage.value,
            job_id=payload.job_id,
            video_id=payload.video_id,
            attempt=payload.attempt,
            delay_seconds=delay,
        )
        self._emit(QueueSignal.ENQUEUED, stage, payload)

    @abstractmethod
    async def _schedule(self, stage: StageName, payload: StagePayload, delay: float) -> None:
        """Hand the payload to the underlying scheduler."""

    @abstractmethod
    async def cancel(self, job_id: str) -> int:
        """Remove waiting payloads for ``job_id``. Returns how many were removed."""

    async def start(self) -> None:
        """Start background machinery, if any."""

    async def stop(self) -> None:
        """Stop background machinery, if any."""

    async def stats(self) -> dict[str, dict[str, int]]:
        """Per-stage waiting/active/completed/failed/retried counters."""
        return {stage.value: stats.as_dict() for stage, stats in self._stats.items()}

    async def _execute(self, stage: StageName, payload: StagePayload) -> None:
        """Run one attempt of a stage handler and apply the retry policy."""
        registration = self._stages[stage]
        policy = self.policies[stage]
        stats = self._stats[stage]
        stats.waiting = max(0, stats.waiting - 1)
        stats.active += 1

        stall_timer = None
        if policy.stall_after:
            loop = asyncio.get_running_loop()
            stall_timer = loop.call_later(policy.stall_after, self._mark_stalled, stage, payload)

        try:
            await registration.handler(payload)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            await self._handle_failure(stage, payload, error)
        else:
            stats.completed += 1
            log.info(
                "stage_completed",
                stage=stage.value,
                job_id=payload.job_id,
                video_id=payload.video_id,
                attempt=payload.attempt,
            )
            self._emit(QueueSignal.COMPLETED, stage, payload)
        finally:
            stats.active -= 1
            if stall_timer is not None:
                stall_timer.cancel()

    def _mark_stalled(self, stage: StageName, payload: StagePayload) -> None:
        log.warning(
            "stage_stalled",
            stage=stage.value,
            job_id=payload.job_id,
            attempt=payload.attempt,
            stall_after=self.policies[stage].stall_after,
        )
        self._emit(QueueSignal.STALLED, stage, payload)

    async def _handle_failure(
        self, stage: StageName, payload: StagePayload, error: Exception
    ) -> None:
        policy = self.policies[stage]
        retriable = is_retriable(error)

        if retriable and payload.attempt < policy.max_attempts:
            delay = policy.backoff_delay(payload.attempt)
            try:
                await self.enqueue(stage, payload.next_attempt(), delay=delay)
            except Exception as e:
                # The retry is lost; the failure path must still run
                log.error(
                    "stage_retry_enqueue_failed",
                    stage=stage.value,
                    job_id=payload.job_id,
                    attempt=payload.attempt,
                    error=str(e),
                    exc_info=True,
                )
            else:
                self._stats[stage].retried += 1
                log.warning(
                    "stage_retry_scheduled",
                    stage=stage.value,
                    job_id=payload.job_id,
                    attempt=payload.attempt,
                    max_attempts=policy.max_attempts,
                    delay_seconds=delay,
                    error=str(error),
                    error_type=type(error).__name__,
                )
                return

        self._stats[stage].failed += 1
        log.error(
            "stage_failed",
            stage=stage.value,
            job_id=payload.job_id,
            video_id=payload.video_id,
            attempt=payload.attempt,
            retriable=retriable,
            error=str(error),
            error_type=type(error).__name__,
        )
        self._emit(QueueSignal.FAILED, stage, payload, error)

        try:
            await self._stages[stage].on_failure(payload, error)
        except Exception as e:
            log.error(
                "stage_failure_path_error",
                stage=stage.value,
                job_id=payload.job_id,
                error=str(e),
                exc_info=True,
            )


class PgQueuerStageQueue(StageQueue):
    """Durable stage queue on PgQueuer.

    Each stage becomes a PgQueuer entrypoint named after the stage with
    ``concurrency_limit`` from its policy. Payloads are stored as JSON bytes;
    retries are new PgQueuer jobs with ``execute_after`` set to the backoff
    delay, so a crashed worker never loses a scheduled retry.

    Note:
        ``concurrency_limit`` is enforced per worker process. Running N worker
        processes multiplies the effective ceiling by N.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        policies: dict[StageName, StagePolicy] | None = None,
    ) -> None:
        super().__init__(policies)
        self.pool = pool
        self.queries = Queries(AsyncpgPoolDriver(pool))

    async def _schedule(self, stage: StageName, payload: StagePayload, delay: float) -> None:
        await self.queries.enqueue(
            stage.value,
            payload.to_bytes(),
            execute_after=timedelta(seconds=delay),
        )

    def bind(self, pgq: PgQueuer) -> None:
        """Register one PgQueuer entrypoint per registered stage."""
        for stage in self._stages:
            self._bind_stage(pgq, stage)

    def _bind_stage(self, pgq: PgQueuer, stage: StageName) -> None:
        payload_type = PAYLOAD_TYPES[stage]
        policy = self.policies[stage]

        @pgq.entrypoint(stage.value, concurrency_limit=policy.concurrency)
        async def handle(job: Job) -> None:
            if job.payload is None:
                raise ValueError("Job payload is None")
            payload = payload_type.model_validate_json(job.payload)
            log.info(
                "stage_claimed",
                stage=stage.value,
                job_id=payload.job_id,
                attempt=payload.attempt,
                pgqueuer_job_id=str(job.id),
            )
            await self._execute(stage, payload)

        log.info("stage_entrypoint_bound", stage=stage.value, concurrency_limit=policy.concurrency)

    async def cancel(self, job_id: str) -> int:
        """Delete queued (not yet picked) PgQueuer jobs whose payload names ``job_id``."""
        rows = await self.pool.fetch(
            f"DELETE FROM {PGQUEUER_TABLE} "
            "WHERE status = 'queued' "
            "AND convert_from(payload, 'UTF8')::jsonb ->> 'job_id' = $1 "
            "RETURNING id",
            job_id,
        )
        removed = len(rows)
        log.info("queued_stage_jobs_cancelled", job_id=job_id, removed=removed)
        return removed

    async def stats(self) -> dict[str, dict[str, int]]:
        """Per-stage counters with ``waiting`` taken from the PgQueuer table."""
        result = await super().stats()
        for stage in StageName:
            result[stage.value]["waiting"] = 0
        for row in await self.queries.queue_size():
            if row.entrypoint in result and row.status == "queued":
                result[row.entrypoint]["waiting"] += row.count
        return result


async def initialize_pgqueuer(dsn: str) -> tuple[PgQueuer, asyncpg.Pool]:
    """Initialize PgQueuer on a dedicated asyncpg pool.

    Creates the pool, installs the PgQueuer schema if it does not exist yet,
    and returns a PgQueuer instance ready for ``PgQueuerStageQueue.bind``.

    Claim Timeout:
        ``command_timeout`` of 30 minutes releases claims held by crashed
        workers.

    Args:
        dsn: Plain PostgreSQL DSN (postgresql://...).

    Returns:
        tuple[PgQueuer, asyncpg.Pool]

    Raises:
        asyncpg.PostgresError: If database connection fails
    """
    log.info("initializing_asyncpg_pool", min_size=2, max_size=10, timeout=30)

    pool = await asyncpg.create_pool(
        dsn=dsn,
        min_size=2,
        max_size=10,
        timeout=30,
        command_timeout=1800,
    )

    qm = QueueManager(AsyncpgPoolDriver(pool))
    try:
        await qm.queries.install()
        log.info("pgqueuer_schema_installed")
    except asyncpg.DuplicateObjectError:
        log.info("pgqueuer_schema_already_installed")

    pgq = PgQueuer(AsyncpgPoolDriver(pool))
    log.info("pgqueuer_initialized")
    return pgq, pool
