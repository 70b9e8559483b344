"""Single writer of job and video status.

Every status, progress, handle, URL and score write in the pipeline goes
through ``StatusProjector``. Each method:

    1. Opens one short transaction and updates the GenerationJob and its Video
       together (the video mirrors the job's status).
    2. Commits.
    3. Publishes the matching stream events for the organization.

Guarantees:
    - Writes to a job that is already READY or FAILED are no-ops that return
      False. A stage that was cancelled mid-flight learns it here and stops;
      the job is never resurrected.
    - Writes stamped with an older ``run_number`` (a stage left over from an
      attempt the user has since retried) are no-ops that return False.
    - A transition to a status before the job's current one (a redelivered
      or duplicate payload) is a no-op that returns False.
    - Progress never decreases within an attempt (``max(current, new)``).
    - The operation handle is written at most once per attempt.
    - ``error`` is written only together with FAILED.

Event Sink:
    ``events.publish(org_id, event)``: the NotificationHub itself in a
    single-process deployment, or the PgEventRelay when stages run in worker
    processes.
"""

import uuid
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from framebrew.exceptions import JobNotFoundError, JobStateConflictError
from framebrew.models import (
    CANCELLABLE_STATUSES,
    STAGE_ORDER,
    TERMINAL_STATUSES,
    GenerationJob,
    JobStatus,
    Video,
    utcnow,
)
from framebrew.schemas.events import (
    StreamEvent,
    job_complete_event,
    job_progress_event,
    video_status_event,
)
from framebrew.utils.logging import get_logger

log = get_logger(__name__)

CANCELLED_MESSAGE = "Cancelled by user"


class EventSink(Protocol):
    async def publish(self, org_id: str, event: StreamEvent) -> None: ...


def _uuid(value: str | uuid.UUID) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def _skip_reason(
    job: GenerationJob, run_number: int | None, status: JobStatus | None = None
) -> str | None:
    """Why a stage write must not touch ``job``, or None if it may."""
    if job.status in TERMINAL_STATUSES:
        return "terminal_job"
    if run_number is not None and run_number != job.run_number:
        return "stale_run"
    if status is not None and STAGE_ORDER[status] < STAGE_ORDER[job.status]:
        return "status_behind_job"
    return None


class StatusProjector:
    """Mirror pipeline state into the record store and the event stream.

    Args:
        session_factory: Async session factory (expire_on_commit=False).
        events: Event sink receiving per-organization stream events.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], events: EventSink) -> None:
        self.session_factory = session_factory
        self.events = events

    async def _publish(self, org_id: str, *events: StreamEvent) -> None:
        for event in events:
            try:
                await self.events.publish(org_id, event)
            except Exception as e:
                # Best effort
                log.warning(
                    "status_event_publish_failed",
                    org_id=org_id,
                    event_type=event.type.value,
                    error=str(e),
                )

    @staticmethod
    async def _load(db: AsyncSession, job_id: str | uuid.UUID) -> tuple[GenerationJob, Video]:
        job = await db.get(GenerationJob, _uuid(job_id), with_for_update=True)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}", job_id=str(job_id))
        video = await db.get(Video, job.video_id, with_for_update=True)
        if video is None:
            raise JobNotFoundError(f"Video not found for job: {job_id}", job_id=str(job_id))
        return job, video

    async def load_job(self, job_id: str | uuid.UUID) -> GenerationJob | None:
        """Read a job outside any stage transaction."""
        async with self.session_factory() as db:
            return await db.get(GenerationJob, _uuid(job_id))

    async def transition(
        self,
        job_id: str,
        video_id: str,
        org_id: str,
        status: JobStatus,
        progress: int,
        message: str | None = None,
        *,
        operation_handle: str | None = None,
        urls: dict[str, str] | None = None,
        metadata: dict[str, Any] | None = None,
        run_number: int | None = None,
    ) -> bool:
        """Move a job (and its video) to ``status`` with at least ``progress``.

        Returns:
            True if applied. False if the job is terminal, ``run_number`` is
            not the job's current run, or ``status`` is behind the job.

        Raises:
            JobNotFoundError: Job or video row missing.
            InvalidStateTransitionError: Status skips a stage.
        """
        async with self.session_factory() as db, db.begin():
            job, video = await self._load(db, job_id)
            reason = _skip_reason(job, run_number, status)
            if reason is not None:
                log.info(
                    "transition_ignored",
                    job_id=job_id,
                    reason=reason,
                    current_status=job.status.value,
                    requested_status=status.value,
                    run_number=run_number,
                    current_run_number=job.run_number,
                )
                return False

            if job.status != status:
                job.status = status
            job.progress = max(job.progress, min(100, progress))

            if operation_handle is not None:
                if job.operation_handle is None:
                    job.operation_handle = operation_handle
                elif job.operation_handle != operation_handle:
                    log.warning(
                        "operation_handle_already_set",
                        job_id=job_id,
                        existing=job.operation_handle,
                        ignored=operation_handle,
                    )

            if video.status != status:
                video.status = status
            if urls:
                video.urls = {**(video.urls or {}), **urls}
            video.video_metadata = {
                **(video.video_metadata or {}),
                **(metadata or {}),
                "processing_progress": job.progress,
            }
            applied_progress = job.progress

        log.info(
            "job_transitioned",
            job_id=job_id,
            video_id=video_id,
            status=status.value,
            progress=applied_progress,
        )
        await self._publish(
            org_id,
            video_status_event(video_id, status.value, applied_progress, message),
            job_progress_event(job_id, video_id, status.value, applied_progress, message),
        )
        return True

    async def fail(
        self,
        job_id: str,
        video_id: str,
        org_id: str,
        error: str,
        *,
        run_number: int | None = None,
    ) -> bool:
        """Mark a job FAILED with ``error``.

        No-op if it is already terminal or ``run_number`` is not its current run.
        """
        async with self.session_factory() as db, db.begin():
            job, video = await self._load(db, job_id)
            reason = _skip_reason(job, run_number)
            if reason is not None:
                log.info(
                    "fail_ignored",
                    job_id=job_id,
                    reason=reason,
                    current_status=job.status.value,
                    error=error,
                )
                return False

            job.status = JobStatus.FAILED
            job.error = error or "Unknown error"
            job.completed_at = utcnow()
            if video.status not in TERMINAL_STATUSES:
                video.status = JobStatus.FAILED
            progress = job.progress

        log.error("job_failed", job_id=job_id, video_id=video_id, error=error)
        await self._publish(
            org_id,
            video_status_event(video_id, JobStatus.FAILED.value, progress, error),
            job_progress_event(job_id, video_id, JobStatus.FAILED.value, progress, error),
            job_complete_event(job_id, video_id, success=False, error=error),
        )
        return True

    async def complete(
        self,
        job_id: str,
        video_id: str,
        org_id: str,
        score: dict[str, Any],
        feedback: str | None = None,
        *,
        run_number: int | None = None,
    ) -> bool:
        """Finish a scored job: video READY with its score, job READY at 100."""
        async with self.session_factory() as db, db.begin():
            job, video = await self._load(db, job_id)
            reason = _skip_reason(job, run_number)
            if reason is not None:
                log.info("complete_ignored", job_id=job_id, reason=reason, current_status=job.status.value)
                return False

            job.status = JobStatus.READY
            job.progress = 100
            job.completed_at = utcnow()
            video.score = score
            video.status = JobStatus.READY
            video.video_metadata = {
                **(video.video_metadata or {}),
                "processing_progress": 100,
                "feedback_summary": feedback,
            }

        log.info("job_completed", job_id=job_id, video_id=video_id, overall=score.get("overall"))
        await self._publish(
            org_id,
            video_status_event(video_id, JobStatus.READY.value, 100),
            job_progress_event(job_id, video_id, JobStatus.READY.value, 100),
            job_complete_event(job_id, video_id, success=True),
        )
        return True

    async def complete_without_score(
        self,
        job_id: str,
        video_id: str,
        org_id: str,
        scoring_error: str,
        *,
        run_number: int | None = None,
    ) -> bool:
        """Deliver the video after scoring failed.

        The video becomes READY without a score and the error is kept in its
        metadata. The job stays in SCORING.
        """
        async with self.session_factory() as db, db.begin():
            job, video = await self._load(db, job_id)
            if _skip_reason(job, run_number) is not None:
                return False

            if video.status != JobStatus.READY:
                video.status = JobStatus.READY
            video.video_metadata = {**(video.video_metadata or {}), "scoring_error": scoring_error}
            progress = job.progress

        log.warning(
            "video_ready_without_score",
            job_id=job_id,
            video_id=video_id,
            scoring_error=scoring_error,
        )
        await self._publish(
            org_id,
            video_status_event(video_id, JobStatus.READY.value, progress, "Quality scoring unavailable"),
        )
        return True

    async def set_video_status(
        self,
        video_id: str,
        org_id: str,
        status: JobStatus,
        *,
        score: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        message: str | None = None,
    ) -> None:
        """Update a video that has no active job (re-score)."""
        async with self.session_factory() as db, db.begin():
            video = await db.get(Video, _uuid(video_id), with_for_update=True)
            if video is None:
                raise JobNotFoundError(f"Video not found: {video_id}")
            if video.status != status:
                video.status = status
            if score is not None:
                video.score = score
            if metadata:
                video.video_metadata = {**(video.video_metadata or {}), **metadata}

        log.info("video_status_updated", video_id=video_id, status=status.value)
        await self._publish(org_id, video_status_event(video_id, status.value, message=message))

    async def cancel(self, job_id: str | uuid.UUID, org_id: str) -> GenerationJob:
        """Force a QUEUED or RUNNING job to FAILED("Cancelled by user").

        Raises:
            JobStateConflictError: Job is past RUNNING or already terminal.
        """
        async with self.session_factory() as db, db.begin():
            job, video = await self._load(db, job_id)
            if job.status not in CANCELLABLE_STATUSES:
                raise JobStateConflictError(
                    f"Job cannot be cancelled in status {job.status.value}", status=job.status
                )
            job.status = JobStatus.FAILED
            job.error = CANCELLED_MESSAGE
            job.completed_at = utcnow()
            if video.status not in TERMINAL_STATUSES:
                video.status = JobStatus.FAILED

        job_key, video_key = str(job.id), str(job.video_id)
        log.info("job_cancelled", job_id=job_key, video_id=video_key)
        await self._publish(
            org_id,
            video_status_event(video_key, JobStatus.FAILED.value, job.progress, CANCELLED_MESSAGE),
            job_complete_event(job_key, video_key, success=False, error=CANCELLED_MESSAGE),
        )
        return job

    async def reset_for_retry(self, job_id: str | uuid.UUID, org_id: str) -> GenerationJob:
        """Return a FAILED job to QUEUED with a clean attempt.

        Raises:
            JobStateConflictError: Job is not FAILED.
        """
        async with self.session_factory() as db, db.begin():
            job, video = await self._load(db, job_id)
            if job.status != JobStatus.FAILED:
                raise JobStateConflictError(
                    f"Only failed jobs can be retried (status {job.status.value})", status=job.status
                )
            job.status = JobStatus.QUEUED
            job.progress = 0
            job.error = None
            job.operation_handle = None
            job.completed_at = None
            job.run_number += 1
            if video.status == JobStatus.FAILED:
                video.status = JobStatus.QUEUED

        job_key, video_key = str(job.id), str(job.video_id)
        log.info("job_reset_for_retry", job_id=job_key, video_id=video_key, run_number=job.run_number)
        await self._publish(
            org_id,
            video_status_event(video_key, JobStatus.QUEUED.value, 0),
            job_progress_event(job_key, video_key, JobStatus.QUEUED.value, 0),
        )
        return job

    async def announce_created(self, job: GenerationJob, org_id: str) -> None:
        """Publish the initial QUEUED events for a newly created job."""
        job_key, video_key = str(job.id), str(job.video_id)
        await self._publish(
            org_id,
            video_status_event(video_key, JobStatus.QUEUED.value, 0),
            job_progress_event(job_key, video_key, JobStatus.QUEUED.value, 0),
        )
