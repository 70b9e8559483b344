"""Job service: the CRUD-facing entry into the generation pipeline.

Creates Video and GenerationJob rows for submissions and re-renders, and hands
them to the Generation Stage. Control operations (cancel, retry, re-score)
validate ownership and status here and delegate every status write to
``StatusProjector``.

Transaction Pattern:
    Rows are created in one short transaction; the commit happens before the
    payload is enqueued, so a stage never reads a job that does not exist yet.
    If the enqueue itself fails, the new job is marked FAILED and the error is
    re-raised.

Organization Scoping:
    Every read filters by ``org_id``. A job or video owned by another
    organization is reported as not found.
"""

import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from framebrew.exceptions import JobNotFoundError, JobStateConflictError
from framebrew.models import GenerationJob, JobStatus, SourceType, Video
from framebrew.queue import StageName, StageQueue
from framebrew.schemas.generation import GenerationRequest
from framebrew.schemas.payloads import GenerationPayload, ScoringPayload
from framebrew.services.status_projector import StatusProjector
from framebrew.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 200


def _parse_id(value: str | uuid.UUID, kind: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as e:
        raise JobNotFoundError(f"{kind} not found: {value}", job_id=str(value)) from e


class JobService:
    """Submit, cancel, retry, re-render and re-score generation jobs.

    Args:
        session_factory: Async session factory (expire_on_commit=False).
        projector: Single writer of job and video status.
        queue: Stage queue the Generation and Scoring stages are registered on.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        projector: StatusProjector,
        queue: StageQueue,
    ) -> None:
        self.session_factory = session_factory
        self.projector = projector
        self.queue = queue

    async def submit(self, org_id: str, request: GenerationRequest) -> tuple[GenerationJob, Video]:
        """Create a QUEUED video and job and enqueue the Generation Stage.

        Render rules are not checked here: an invalid request still creates a
        job, which the Generation Stage then fails without calling the
        provider.
        """
        async with self.session_factory() as db, db.begin():
            video = Video(
                org_id=org_id,
                project_id=request.project_id,
                title=request.title or request.prompt[:80] or "Untitled video",
                status=JobStatus.QUEUED,
                source_type=SourceType.GENERATED,
                duration_sec=request.duration_sec,
                aspect=request.aspect_ratio,
                version=1,
                urls={},
                video_metadata={"captions": request.captions, "watermark": request.watermark},
            )
            db.add(video)
            await db.flush()

            job = GenerationJob(
                video_id=video.id,
                prompt=request.prompt,
                style_preset=request.style_preset,
                negative_prompt=request.negative_prompt,
                aspect_ratio=request.aspect_ratio,
                resolution=request.resolution,
                model=request.model,
                duration_sec=request.duration_sec,
                status=JobStatus.QUEUED,
                progress=0,
            )
            db.add(job)
            await db.flush()

        log.info("generation_submitted", job_id=str(job.id), video_id=str(video.id), org_id=org_id)
        await self.projector.announce_created(job, org_id)

        image = request.image.model_dump() if request.image is not None else None
        await self._enqueue_generation(job, org_id, image=image)
        return job, video

    async def _enqueue_generation(
        self, job: GenerationJob, org_id: str, image: dict[str, Any] | None = None
    ) -> None:
        payload = GenerationPayload(
            job_id=str(job.id),
            video_id=str(job.video_id),
            org_id=org_id,
            run_number=job.run_number,
            image=image,
        )
        try:
            await self.queue.enqueue(StageName.GENERATION, payload)
        except Exception as e:
            log.error("generation_enqueue_failed", job_id=payload.job_id, error=str(e), exc_info=True)
            await self.projector.fail(
                payload.job_id,
                payload.video_id,
                org_id,
                f"Failed to enqueue job: {e}",
                run_number=payload.run_number,
            )
            raise

    async def get_job(self, job_id: str | uuid.UUID, org_id: str) -> GenerationJob:
        """Fetch a job owned by ``org_id``.

        Raises:
            JobNotFoundError: Unknown id or another organization's job.
        """
        key = _parse_id(job_id, "Job")
        async with self.session_factory() as db:
            result = await db.execute(
                select(GenerationJob)
                .join(Video, GenerationJob.video_id == Video.id)
                .where(GenerationJob.id == key, Video.org_id == org_id)
            )
            job = result.scalar_one_or_none()
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}", job_id=str(job_id))
        return job

    async def get_video(self, video_id: str | uuid.UUID, org_id: str) -> Video:
        """Fetch a video owned by ``org_id``.

        Raises:
            JobNotFoundError: Unknown id or another organization's video.
        """
        key = _parse_id(video_id, "Video")
        async with self.session_factory() as db:
            result = await db.execute(select(Video).where(Video.id == key, Video.org_id == org_id))
            video = result.scalar_one_or_none()
        if video is None:
            raise JobNotFoundError(f"Video not found: {video_id}")
        return video

    async def list_jobs(
        self,
        org_id: str,
        status: JobStatus | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[GenerationJob]:
        """List an organization's jobs, newest first."""
        limit = max(1, min(limit, MAX_LIST_LIMIT))
        query = (
            select(GenerationJob)
            .join(Video, GenerationJob.video_id == Video.id)
            .where(Video.org_id == org_id)
            .order_by(GenerationJob.created_at.desc())
            .limit(limit)
        )
        if status is not None:
            query = query.where(GenerationJob.status == status)

        async with self.session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def cancel(self, job_id: str | uuid.UUID, org_id: str) -> GenerationJob:
        """Cancel a QUEUED or RUNNING job and drop its waiting stage payloads.

        Raises:
            JobNotFoundError: Unknown job.
            JobStateConflictError: Job is past RUNNING or already terminal.
        """
        job = await self.get_job(job_id, org_id)
        job = await self.projector.cancel(job.id, org_id)
        removed = await self.queue.cancel(str(job.id))
        log.info("generation_cancelled", job_id=str(job.id), removed_payloads=removed)
        return job

    async def retry(self, job_id: str | uuid.UUID, org_id: str) -> GenerationJob:
        """Reset a FAILED job to QUEUED and enqueue it again.

        The reference image of the first attempt is not kept, so a retry
        renders from the prompt alone.

        Raises:
            JobNotFoundError: Unknown job.
            JobStateConflictError: Job is not FAILED.
        """
        job = await self.get_job(job_id, org_id)
        job = await self.projector.reset_for_retry(job.id, org_id)
        await self._enqueue_generation(job, org_id)
        log.info("generation_retried", job_id=str(job.id))
        return job

    async def rerender(self, video_id: str | uuid.UUID, org_id: str) -> tuple[GenerationJob, Video]:
        """Render a generated video again as a new version.

        Parameters are copied from the video's latest job that did not fail.
        The source video is never modified.

        Raises:
            JobNotFoundError: Unknown video.
            JobStateConflictError: Video was uploaded, or has no usable job.
        """
        source = await self.get_video(video_id, org_id)
        if source.source_type != SourceType.GENERATED:
            raise JobStateConflictError(
                "Only generated videos can be rerendered", status=source.status
            )

        async with self.session_factory() as db, db.begin():
            result = await db.execute(
                select(GenerationJob)
                .where(
                    GenerationJob.video_id == source.id,
                    GenerationJob.status != JobStatus.FAILED,
                )
                .order_by(GenerationJob.created_at.desc())
                .limit(1)
            )
            last_job = result.scalar_one_or_none()
            if last_job is None:
                raise JobStateConflictError(
                    "No generation data found for this video", status=source.status
                )

            video = Video(
                org_id=source.org_id,
                project_id=source.project_id,
                title=source.title,
                status=JobStatus.QUEUED,
                source_type=SourceType.GENERATED,
                duration_sec=source.duration_sec,
                aspect=source.aspect,
                version=source.version + 1,
                urls={},
                video_metadata={"rerender_of": str(source.id)},
            )
            db.add(video)
            await db.flush()

            job = GenerationJob(
                video_id=video.id,
                status=JobStatus.QUEUED,
                progress=0,
                **last_job.generation_params(),
            )
            db.add(job)
            await db.flush()

        log.info(
            "generation_rerendered",
            source_video_id=str(source.id),
            video_id=str(video.id),
            job_id=str(job.id),
            version=video.version,
        )
        await self.projector.announce_created(job, org_id)
        await self._enqueue_generation(job, org_id)
        return job, video

    async def rescore(self, video_id: str | uuid.UUID, org_id: str) -> Video:
        """Score a READY video again.

        Raises:
            JobNotFoundError: Unknown video.
            JobStateConflictError: Video is not READY or has no stored MP4.
        """
        video = await self.get_video(video_id, org_id)
        if video.status != JobStatus.READY:
            raise JobStateConflictError("Video must be ready to rescore", status=video.status)
        artifact_url = (video.urls or {}).get("mp4")
        if not artifact_url:
            raise JobStateConflictError("Video has no stored artifact to score", status=video.status)

        await self.projector.set_video_status(
            str(video.id), org_id, JobStatus.SCORING, message="Re-scoring video"
        )
        await self.queue.enqueue(
            StageName.SCORING,
            ScoringPayload(
                job_id=None,
                video_id=str(video.id),
                org_id=org_id,
                artifact_url=artifact_url,
            ),
        )
        log.info("video_rescore_started", video_id=str(video.id))
        return await self.get_video(video.id, org_id)
