"""Generation job routes.

This module provides the job-control API of the generation pipeline:
- POST /api/v1/generations              - Submit a prompt (202, job QUEUED)
- GET  /api/v1/jobs                     - List the organization's jobs
- GET  /api/v1/jobs/{job_id}            - Job detail
- POST /api/v1/jobs/{job_id}/cancel     - Cancel a QUEUED or RUNNING job
- POST /api/v1/jobs/{job_id}/retry      - Retry a FAILED job
- POST /api/v1/videos/{video_id}/rerender - New version of a generated video
- POST /api/v1/videos/{video_id}/rescore  - Score a READY video again
- GET  /api/v1/queue/stats              - Per-stage queue counters

Pattern:
- Authenticate (fast, no DB)
- Delegate to JobService (short transactions, enqueue)
- Return immediately; progress arrives on the event stream
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from framebrew.exceptions import JobNotFoundError, JobStateConflictError, ValidationError
from framebrew.models import JobStatus
from framebrew.pipeline import Pipeline
from framebrew.routes.dependencies import get_job_service, get_pipeline, get_principal
from framebrew.schemas.generation import GenerationRequest
from framebrew.schemas.job import JobResponse, SubmissionResponse, VideoResponse
from framebrew.services.job_service import DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT, JobService
from framebrew.utils.tokens import Principal

log = structlog.get_logger()
router = APIRouter(prefix="/api/v1", tags=["generation"])


ERROR_STATUS_CODES: dict[type[Exception], int] = {
    JobNotFoundError: status.HTTP_404_NOT_FOUND,
    JobStateConflictError: status.HTTP_409_CONFLICT,
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def _http_error(error: Exception) -> HTTPException:
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error"
    )


@router.post(
    "/generations",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SubmissionResponse,
)
async def submit_generation(
    body: GenerationRequest,
    principal: Principal = Depends(get_principal),
    jobs: JobService = Depends(get_job_service),
) -> SubmissionResponse:
    """Submit a prompt for rendering.

    The job is created QUEUED and returned at once. Render rules (prompt
    length, aspect ratio, ...) are enforced by the Generation Stage, so an
    invalid request shows up as a FAILED job on the event stream.

    Returns:
        202 Accepted: Job and video created and enqueued
        401 Unauthorized: Missing or invalid token
    """
    job, video = await jobs.submit(principal.org_id, body)
    log.info(
        "generation_accepted",
        job_id=str(job.id),
        video_id=str(video.id),
        org_id=principal.org_id,
        user_id=principal.user_id,
    )
    return SubmissionResponse(
        job=JobResponse.model_validate(job),
        video=VideoResponse.model_validate(video),
    )


@router.get("/jobs", response_model=list[JobResponse])
async def list_jobs(
    job_status: JobStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=DEFAULT_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT),
    principal: Principal = Depends(get_principal),
    jobs: JobService = Depends(get_job_service),
) -> list[JobResponse]:
    """List the caller's organization's jobs, newest first."""
    rows = await jobs.list_jobs(principal.org_id, status=job_status, limit=limit)
    return [JobResponse.model_validate(job) for job in rows]


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    principal: Principal = Depends(get_principal),
    jobs: JobService = Depends(get_job_service),
) -> JobResponse:
    """Return one job.

    Returns:
        200 OK: Job detail
        404 Not Found: Unknown job or another organization's job
    """
    try:
        job = await jobs.get_job(job_id, principal.org_id)
    except JobNotFoundError as e:
        raise _http_error(e) from e
    return JobResponse.model_validate(job)


@router.post("/jobs/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    job_id: str,
    principal: Principal = Depends(get_principal),
    jobs: JobService = Depends(get_job_service),
) -> JobResponse:
    """Cancel a job that has not reached the provider's polling phase.

    Returns:
        200 OK: Job FAILED with "Cancelled by user"
        404 Not Found: Unknown job
        409 Conflict: Job is past RUNNING or already finished
    """
    try:
        job = await jobs.cancel(job_id, principal.org_id)
    except (JobNotFoundError, JobStateConflictError) as e:
        raise _http_error(e) from e
    log.info("job_cancel_requested", job_id=job_id, user_id=principal.user_id)
    return JobResponse.model_validate(job)


@router.post("/jobs/{job_id}/retry", response_model=JobResponse)
async def retry_job(
    job_id: str,
    principal: Principal = Depends(get_principal),
    jobs: JobService = Depends(get_job_service),
) -> JobResponse:
    """Reset a FAILED job to QUEUED and enqueue it again.

    Returns:
        200 OK: Job QUEUED
        404 Not Found: Unknown job
        409 Conflict: Job is not FAILED
    """
    try:
        job = await jobs.retry(job_id, principal.org_id)
    except (JobNotFoundError, JobStateConflictError) as e:
        raise _http_error(e) from e
    log.info("job_retry_requested", job_id=job_id, user_id=principal.user_id)
    return JobResponse.model_validate(job)


@router.post(
    "/videos/{video_id}/rerender",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SubmissionResponse,
)
async def rerender_video(
    video_id: str,
    principal: Principal = Depends(get_principal),
    jobs: JobService = Depends(get_job_service),
) -> SubmissionResponse:
    """Render a generated video again as a new version.

    Returns:
        202 Accepted: New video (version + 1) and job enqueued
        404 Not Found: Unknown video
        409 Conflict: Uploaded video, or no usable generation data
    """
    try:
        job, video = await jobs.rerender(video_id, principal.org_id)
    except (JobNotFoundError, JobStateConflictError) as e:
        raise _http_error(e) from e
    return SubmissionResponse(
        job=JobResponse.model_validate(job),
        video=VideoResponse.model_validate(video),
    )


@router.post(
    "/videos/{video_id}/rescore",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=VideoResponse,
)
async def rescore_video(
    video_id: str,
    principal: Principal = Depends(get_principal),
    jobs: JobService = Depends(get_job_service),
) -> VideoResponse:
    """Score a READY video again.

    Returns:
        202 Accepted: Video SCORING, scoring enqueued
        404 Not Found: Unknown video
        409 Conflict: Video is not READY
    """
    try:
        video = await jobs.rescore(video_id, principal.org_id)
    except (JobNotFoundError, JobStateConflictError) as e:
        raise _http_error(e) from e
    return VideoResponse.model_validate(video)


@router.get("/queue/stats")
async def queue_stats(
    principal: Principal = Depends(get_principal),
    pipeline: Pipeline = Depends(get_pipeline),
) -> dict:
    """Per-stage waiting/active/completed/failed/retried counters."""
    return {"backend": pipeline.backend, "stages": await pipeline.queue.stats()}
