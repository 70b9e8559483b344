"""Generation Stage worker.

Validates the job's render parameters, starts the provider render, records the
operation handle and hands the job to the Polling Stage.

Transaction Pattern (short transactions only):
    1. Read job (closed before any provider call)
    2. RUNNING (10%)
    3. provider.start_generation (outside any transaction)
    4. POLLING (20%) + operation handle, in one transaction
    5. Enqueue polling

Error Handling:
    - ValidationError → terminal, job FAILED immediately, provider never called
    - TransientProviderError → retried by the generation queue (3 attempts,
      30s exponential backoff), then FAILED
    - RenderFailedError (provider rejected the request) → terminal

Stale Payloads:
    A payload whose ``run_number`` is not the job's current run belongs to an
    attempt the user has retried since. It is dropped without any write.

Resume:
    If the current run is already RUNNING or POLLING with a stored operation
    handle (a redelivered payload), the render is not started again; the job
    goes straight back to polling.
"""

from framebrew.exceptions import JobNotFoundError
from framebrew.models import JobStatus
from framebrew.queue import StageName
from framebrew.schemas.generation import validate_generation_params
from framebrew.schemas.payloads import GenerationPayload, PollingPayload, StagePayload
from framebrew.utils.logging import get_logger
from framebrew.workers.context import StageContext

log = get_logger(__name__)

RUNNING_PROGRESS = 10
POLLING_PROGRESS = 20

RESUMABLE_STATUSES = frozenset({JobStatus.RUNNING, JobStatus.POLLING})


class GenerationWorker:
    def __init__(self, ctx: StageContext) -> None:
        self.ctx = ctx

    async def handle(self, payload: GenerationPayload) -> None:
        stage_log = log.bind(
            job_id=payload.job_id,
            video_id=payload.video_id,
            stage="generation",
            run_number=payload.run_number,
            attempt=payload.attempt,
        )
        projector = self.ctx.projector

        job = await projector.load_job(payload.job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {payload.job_id}", job_id=payload.job_id)
        if job.is_terminal:
            stage_log.info("generation_skipped_terminal_job", status=job.status.value)
            return
        if job.run_number != payload.run_number:
            stage_log.info("generation_skipped_stale_run", current_run_number=job.run_number)
            return
        if job.operation_handle:
            if job.status in RESUMABLE_STATUSES:
                stage_log.info("generation_resuming_polling", operation_handle=job.operation_handle)
                await self._enqueue_polling(payload, job.operation_handle)
            else:
                stage_log.info("generation_skipped_already_started", status=job.status.value)
            return

        params = validate_generation_params({**job.generation_params(), "image": payload.image})

        if not await projector.transition(
            payload.job_id,
            payload.video_id,
            payload.org_id,
            JobStatus.RUNNING,
            RUNNING_PROGRESS,
            "Starting video generation",
            run_number=payload.run_number,
        ):
            return

        stage_log.info("generation_starting", model=params.model, aspect_ratio=params.aspect_ratio)
        handle = await self.ctx.provider.start_generation(params)

        if not await projector.transition(
            payload.job_id,
            payload.video_id,
            payload.org_id,
            JobStatus.POLLING,
            POLLING_PROGRESS,
            "Rendering video",
            operation_handle=handle,
            run_number=payload.run_number,
        ):
            stage_log.info("generation_cancelled_after_start", operation_handle=handle)
            return

        await self._enqueue_polling(payload, handle)
        stage_log.info("generation_started", operation_handle=handle)

    async def _enqueue_polling(self, payload: GenerationPayload, handle: str) -> None:
        await self.ctx.queue.enqueue(
            StageName.POLLING,
            PollingPayload(
                job_id=payload.job_id,
                video_id=payload.video_id,
                org_id=payload.org_id,
                run_number=payload.run_number,
                operation_handle=handle,
            ),
        )

    async def on_failure(self, payload: StagePayload, error: BaseException) -> None:
        await self.ctx.projector.fail(
            payload.job_id, payload.video_id, payload.org_id, str(error), run_number=payload.run_number
        )
