"""Polling Stage worker.

Queries the provider until the render completes, fails, or the polling
budget runs out. One invocation holds its polling slot for the whole render,
so the polling pool size caps how many renders are in flight.

Progress:
    20% at handoff, rising linearly to 80% at the last allowed poll:
    progress = 20 + iteration * 60 / max_poll_iterations

Outcomes:
    COMPLETED → enqueue Download with the artifact reference, stop
    FAILED    → RenderFailedError with the provider's message (terminal)
    RUNNING   → record progress, wait ``poll_interval``, poll again
    budget exhausted → RenderTimeoutError (terminal, never retried)

Only query failures (TransientProviderError) are retried by the polling queue.
"""

from framebrew.clients.provider import OperationState
from framebrew.exceptions import RenderFailedError, RenderTimeoutError
from framebrew.models import JobStatus
from framebrew.queue import StageName
from framebrew.schemas.payloads import DownloadPayload, PollingPayload, StagePayload
from framebrew.utils.logging import get_logger
from framebrew.workers.context import StageContext

log = get_logger(__name__)

START_PROGRESS = 20
PROGRESS_SPAN = 60


def polling_progress(iteration: int, max_iterations: int) -> int:
    """Linear progress for a 1-based poll iteration."""
    return START_PROGRESS + (iteration * PROGRESS_SPAN) // max_iterations


class PollingWorker:
    def __init__(self, ctx: StageContext) -> None:
        self.ctx = ctx

    async def handle(self, payload: PollingPayload) -> None:
        stage_log = log.bind(
            job_id=payload.job_id,
            stage="polling",
            run_number=payload.run_number,
            attempt=payload.attempt,
            operation_handle=payload.operation_handle,
        )
        max_iterations = self.ctx.max_poll_iterations

        for iteration in range(1, max_iterations + 1):
            status = await self.ctx.provider.poll_operation(payload.operation_handle)
            stage_log.debug("poll_iteration", iteration=iteration, state=status.state.value)

            if status.state == OperationState.COMPLETED:
                if status.artifact is None:
                    raise RenderFailedError("Render completed without a video artifact")
                await self.ctx.queue.enqueue(
                    StageName.DOWNLOAD,
                    DownloadPayload(
                        job_id=payload.job_id,
                        video_id=payload.video_id,
                        org_id=payload.org_id,
                        run_number=payload.run_number,
                        artifact=status.artifact,
                    ),
                )
                stage_log.info("render_completed", iterations=iteration)
                return

            if status.state == OperationState.FAILED:
                raise RenderFailedError(status.error or "Video generation failed")

            metadata = None
            if status.progress is not None:
                metadata = {"provider_progress": status.progress}

            applied = await self.ctx.projector.transition(
                payload.job_id,
                payload.video_id,
                payload.org_id,
                JobStatus.POLLING,
                polling_progress(iteration, max_iterations),
                f"Rendering video ({iteration}/{max_iterations})",
                metadata=metadata,
                run_number=payload.run_number,
            )
            if not applied:
                stage_log.info("polling_stopped", iterations=iteration)
                return

            if iteration < max_iterations:
                await self.ctx.sleep(self.ctx.poll_interval)

        stage_log.error("render_timed_out", iterations=max_iterations)
        raise RenderTimeoutError(payload.operation_handle, max_iterations)

    async def on_failure(self, payload: StagePayload, error: BaseException) -> None:
        await self.ctx.projector.fail(
            payload.job_id, payload.video_id, payload.org_id, str(error), run_number=payload.run_number
        )
