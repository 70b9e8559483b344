"""Scoring Stage worker.

Terminal success stage: SCORING (95%) → score the stored artifact → video
READY with its score, job READY at 100%.

Scoring never blocks delivery. When the scoring queue gives up (2 attempts,
10s fixed backoff) the video is still marked READY, without a score, and the
error is recorded in the video metadata.

Re-score:
    A payload without ``job_id`` re-scores a finished video. The video goes
    SCORING → READY with the new score, or back to READY unchanged on failure.
"""

from framebrew.clients.scorer import feedback_summary
from framebrew.models import JobStatus
from framebrew.schemas.payloads import ScoringPayload, StagePayload
from framebrew.utils.logging import get_logger
from framebrew.workers.context import StageContext

log = get_logger(__name__)

SCORING_PROGRESS = 95


class ScoringWorker:
    def __init__(self, ctx: StageContext) -> None:
        self.ctx = ctx

    async def handle(self, payload: ScoringPayload) -> None:
        if payload.job_id is None:
            await self._rescore(payload)
            return

        projector = self.ctx.projector
        if not await projector.transition(
            payload.job_id,
            payload.video_id,
            payload.org_id,
            JobStatus.SCORING,
            SCORING_PROGRESS,
            "Scoring video quality",
            run_number=payload.run_number,
        ):
            return

        score = await self.ctx.scorer.score(payload.artifact_url)
        await projector.complete(
            payload.job_id,
            payload.video_id,
            payload.org_id,
            score.model_dump(),
            feedback_summary(score),
            run_number=payload.run_number,
        )

    async def _rescore(self, payload: ScoringPayload) -> None:
        score = await self.ctx.scorer.score(payload.artifact_url)
        await self.ctx.projector.set_video_status(
            payload.video_id,
            payload.org_id,
            JobStatus.READY,
            score=score.model_dump(),
            metadata={"feedback_summary": feedback_summary(score), "scoring_error": None},
        )
        log.info("video_rescored", video_id=payload.video_id, overall=score.overall)

    async def on_failure(self, payload: StagePayload, error: BaseException) -> None:
        if payload.job_id is None:
            await self.ctx.projector.set_video_status(
                payload.video_id,
                payload.org_id,
                JobStatus.READY,
                metadata={"scoring_error": str(error)},
                message="Quality scoring unavailable",
            )
            return
        await self.ctx.projector.complete_without_score(
            payload.job_id,
            payload.video_id,
            payload.org_id,
            str(error),
            run_number=payload.run_number,
        )
