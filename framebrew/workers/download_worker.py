"""Download Stage worker.

Fetches the rendered video, writes it to the artifact store and hands the
stored URL to the Scoring Stage.

Artifact Reference:
    DirectUrl      → plain HTTP GET with the shared httpx client
    ProviderHandle → provider.download_artifact (its own existence-poll retry)

Steps:
    1. DOWNLOADING (85%)
    2. Fetch bytes (outside any transaction)
    3. Store under generated/{org_id}/{video_id}/video.mp4
    4. TRANSCODING (90%) + urls["mp4"] in one transaction
    5. Enqueue scoring

Error Handling:
    Network and storage failures are retried by the download queue
    (3 attempts, 15s exponential backoff), then the job is FAILED.
"""

import httpx

from framebrew.clients.artifact_store import video_key
from framebrew.exceptions import TransientProviderError
from framebrew.models import JobStatus
from framebrew.queue import StageName
from framebrew.schemas.payloads import (
    ArtifactRef,
    DirectUrl,
    DownloadPayload,
    ScoringPayload,
    StagePayload,
)
from framebrew.utils.logging import get_logger
from framebrew.workers.context import StageContext

log = get_logger(__name__)

DOWNLOADING_PROGRESS = 85
TRANSCODING_PROGRESS = 90


class DownloadWorker:
    def __init__(self, ctx: StageContext) -> None:
        self.ctx = ctx

    async def _fetch(self, artifact: ArtifactRef) -> bytes:
        if isinstance(artifact, DirectUrl):
            try:
                response = await self.ctx.http_client.get(artifact.url, follow_redirects=True)
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise TransientProviderError(f"Artifact download failed: {e}", url=artifact.url) from e
            return response.content
        return await self.ctx.provider.download_artifact(artifact)

    async def handle(self, payload: DownloadPayload) -> None:
        stage_log = log.bind(
            job_id=payload.job_id,
            video_id=payload.video_id,
            stage="download",
            run_number=payload.run_number,
            attempt=payload.attempt,
            artifact_kind=payload.artifact.kind,
        )
        projector = self.ctx.projector

        if not await projector.transition(
            payload.job_id,
            payload.video_id,
            payload.org_id,
            JobStatus.DOWNLOADING,
            DOWNLOADING_PROGRESS,
            "Downloading video",
            run_number=payload.run_number,
        ):
            return

        data = await self._fetch(payload.artifact)
        if not data:
            raise TransientProviderError("Downloaded artifact is empty")

        key = video_key(payload.org_id, payload.video_id)
        url = await self.ctx.artifact_store.put(
            key,
            data,
            content_type="video/mp4",
            metadata={"job_id": payload.job_id, "video_id": payload.video_id},
        )
        stage_log.info("artifact_stored", key=key, size_bytes=len(data))

        if not await projector.transition(
            payload.job_id,
            payload.video_id,
            payload.org_id,
            JobStatus.TRANSCODING,
            TRANSCODING_PROGRESS,
            "Processing video",
            urls={"mp4": url},
            metadata={"storage_key": key, "size_bytes": len(data)},
            run_number=payload.run_number,
        ):
            return

        await self.ctx.queue.enqueue(
            StageName.SCORING,
            ScoringPayload(
                job_id=payload.job_id,
                video_id=payload.video_id,
                org_id=payload.org_id,
                run_number=payload.run_number,
                artifact_url=url,
            ),
        )

    async def on_failure(self, payload: StagePayload, error: BaseException) -> None:
        await self.ctx.projector.fail(
            payload.job_id, payload.video_id, payload.org_id, str(error), run_number=payload.run_number
        )
