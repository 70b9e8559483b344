"""Tests for JobService (submission and control operations).

The stage queue is a recording double, so these tests cover only what the
service writes and enqueues. Stage behavior is tested in tests/test_workers.

Test Coverage:
- submit(): rows, events, payload, enqueue failure
- get_job()/list_jobs(): organization scoping, ordering, filters
- cancel(), retry(), rerender(), rescore()
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from framebrew.exceptions import JobNotFoundError, JobStateConflictError
from framebrew.models import GenerationJob, JobStatus, SourceType, Video
from framebrew.queue import StageName
from framebrew.schemas.events import EventType
from framebrew.services.job_service import JobService
from tests.support.factories import add_job, create_job, generation_request, load, reference_image


@pytest.fixture
def service(session_factory, projector, recording_queue) -> JobService:
    return JobService(session_factory, projector, recording_queue)


def enqueued(queue) -> list[tuple]:
    return [call.args for call in queue.enqueue.await_args_list]


class TestSubmit:
    """Tests for JobService.submit."""

    async def test_submit_creates_queued_rows_and_enqueues(
        self, service, session_factory, recording_queue, event_sink
    ):
        """[P0] Submission creates a QUEUED video and job and enqueues generation.

        GIVEN: A valid generation request for org1
        WHEN: Submitting it
        THEN: Rows are QUEUED at 0%, events are published, and one generation payload is queued
        """
        job, video = await service.submit("org1", generation_request(style_preset="cinematic"))

        stored_job = await load(session_factory, GenerationJob, job.id)
        stored_video = await load(session_factory, Video, video.id)
        assert stored_job.status == JobStatus.QUEUED
        assert stored_job.progress == 0
        assert stored_job.style_preset == "cinematic"
        assert stored_video.org_id == "org1"
        assert stored_video.version == 1
        assert stored_video.source_type == SourceType.GENERATED
        assert stored_video.video_metadata == {"captions": True, "watermark": False}

        [(stage, payload)] = enqueued(recording_queue)
        assert stage == StageName.GENERATION
        assert payload.job_id == str(job.id)
        assert payload.video_id == str(video.id)
        assert payload.org_id == "org1"
        assert payload.attempt == 1
        assert payload.image is None

        assert event_sink.statuses() == ["queued"]
        assert event_sink.statuses(EventType.VIDEO_STATUS_UPDATE) == ["queued"]

    async def test_reference_image_travels_in_payload(self, service, recording_queue):
        image = reference_image()

        await service.submit("org1", generation_request(image=image))

        [(_, payload)] = enqueued(recording_queue)
        assert payload.image == image

    async def test_title_falls_back_to_prompt(self, service):
        _, video = await service.submit("org1", generation_request(title=None, prompt="x" * 100))

        assert video.title == "x" * 80

    async def test_invalid_request_still_creates_a_job(self, service, recording_queue):
        """[P0] Render rules are enforced by the generation stage, not at submission."""
        job, _ = await service.submit("org1", generation_request(prompt="x" * 2001))

        assert job.status == JobStatus.QUEUED
        recording_queue.enqueue.assert_awaited_once()

    async def test_enqueue_failure_fails_the_job(self, service, session_factory, recording_queue):
        """[P1] A job that could not be enqueued is FAILED and the error propagates."""
        recording_queue.enqueue.side_effect = ConnectionError("queue unavailable")

        with pytest.raises(ConnectionError):
            await service.submit("org1", generation_request())

        [stored] = await service.list_jobs("org1")
        assert stored.status == JobStatus.FAILED
        assert stored.error == "Failed to enqueue job: queue unavailable"


class TestReads:
    """Tests for get_job, get_video and list_jobs."""

    async def test_get_job_is_org_scoped(self, service, session_factory):
        """[P0] Another organization's job is reported as not found."""
        job, _ = await create_job(session_factory, org_id="org2")

        with pytest.raises(JobNotFoundError):
            await service.get_job(job.id, "org1")

        assert (await service.get_job(str(job.id), "org2")).id == job.id

    async def test_malformed_id_is_not_found(self, service):
        with pytest.raises(JobNotFoundError):
            await service.get_job("not-a-uuid", "org1")

    async def test_get_video_is_org_scoped(self, service, session_factory):
        _, video = await create_job(session_factory, org_id="org2")

        with pytest.raises(JobNotFoundError):
            await service.get_video(video.id, "org1")

    async def test_list_jobs_newest_first_with_filter_and_limit(self, service, session_factory):
        """[P1] Jobs are listed newest first, filtered by status and bounded."""
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        oldest, _ = await create_job(session_factory, created_at=base)
        middle, _ = await create_job(
            session_factory, status=JobStatus.FAILED, created_at=base + timedelta(minutes=1)
        )
        newest, _ = await create_job(session_factory, created_at=base + timedelta(minutes=2))
        await create_job(session_factory, org_id="org2", created_at=base + timedelta(minutes=3))

        listed = await service.list_jobs("org1")
        queued = await service.list_jobs("org1", status=JobStatus.QUEUED)
        limited = await service.list_jobs("org1", limit=1)

        assert [job.id for job in listed] == [newest.id, middle.id, oldest.id]
        assert [job.id for job in queued] == [newest.id, oldest.id]
        assert [job.id for job in limited] == [newest.id]


class TestControlOperations:
    """Tests for cancel and retry."""

    async def test_cancel_fails_job_and_drops_waiting_payloads(
        self, service, session_factory, recording_queue
    ):
        """[P0] Cancel marks the job FAILED and removes its queued stage payloads."""
        job, _ = await create_job(session_factory)

        cancelled = await service.cancel(job.id, "org1")

        assert cancelled.status == JobStatus.FAILED
        assert cancelled.error == "Cancelled by user"
        recording_queue.cancel.assert_awaited_once_with(str(job.id))

    async def test_cancel_other_org_is_not_found(self, service, session_factory, recording_queue):
        job, _ = await create_job(session_factory, org_id="org2")

        with pytest.raises(JobNotFoundError):
            await service.cancel(job.id, "org1")

        recording_queue.cancel.assert_not_awaited()

    async def test_cancel_polling_job_conflicts(self, service, session_factory):
        job, _ = await create_job(session_factory, status=JobStatus.POLLING)

        with pytest.raises(JobStateConflictError):
            await service.cancel(job.id, "org1")

    async def test_retry_requeues_failed_job(self, service, session_factory, recording_queue):
        """[P0] Retry resets the job and enqueues a fresh generation attempt."""
        job, _ = await create_job(
            session_factory, status=JobStatus.FAILED, error="Video generation timed out after 60 polls"
        )

        retried = await service.retry(job.id, "org1")

        assert retried.status == JobStatus.QUEUED
        assert retried.error is None
        [(stage, payload)] = enqueued(recording_queue)
        assert stage == StageName.GENERATION
        assert payload.attempt == 1
        assert payload.image is None

    async def test_retry_requires_failed(self, service, session_factory, recording_queue):
        job, _ = await create_job(session_factory, status=JobStatus.READY)

        with pytest.raises(JobStateConflictError):
            await service.retry(job.id, "org1")

        recording_queue.enqueue.assert_not_awaited()


class TestRerender:
    """Tests for JobService.rerender."""

    async def test_rerender_creates_next_version(self, service, session_factory, recording_queue):
        """[P0] A re-render copies the last usable parameters into a new version.

        GIVEN: A READY version-1 video whose latest job is FAILED
        WHEN: Re-rendering it
        THEN: A version-2 video is created from the earlier non-failed job's parameters
        """
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        source_job, source = await create_job(
            session_factory,
            status=JobStatus.READY,
            style_preset="cinematic",
            aspect_ratio="9:16",
            created_at=base,
        )
        await add_job(
            session_factory,
            source.id,
            status=JobStatus.FAILED,
            prompt="later",
            created_at=base + timedelta(hours=1),
        )

        job, video = await service.rerender(source.id, "org1")

        assert video.id != source.id
        assert video.version == 2
        assert video.aspect == "9:16"
        assert video.video_metadata == {"rerender_of": str(source.id)}
        assert job.prompt == source_job.prompt
        assert job.style_preset == "cinematic"
        assert job.status == JobStatus.QUEUED

        stored_source = await load(session_factory, Video, source.id)
        assert stored_source.status == JobStatus.READY
        assert stored_source.version == 1

        [(stage, payload)] = enqueued(recording_queue)
        assert stage == StageName.GENERATION
        assert payload.video_id == str(video.id)

    async def test_uploaded_video_cannot_be_rerendered(self, service, session_factory):
        _, video = await create_job(session_factory, status=JobStatus.READY, source_type=SourceType.UPLOADED)

        with pytest.raises(JobStateConflictError, match="Only generated videos"):
            await service.rerender(video.id, "org1")

    async def test_video_with_only_failed_jobs_conflicts(self, service, session_factory):
        _, video = await create_job(session_factory, status=JobStatus.FAILED, error="boom")

        with pytest.raises(JobStateConflictError, match="No generation data"):
            await service.rerender(video.id, "org1")


class TestRescore:
    """Tests for JobService.rescore."""

    async def test_rescore_moves_video_to_scoring_and_enqueues(
        self, service, session_factory, recording_queue
    ):
        """[P1] Re-score enqueues a scoring payload without a job id."""
        _, video = await create_job(
            session_factory, status=JobStatus.READY, urls={"mp4": "http://testserver/api/files/v.mp4"}
        )

        rescored = await service.rescore(video.id, "org1")

        assert rescored.status == JobStatus.SCORING
        [(stage, payload)] = enqueued(recording_queue)
        assert stage == StageName.SCORING
        assert payload.job_id is None
        assert payload.artifact_url == "http://testserver/api/files/v.mp4"

    async def test_rescore_requires_ready(self, service, session_factory):
        _, video = await create_job(session_factory, status=JobStatus.POLLING, urls={"mp4": "http://x/v.mp4"})

        with pytest.raises(JobStateConflictError, match="must be ready"):
            await service.rescore(video.id, "org1")

    async def test_rescore_requires_stored_artifact(self, service, session_factory):
        _, video = await create_job(session_factory, status=JobStatus.READY)

        with pytest.raises(JobStateConflictError, match="no stored artifact"):
            await service.rescore(video.id, "org1")

    async def test_rescore_unknown_video(self, service):
        with pytest.raises(JobNotFoundError):
            await service.rescore(uuid.uuid4(), "org1")
