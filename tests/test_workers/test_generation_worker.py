"""Tests for the Generation Stage worker.

Test Coverage:
- Happy path: RUNNING → provider start → POLLING with handle → polling enqueued
- Validation failure never calls the provider
- Resume from a stored operation handle
- Terminal and cancelled jobs
- on_failure marks the job FAILED
"""

import uuid

import pytest

from framebrew.exceptions import JobNotFoundError, TransientProviderError, ValidationError
from framebrew.models import GenerationJob, JobStatus
from framebrew.queue import StageName
from framebrew.schemas.payloads import GenerationPayload
from framebrew.workers import GenerationWorker
from tests.support.factories import create_job, load, reference_image


def payload_for(job, video, image=None, run_number: int = 1) -> GenerationPayload:
    return GenerationPayload(
        job_id=str(job.id), video_id=str(video.id), org_id="org1", image=image, run_number=run_number
    )


class TestGenerationWorker:
    """Tests for GenerationWorker.handle."""

    @pytest.fixture
    def worker(self, worker_context) -> GenerationWorker:
        return GenerationWorker(worker_context)

    async def test_starts_render_and_hands_off_to_polling(
        self, worker, session_factory, provider, recording_queue, event_sink
    ):
        """[P0] A valid job is started once and handed to polling.

        GIVEN: A QUEUED job with a style preset
        WHEN: The generation stage runs
        THEN: The job is POLLING at 20% with handle op-123 and a polling payload is queued
        """
        job, video = await create_job(session_factory, style_preset="cinematic", model="stable")

        await worker.handle(payload_for(job, video))

        [params] = provider.started
        assert params.full_prompt == "A cat surfing at sunset\n\nStyle: cinematic"
        assert params.model == "stable"

        stored = await load(session_factory, GenerationJob, job.id)
        assert stored.status == JobStatus.POLLING
        assert stored.progress == 20
        assert stored.operation_handle == "op-123"
        assert event_sink.progress() == [10, 20]

        stage, polling = recording_queue.enqueue.await_args.args
        assert stage == StageName.POLLING
        assert polling.operation_handle == "op-123"
        assert polling.job_id == str(job.id)
        assert polling.attempt == 1
        assert polling.run_number == 1

    async def test_reference_image_is_passed_to_provider(self, worker, session_factory, provider):
        job, video = await create_job(session_factory)

        await worker.handle(payload_for(job, video, image=reference_image()))

        assert provider.started[0].image.mime_type == "image/png"

    async def test_invalid_prompt_fails_without_provider_call(
        self, worker, session_factory, provider, recording_queue
    ):
        """[P0] A 2001-character prompt is rejected before the provider is called."""
        job, video = await create_job(session_factory, prompt="x" * 2001)

        with pytest.raises(ValidationError, match="at most 2000 characters"):
            await worker.handle(payload_for(job, video))

        assert provider.started == []
        recording_queue.enqueue.assert_not_awaited()
        assert (await load(session_factory, GenerationJob, job.id)).status == JobStatus.QUEUED

    async def test_bad_reference_image_is_rejected(self, worker, session_factory, provider):
        job, video = await create_job(session_factory)

        with pytest.raises(ValidationError):
            await worker.handle(payload_for(job, video, image=reference_image(mime_type="text/plain")))

        assert provider.started == []

    async def test_stored_handle_resumes_polling(self, worker, session_factory, provider, recording_queue):
        """[P1] A retried attempt after the render started does not start another render."""
        job, video = await create_job(
            session_factory, status=JobStatus.POLLING, progress=20, operation_handle="op-existing"
        )

        await worker.handle(payload_for(job, video))

        assert provider.started == []
        stage, polling = recording_queue.enqueue.await_args.args
        assert stage == StageName.POLLING
        assert polling.operation_handle == "op-existing"

    async def test_stored_handle_past_polling_is_not_resumed(
        self, worker, session_factory, provider, recording_queue
    ):
        """[P0] A redelivered payload never restarts polling for a job that moved on."""
        job, video = await create_job(
            session_factory, status=JobStatus.DOWNLOADING, progress=85, operation_handle="op-existing"
        )

        await worker.handle(payload_for(job, video))

        assert provider.started == []
        recording_queue.enqueue.assert_not_awaited()
        assert (await load(session_factory, GenerationJob, job.id)).status == JobStatus.DOWNLOADING

    async def test_payload_from_older_run_is_skipped(
        self, worker, session_factory, provider, recording_queue
    ):
        """[P0] A payload of an attempt the user retried since does nothing.

        GIVEN: A job on its second run
        WHEN: A generation payload stamped with run 1 is delivered
        THEN: No render starts, nothing is enqueued and the job stays QUEUED
        """
        job, video = await create_job(session_factory, run_number=2)

        await worker.handle(payload_for(job, video, run_number=1))

        assert provider.started == []
        recording_queue.enqueue.assert_not_awaited()
        assert (await load(session_factory, GenerationJob, job.id)).status == JobStatus.QUEUED

    async def test_terminal_job_is_skipped(self, worker, session_factory, provider, recording_queue):
        job, video = await create_job(session_factory, status=JobStatus.FAILED, error="Cancelled by user")

        await worker.handle(payload_for(job, video))

        assert provider.started == []
        recording_queue.enqueue.assert_not_awaited()

    async def test_cancel_during_start_stops_the_stage(
        self, worker, session_factory, projector, provider, recording_queue
    ):
        """[P0] A job cancelled while the provider call was in flight is not resurrected.

        GIVEN: A job cancelled by the user while start_generation runs
        WHEN: The stage tries to record POLLING
        THEN: The job stays FAILED("Cancelled by user") and polling is not enqueued
        """
        job, video = await create_job(session_factory)

        async def start_then_cancel(params):
            await projector.cancel(job.id, "org1")
            return "op-123"

        provider.start_generation = start_then_cancel

        await worker.handle(payload_for(job, video))

        stored = await load(session_factory, GenerationJob, job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error == "Cancelled by user"
        assert stored.operation_handle is None
        recording_queue.enqueue.assert_not_awaited()

    async def test_provider_error_propagates_for_retry(self, worker, session_factory, provider):
        provider.start_error = TransientProviderError("429 Too Many Requests")
        job, video = await create_job(session_factory)

        with pytest.raises(TransientProviderError):
            await worker.handle(payload_for(job, video))

        assert (await load(session_factory, GenerationJob, job.id)).status == JobStatus.RUNNING

    async def test_missing_job_raises(self, worker):
        payload = GenerationPayload(job_id=str(uuid.uuid4()), video_id=str(uuid.uuid4()), org_id="org1")

        with pytest.raises(JobNotFoundError):
            await worker.handle(payload)


class TestGenerationFailurePath:
    async def test_on_failure_marks_job_failed(self, worker_context, session_factory):
        """[P0] The failure path records the error message on the job."""
        job, video = await create_job(session_factory, status=JobStatus.RUNNING)
        worker = GenerationWorker(worker_context)

        error = ValidationError("Prompt is required", field="prompt")

        await worker.on_failure(payload_for(job, video), error)

        stored = await load(session_factory, GenerationJob, job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error == "Prompt is required"
