"""Tests for the Veo client.

The google-genai client is replaced by a Mock, so no network calls are made.

Test Coverage:
- start_generation request mapping and error classification
- poll_operation status mapping (running/failed/completed)
- artifact reference selection (direct URL vs provider handle)
- download existence polling with tenacity
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import pytest
from google.genai import errors as genai_errors
from google.genai import types
from tenacity import wait_none

from framebrew.clients.provider import OperationState
from framebrew.clients.veo import VeoClient, artifact_ref_from_uri
from framebrew.exceptions import RenderFailedError, TransientProviderError
from framebrew.schemas.generation import validate_generation_params
from framebrew.schemas.payloads import DirectUrl, ProviderHandle
from tests.support.factories import reference_image

PROVIDER_URI = "https://generativelanguage.googleapis.com/v1beta/files/abc123:download?alt=media"


def client_error(code: int, message: str = "error") -> genai_errors.ClientError:
    return genai_errors.ClientError(code, {"error": {"code": code, "message": message}})


def operation(done: bool, **fields) -> SimpleNamespace:
    defaults = {"name": "models/veo/operations/op-123", "metadata": None, "error": None, "response": None}
    return SimpleNamespace(done=done, **{**defaults, **fields})


def finished_with_video(uri: str) -> SimpleNamespace:
    video = SimpleNamespace(video=SimpleNamespace(uri=uri))
    return operation(True, response=SimpleNamespace(generated_videos=[video]))


@pytest.fixture
def genai_client():
    client = Mock()
    client.aio.models.generate_videos = AsyncMock(return_value=operation(False))
    client.aio.operations.get = AsyncMock(return_value=operation(False))
    client.aio.files.download = AsyncMock(return_value=b"mp4-bytes")
    return client


@pytest.fixture
def veo(genai_client) -> VeoClient:
    return VeoClient(api_key="test-key", client=genai_client)


@pytest.fixture
def params():
    return validate_generation_params(
        {
            "prompt": "A cat surfing at sunset",
            "style_preset": "cinematic",
            "negative_prompt": "blurry",
            "aspect_ratio": "9:16",
            "resolution": "1080p",
            "model": "stable",
            "duration_sec": 8,
        }
    )


class TestStartGeneration:
    """Tests for VeoClient.start_generation."""

    async def test_returns_operation_name(self, veo, genai_client, params, monkeypatch):
        """[P0] The operation name is the render handle.

        GIVEN: Valid render parameters for the stable tier
        WHEN: Starting a render
        THEN: The Veo model, prompt and config are sent, and the operation name returned
        """
        monkeypatch.delenv("VEO_MODEL_STABLE", raising=False)

        handle = await veo.start_generation(params)

        assert handle == "models/veo/operations/op-123"
        kwargs = genai_client.aio.models.generate_videos.await_args.kwargs
        assert kwargs["model"] == "veo-3.0-generate-001"
        assert kwargs["prompt"] == "A cat surfing at sunset\n\nStyle: cinematic"
        assert kwargs["image"] is None
        assert kwargs["config"].aspect_ratio == "9:16"
        assert kwargs["config"].negative_prompt == "blurry"

    async def test_reference_image_is_forwarded(self, veo, genai_client):
        params = validate_generation_params({"prompt": "A cat surfing", "image": reference_image()})

        await veo.start_generation(params)

        image = genai_client.aio.models.generate_videos.await_args.kwargs["image"]
        assert isinstance(image, types.Image)
        assert image.mime_type == "image/png"

    @pytest.mark.parametrize("code", [429, 408])
    async def test_rate_limit_is_transient(self, veo, genai_client, params, code):
        """[P0] 429/408 are retried by the generation queue."""
        genai_client.aio.models.generate_videos.side_effect = client_error(code, "slow down")

        with pytest.raises(TransientProviderError):
            await veo.start_generation(params)

    async def test_server_error_is_transient(self, veo, genai_client, params):
        genai_client.aio.models.generate_videos.side_effect = genai_errors.ServerError(
            503, {"error": {"code": 503, "message": "unavailable"}}
        )

        with pytest.raises(TransientProviderError):
            await veo.start_generation(params)

    async def test_rejected_request_is_terminal(self, veo, genai_client, params):
        """[P0] Other 4xx errors fail the job without retries."""
        genai_client.aio.models.generate_videos.side_effect = client_error(400, "prompt blocked")

        with pytest.raises(RenderFailedError, match="prompt blocked"):
            await veo.start_generation(params)

    async def test_unnamed_operation_is_transient(self, veo, genai_client, params):
        genai_client.aio.models.generate_videos.return_value = operation(False, name=None)

        with pytest.raises(TransientProviderError):
            await veo.start_generation(params)


class TestPollOperation:
    """Tests for VeoClient.poll_operation."""

    async def test_running_with_reported_progress(self, veo, genai_client):
        genai_client.aio.operations.get.return_value = operation(False, metadata={"progressPercent": 40})

        status = await veo.poll_operation("op-123")

        assert status.state == OperationState.RUNNING
        assert status.progress == 40

    async def test_running_without_metadata_estimates_progress(self, veo, genai_client, params):
        """[P2] Progress is estimated from elapsed time for renders started here."""
        handle = await veo.start_generation(params)

        status = await veo.poll_operation(handle)

        assert status.state == OperationState.RUNNING
        assert status.progress == 0

    async def test_provider_error_is_failed_with_message(self, veo, genai_client):
        """[P0] Provider failure message is passed through verbatim."""
        genai_client.aio.operations.get.return_value = operation(
            True, error={"code": 3, "message": "Video violates safety policy"}
        )

        status = await veo.poll_operation("op-123")

        assert status.state == OperationState.FAILED
        assert status.error == "Video violates safety policy"

    async def test_completed_provider_file(self, veo, genai_client):
        genai_client.aio.operations.get.return_value = finished_with_video(PROVIDER_URI)

        status = await veo.poll_operation("op-123")

        assert status.state == OperationState.COMPLETED
        assert status.artifact == ProviderHandle(handle=PROVIDER_URI)

    async def test_completed_without_video_is_failed(self, veo, genai_client):
        genai_client.aio.operations.get.return_value = operation(
            True, response=SimpleNamespace(generated_videos=[])
        )

        status = await veo.poll_operation("op-123")

        assert status.state == OperationState.FAILED
        assert "without a generated video" in status.error

    async def test_query_failure_is_transient(self, veo, genai_client):
        genai_client.aio.operations.get.side_effect = client_error(404, "not found")

        with pytest.raises(TransientProviderError):
            await veo.poll_operation("op-123")


class TestArtifactRef:
    def test_cdn_url_is_direct(self):
        assert artifact_ref_from_uri("https://cdn.example.com/v.mp4") == DirectUrl(
            url="https://cdn.example.com/v.mp4"
        )

    def test_provider_file_needs_sdk(self):
        assert isinstance(artifact_ref_from_uri(PROVIDER_URI), ProviderHandle)

    def test_non_http_uri_is_handle(self):
        assert artifact_ref_from_uri("files/abc123") == ProviderHandle(handle="files/abc123")


class TestDownloadArtifact:
    """Tests for VeoClient.download_artifact."""

    @pytest.fixture(autouse=True)
    def no_retry_wait(self, monkeypatch):
        monkeypatch.setattr(VeoClient._download_when_ready.retry, "wait", wait_none())

    async def test_download_returns_bytes(self, veo):
        data = await veo.download_artifact(ProviderHandle(handle=PROVIDER_URI))

        assert data == b"mp4-bytes"

    async def test_not_ready_file_is_polled(self, veo, genai_client):
        """[P1] A just-finished render may 404 briefly."""
        genai_client.aio.files.download.side_effect = [client_error(404), client_error(404), b"mp4-bytes"]

        data = await veo.download_artifact(ProviderHandle(handle=PROVIDER_URI))

        assert data == b"mp4-bytes"
        assert genai_client.aio.files.download.await_count == 3

    async def test_never_ready_is_transient(self, veo, genai_client):
        genai_client.aio.files.download.side_effect = client_error(404)

        with pytest.raises(TransientProviderError, match="not available"):
            await veo.download_artifact(ProviderHandle(handle=PROVIDER_URI))

        assert genai_client.aio.files.download.await_count == 10

    async def test_other_errors_are_transient_without_polling(self, veo, genai_client):
        genai_client.aio.files.download.side_effect = client_error(403, "forbidden")

        with pytest.raises(TransientProviderError, match="download failed"):
            await veo.download_artifact(ProviderHandle(handle=PROVIDER_URI))

        assert genai_client.aio.files.download.await_count == 1
