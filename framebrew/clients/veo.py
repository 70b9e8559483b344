"""Google Veo video generation client.

This module wraps the ``google-genai`` SDK for long-running Veo renders:

    start_generation  → client.aio.models.generate_videos(...)  (operation name)
    poll_operation    → client.aio.operations.get(...)           (status mapping)
    download_artifact → client.aio.files.download(...)           (bytes)

Architecture Pattern:
    - Rate limiting: AsyncLimiter shared by every call from this process
    - Error classification: 429/5xx/network → TransientProviderError (retried by
      the stage queue), other 4xx → RenderFailedError (terminal)
    - Artifact existence polling: a just-finished render can return 404 for a
      few seconds; download retries with tenacity (10 attempts, 1s→5s backoff)

Model Tiers:
    stable → veo-3.0-generate-001
    fast   → veo-3.0-fast-generate-001
    (override with VEO_MODEL_STABLE / VEO_MODEL_FAST)

Usage:
    from framebrew.clients.veo import VeoClient

    client = VeoClient(api_key=get_gemini_api_key())
    handle = await client.start_generation(params)
    status = await client.poll_operation(handle)
    await client.close()
"""

import time
from typing import Any

import httpx
from aiolimiter import AsyncLimiter
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from framebrew.clients.provider import OperationState, OperationStatus
from framebrew.config import get_provider_max_rate, get_veo_model
from framebrew.exceptions import RenderFailedError, TransientProviderError
from framebrew.schemas.generation import GenerationParams
from framebrew.schemas.payloads import ArtifactRef, DirectUrl, ProviderHandle
from framebrew.utils.logging import get_logger

log = get_logger(__name__)

# Time-based progress estimate when the provider reports none
EXPECTED_RENDER_SECONDS = 300
MAX_ESTIMATED_PROGRESS = 90

# Hosts whose file URIs need the API key and must go through the SDK
PROVIDER_FILE_HOSTS = ("generativelanguage.googleapis.com",)


class ArtifactNotReadyError(Exception):
    """Raised when a finished render's file is not downloadable yet."""


def _classify_api_error(error: genai_errors.APIError, action: str) -> Exception:
    code = getattr(error, "code", None)
    message = getattr(error, "message", None) or str(error)
    if isinstance(error, genai_errors.ServerError) or code in (408, 429):
        return TransientProviderError(f"Veo {action} failed ({code}): {message}", code=code)
    return RenderFailedError(f"Veo {action} rejected ({code}): {message}", code=code)


def artifact_ref_from_uri(uri: str) -> ArtifactRef:
    """Map a generated video URI to the download strategy it needs."""
    if uri.startswith(("http://", "https://")) and not any(
        host in uri for host in PROVIDER_FILE_HOSTS
    ):
        return DirectUrl(url=uri)
    return ProviderHandle(handle=uri)


class VeoClient:
    """Veo render client with process-wide rate limiting.

    Attributes:
        client: google-genai client
        rate_limiter: AsyncLimiter, PROVIDER_MAX_RATE requests per minute
    """

    def __init__(self, api_key: str, client: genai.Client | None = None) -> None:
        self.client = client or genai.Client(api_key=api_key)
        self.rate_limiter = AsyncLimiter(max_rate=get_provider_max_rate(), time_period=60)
        self._started_at: dict[str, float] = {}

    async def start_generation(self, params: GenerationParams) -> str:
        """Start a render and return its operation name.

        Raises:
            TransientProviderError: Network failure, 429 or 5xx.
            RenderFailedError: Request rejected (bad parameters, safety filters).
        """
        model = get_veo_model(params.model)
        config = types.GenerateVideosConfig(
            aspect_ratio=params.aspect_ratio,
            negative_prompt=params.negative_prompt,
            resolution=params.resolution,
            duration_seconds=params.duration_sec,
        )
        image = None
        if params.image is not None:
            image = types.Image(image_bytes=params.image.decoded(), mime_type=params.image.mime_type)

        async with self.rate_limiter:
            try:
                operation = await self.client.aio.models.generate_videos(
                    model=model,
                    prompt=params.full_prompt,
                    image=image,
                    config=config,
                )
            except genai_errors.APIError as e:
                raise _classify_api_error(e, "start") from e
            except httpx.HTTPError as e:
                raise TransientProviderError(f"Veo start failed: {e}") from e

        if not operation.name:
            raise TransientProviderError("Veo returned an operation without a name")

        self._started_at[operation.name] = time.monotonic()
        log.info(
            "veo_generation_started",
            operation_handle=operation.name,
            model=model,
            aspect_ratio=params.aspect_ratio,
            resolution=params.resolution,
            has_image=image is not None,
        )
        return operation.name

    async def poll_operation(self, handle: str) -> OperationStatus:
        """Query a render operation.

        Mapping:
            done + error             → FAILED (provider message)
            done + generated video   → COMPLETED with artifact reference
            done without a video     → FAILED
            not done                 → RUNNING with progress

        Raises:
            TransientProviderError: Query failed and may be retried.
        """
        async with self.rate_limiter:
            try:
                operation = await self.client.aio.operations.get(
                    types.GenerateVideosOperation(name=handle)
                )
            except genai_errors.APIError as e:
                raise TransientProviderError(f"Veo poll failed: {e}", code=getattr(e, "code", None)) from e
            except httpx.HTTPError as e:
                raise TransientProviderError(f"Veo poll failed: {e}") from e

        if not operation.done:
            return OperationStatus(
                state=OperationState.RUNNING,
                progress=self._progress(handle, operation.metadata),
            )

        self._started_at.pop(handle, None)

        if operation.error:
            message = operation.error.get("message") or str(operation.error)
            return OperationStatus(state=OperationState.FAILED, error=message)

        response = operation.response
        videos = response.generated_videos if response else None
        if not videos or videos[0].video is None or not videos[0].video.uri:
            return OperationStatus(
                state=OperationState.FAILED,
                error="Veo operation finished without a generated video",
            )

        return OperationStatus(
            state=OperationState.COMPLETED,
            artifact=artifact_ref_from_uri(videos[0].video.uri),
            progress=100,
        )

    def _progress(self, handle: str, metadata: dict[str, Any] | None) -> int | None:
        if metadata and metadata.get("progressPercent") is not None:
            return int(metadata["progressPercent"])
        started = self._started_at.get(handle)
        if started is None:
            return None
        elapsed = time.monotonic() - started
        return min(MAX_ESTIMATED_PROGRESS, int(elapsed / EXPECTED_RENDER_SECONDS * 100))

    @retry(
        retry=retry_if_exception_type(ArtifactNotReadyError),
        stop=stop_after_attempt(10),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    async def _download_when_ready(self, uri: str) -> bytes:
        try:
            return await self.client.aio.files.download(file=types.Video(uri=uri))
        except genai_errors.ClientError as e:
            if getattr(e, "code", None) == 404:
                log.info("veo_artifact_not_ready", uri=uri)
                raise ArtifactNotReadyError(uri) from e
            raise

    async def download_artifact(self, ref: ProviderHandle) -> bytes:
        """Download a generated video through the SDK.

        Raises:
            TransientProviderError: File never became available, or transport failure.
        """
        try:
            data = await self._download_when_ready(ref.handle)
        except ArtifactNotReadyError as e:
            raise TransientProviderError(f"Veo artifact not available: {ref.handle}") from e
        except genai_errors.APIError as e:
            raise TransientProviderError(f"Veo download failed: {e}") from e
        except httpx.HTTPError as e:
            raise TransientProviderError(f"Veo download failed: {e}") from e

        log.info("veo_artifact_downloaded", handle=ref.handle, size_bytes=len(data))
        return data

    async def close(self) -> None:
        self._started_at.clear()
