"""Stage payloads carried by the work queues.

Payloads are JSON-encoded Pydantic models so the durable queue can store them
as bytes and the local scheduler can pass them around unchanged. Every payload
carries the job, video and organization ids, the job's ``run_number`` (which
explicit retry it belongs to) and the attempt number used for queue retry
accounting.

Artifact References:
    The polling stage hands the download stage a tagged union:

        {"kind": "direct_url", "url": "https://..."}
        {"kind": "provider_handle", "handle": "files/abc123"}
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field


class DirectUrl(BaseModel):
    """Artifact downloadable with a plain HTTP GET."""

    kind: Literal["direct_url"] = "direct_url"
    url: str


class ProviderHandle(BaseModel):
    """Artifact that must be retrieved through the provider's API."""

    kind: Literal["provider_handle"] = "provider_handle"
    handle: str


ArtifactRef = Annotated[DirectUrl | ProviderHandle, Field(discriminator="kind")]


class StagePayload(BaseModel):
    """Fields common to every stage payload."""

    job_id: str | None
    video_id: str
    org_id: str
    run_number: int = 1
    attempt: int = 1

    def next_attempt(self) -> "StagePayload":
        return self.model_copy(update={"attempt": self.attempt + 1})

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode()


class GenerationPayload(StagePayload):
    job_id: str
    # Reference image travels with the payload, it is not persisted
    image: dict[str, Any] | None = None


class PollingPayload(StagePayload):
    job_id: str
    operation_handle: str


class DownloadPayload(StagePayload):
    job_id: str
    artifact: ArtifactRef


class ScoringPayload(StagePayload):
    """Scoring input. ``job_id`` is None for a re-score of a finished video."""

    artifact_url: str
