"""Pydantic schemas for API bodies, queue payloads and stream events."""

from framebrew.schemas.events import EventType, StreamEvent
from framebrew.schemas.generation import (
    GenerationParams,
    GenerationRequest,
    ReferenceImage,
    validate_generation_params,
)
from framebrew.schemas.job import JobResponse, SubmissionResponse, VideoResponse
from framebrew.schemas.payloads import (
    ArtifactRef,
    DirectUrl,
    DownloadPayload,
    GenerationPayload,
    PollingPayload,
    ProviderHandle,
    ScoringPayload,
    StagePayload,
)
from framebrew.schemas.score import QualityScore

__all__ = [
    "ArtifactRef",
    "DirectUrl",
    "DownloadPayload",
    "EventType",
    "GenerationParams",
    "GenerationPayload",
    "GenerationRequest",
    "JobResponse",
    "PollingPayload",
    "ProviderHandle",
    "QualityScore",
    "ReferenceImage",
    "ScoringPayload",
    "StagePayload",
    "StreamEvent",
    "SubmissionResponse",
    "VideoResponse",
    "validate_generation_params",
]
