"""Pydantic schemas for serializing jobs and videos in API responses.

All schemas use Pydantic v2 syntax with model_config instead of class Config.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from framebrew.models import JobStatus, SourceType


class JobResponse(BaseModel):
    """Schema for GenerationJob API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    video_id: UUID
    prompt: str
    style_preset: str | None
    negative_prompt: str | None
    aspect_ratio: str
    resolution: str
    model: str
    duration_sec: int | None
    status: JobStatus
    progress: int
    error: str | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class VideoResponse(BaseModel):
    """Schema for Video API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    org_id: str
    project_id: str | None
    title: str
    status: JobStatus
    source_type: SourceType
    duration_sec: int | None
    aspect: str
    version: int
    urls: dict[str, str]
    score: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime


class SubmissionResponse(BaseModel):
    """Returned when a generation, retry or re-render is accepted."""

    job: JobResponse
    video: VideoResponse
