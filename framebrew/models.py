"""SQLAlchemy 2.0 ORM models.

This module contains the two records the generation pipeline owns: the
``Video`` asset and the ``GenerationJob`` that produces it. All models use the
Mapped[type] annotation pattern required by SQLAlchemy 2.0.

Ownership:
    The CRUD layer creates rows and owns descriptive fields (title, project,
    prompt). While a job is active the pipeline owns ``status``, ``progress``,
    ``operation_handle``, ``error``, ``urls`` and ``score``, and every write to
    those fields goes through ``StatusProjector``.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, validates

from framebrew.exceptions import InvalidStateTransitionError


def utcnow() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


class JobStatus(enum.Enum):
    """Pipeline status shared by jobs and the videos they produce.

    Pipeline Flow (Happy Path):
        queued → running → polling → downloading → transcoding → scoring → ready

    Error Flow:
        any non-terminal status → failed; failed → queued on explicit retry

    Terminal States:
        ready, failed
    """

    QUEUED = "queued"
    RUNNING = "running"
    POLLING = "polling"
    DOWNLOADING = "downloading"
    TRANSCODING = "transcoding"
    SCORING = "scoring"
    READY = "ready"
    FAILED = "failed"


# Videos move through the same stages as their job
VideoStatus = JobStatus

TERMINAL_STATUSES = frozenset({JobStatus.READY, JobStatus.FAILED})
CANCELLABLE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.RUNNING})

# Position of each status along the happy path
STAGE_ORDER = {
    status: rank
    for rank, status in enumerate(
        [
            JobStatus.QUEUED,
            JobStatus.RUNNING,
            JobStatus.POLLING,
            JobStatus.DOWNLOADING,
            JobStatus.TRANSCODING,
            JobStatus.SCORING,
            JobStatus.READY,
        ]
    )
}


class SourceType(enum.Enum):
    """How a video entered the library."""

    GENERATED = "generated"
    UPLOADED = "uploaded"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def _status_enum(name: str) -> Enum:
    return Enum(
        JobStatus,
        native_enum=True,
        name=name,
        values_callable=lambda x: [e.value for e in x],
    )


class Video(Base):
    """A video asset in an organization's library.

    Generated videos start QUEUED and follow their job through the pipeline.
    Uploaded videos are created READY by the CRUD layer. A re-render never
    mutates an existing row: it creates a new Video with ``version + 1``.

    Attributes:
        id: UUID primary key.
        org_id: Owning organization.
        project_id: Project the video belongs to.
        title: Display title.
        status: Pipeline status (mirrors the active job).
        source_type: GENERATED or UPLOADED.
        duration_sec: Requested or measured duration in seconds.
        aspect: Aspect ratio ("16:9" or "9:16").
        version: Render version, incremented on re-render.
        urls: Asset kind ("mp4", "thumbnail", "hls", "captions") → URL.
        score: Quality score dict, None until scored.
        video_metadata: Provider fields, processing progress, scoring errors.
    """

    __tablename__ = "videos"

    VALID_TRANSITIONS = {
        JobStatus.QUEUED: [JobStatus.RUNNING, JobStatus.FAILED],
        JobStatus.RUNNING: [JobStatus.POLLING, JobStatus.FAILED],
        JobStatus.POLLING: [JobStatus.DOWNLOADING, JobStatus.FAILED],
        JobStatus.DOWNLOADING: [JobStatus.TRANSCODING, JobStatus.FAILED],
        JobStatus.TRANSCODING: [JobStatus.SCORING, JobStatus.FAILED],
        # Scoring failure still delivers the video
        JobStatus.SCORING: [JobStatus.READY, JobStatus.FAILED],
        # Re-score of a finished video
        JobStatus.READY: [JobStatus.SCORING],
        JobStatus.FAILED: [JobStatus.QUEUED],
    }

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    project_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[JobStatus] = mapped_column(
        _status_enum("videostatus"),
        nullable=False,
        default=JobStatus.QUEUED,
        index=True,
    )
    source_type: Mapped[SourceType] = mapped_column(
        Enum(
            SourceType,
            native_enum=True,
            name="sourcetype",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=SourceType.GENERATED,
    )

    duration_sec: Mapped[int | None] = mapped_column(Integer, nullable=True)
    aspect: Mapped[str] = mapped_column(String(8), nullable=False, default="16:9")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    urls: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    score: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    # "metadata" is reserved by DeclarativeBase
    video_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    jobs: Mapped[list["GenerationJob"]] = relationship(
        "GenerationJob", back_populates="video", order_by="GenerationJob.created_at"
    )

    __table_args__ = (Index("ix_videos_org_id_status", "org_id", "status"),)

    @validates("status")
    def validate_status_change(self, key: str, value: JobStatus) -> JobStatus:
        """Reject status changes that skip or reverse pipeline stages.

        Raises:
            InvalidStateTransitionError: If the transition is not in VALID_TRANSITIONS.
        """
        if self.status is None:
            return value

        if value not in self.VALID_TRANSITIONS.get(self.status, []):
            raise InvalidStateTransitionError(
                f"Invalid video transition: {self.status.value} → {value.value}",
                from_status=self.status,
                to_status=value,
            )
        return value

    def __repr__(self) -> str:
        return (
            f"<Video(id={self.id!s:.8}, title={self.title!r}, "
            f"status={self.status.value!r}, version={self.version})>"
        )


class GenerationJob(Base):
    """One attempt (and its retries) to render a video from a prompt.

    Invariants:
        - progress never decreases within an attempt
        - operation_handle is written at most once per attempt
        - error is set if and only if status is FAILED
        - run_number grows by one on every explicit retry; stage payloads
          stamped with an older run_number no longer write to the job

    Attributes:
        id: UUID primary key.
        video_id: Video this job renders.
        prompt: Text prompt (≤2000 chars).
        style_preset: Optional style preset name.
        negative_prompt: Things the render should avoid (≤1000 chars).
        aspect_ratio: "16:9" or "9:16".
        resolution: "720p" or "1080p".
        model: Model tier, "stable" or "fast".
        duration_sec: Requested duration.
        status: Pipeline status.
        progress: 0-100.
        operation_handle: Provider's opaque render handle.
        error: Failure message, only when FAILED.
        run_number: Attempt counter, 1 for the first run.
        completed_at: When the job reached READY or FAILED.
    """

    __tablename__ = "generation_jobs"

    VALID_TRANSITIONS = {
        JobStatus.QUEUED: [JobStatus.RUNNING, JobStatus.FAILED],
        JobStatus.RUNNING: [JobStatus.POLLING, JobStatus.FAILED],
        JobStatus.POLLING: [JobStatus.DOWNLOADING, JobStatus.FAILED],
        JobStatus.DOWNLOADING: [JobStatus.TRANSCODING, JobStatus.FAILED],
        JobStatus.TRANSCODING: [JobStatus.SCORING, JobStatus.FAILED],
        JobStatus.SCORING: [JobStatus.READY, JobStatus.FAILED],
        JobStatus.READY: [],
        JobStatus.FAILED: [JobStatus.QUEUED],
    }

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    video_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("videos.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    style_preset: Mapped[str | None] = mapped_column(String(64), nullable=True)
    negative_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    aspect_ratio: Mapped[str] = mapped_column(String(8), nullable=False, default="16:9")
    resolution: Mapped[str] = mapped_column(String(8), nullable=False, default="720p")
    model: Mapped[str] = mapped_column(String(16), nullable=False, default="fast")
    duration_sec: Mapped[int | None] = mapped_column(Integer, nullable=True)

    status: Mapped[JobStatus] = mapped_column(
        _status_enum("jobstatus"),
        nullable=False,
        default=JobStatus.QUEUED,
        index=True,
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    operation_handle: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    run_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    video: Mapped["Video"] = relationship("Video", back_populates="jobs")

    @validates("status")
    def validate_status_change(self, key: str, value: JobStatus) -> JobStatus:
        """Validate status transition before committing to database.

        Args:
            key: The attribute name being validated (always "status").
            value: The new JobStatus value being assigned.

        Returns:
            The validated JobStatus value if transition is valid.

        Raises:
            InvalidStateTransitionError: If the transition is not valid according
                to VALID_TRANSITIONS mapping.

        Note:
            Validation is skipped on initial job creation (status is None).
        """
        if self.status is None:
            return value

        allowed_transitions = self.VALID_TRANSITIONS.get(self.status, [])
        if value not in allowed_transitions:
            raise InvalidStateTransitionError(
                f"Invalid transition: {self.status.value} → {value.value}",
                from_status=self.status,
                to_status=value,
            )

        return value

    @property
    def is_terminal(self) -> bool:
        """True once the job is READY or FAILED."""
        return self.status in TERMINAL_STATUSES

    def generation_params(self) -> dict[str, Any]:
        """Return the render parameters stored on this job."""
        return {
            "prompt": self.prompt,
            "style_preset": self.style_preset,
            "negative_prompt": self.negative_prompt,
            "aspect_ratio": self.aspect_ratio,
            "resolution": self.resolution,
            "model": self.model,
            "duration_sec": self.duration_sec,
        }

    def __repr__(self) -> str:
        return (
            f"<GenerationJob(id={self.id!s:.8}, video_id={self.video_id!s:.8}, "
            f"status={self.status.value!r}, progress={self.progress})>"
        )
