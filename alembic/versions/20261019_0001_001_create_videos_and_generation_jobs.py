"""Create videos and generation_jobs tables.

Creates the two records owned by the generation pipeline:
    - videos: library assets, one row per render version
    - generation_jobs: render attempts, cascade-deleted with their video

Both status columns use native PostgreSQL enums with lowercase values
matching ``JobStatus``.

Revision ID: 001_create_generation_tables
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_create_generation_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

STATUS_VALUES = (
    "queued",
    "running",
    "polling",
    "downloading",
    "transcoding",
    "scoring",
    "ready",
    "failed",
)


def upgrade() -> None:
    """Create enums, tables and indexes."""
    videostatus = postgresql.ENUM(*STATUS_VALUES, name="videostatus", create_type=False)
    jobstatus = postgresql.ENUM(*STATUS_VALUES, name="jobstatus", create_type=False)
    sourcetype = postgresql.ENUM("generated", "uploaded", name="sourcetype", create_type=False)

    bind = op.get_bind()
    videostatus.create(bind, checkfirst=True)
    jobstatus.create(bind, checkfirst=True)
    sourcetype.create(bind, checkfirst=True)

    op.create_table(
        "videos",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("org_id", sa.String(64), nullable=False),
        sa.Column("project_id", sa.String(64), nullable=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("status", videostatus, nullable=False, server_default="queued"),
        sa.Column("source_type", sourcetype, nullable=False, server_default="generated"),
        sa.Column("duration_sec", sa.Integer(), nullable=True),
        sa.Column("aspect", sa.String(8), nullable=False, server_default="16:9"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("urls", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("score", sa.JSON(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_videos_org_id", "videos", ["org_id"])
    op.create_index("ix_videos_status", "videos", ["status"])
    op.create_index("ix_videos_org_id_status", "videos", ["org_id", "status"])

    op.create_table(
        "generation_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("video_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("style_preset", sa.String(64), nullable=True),
        sa.Column("negative_prompt", sa.Text(), nullable=True),
        sa.Column("aspect_ratio", sa.String(8), nullable=False, server_default="16:9"),
        sa.Column("resolution", sa.String(8), nullable=False, server_default="720p"),
        sa.Column("model", sa.String(16), nullable=False, server_default="fast"),
        sa.Column("duration_sec", sa.Integer(), nullable=True),
        sa.Column("status", jobstatus, nullable=False, server_default="queued"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("operation_handle", sa.String(255), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("run_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["video_id"],
            ["videos.id"],
            name="fk_generation_jobs_video_id",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_generation_jobs_video_id", "generation_jobs", ["video_id"])
    op.create_index("ix_generation_jobs_status", "generation_jobs", ["status"])


def downgrade() -> None:
    """Drop tables and enums."""
    op.drop_index("ix_generation_jobs_status", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_video_id", table_name="generation_jobs")
    op.drop_table("generation_jobs")

    op.drop_index("ix_videos_org_id_status", table_name="videos")
    op.drop_index("ix_videos_status", table_name="videos")
    op.drop_index("ix_videos_org_id", table_name="videos")
    op.drop_table("videos")

    bind = op.get_bind()
    postgresql.ENUM(name="sourcetype").drop(bind, checkfirst=True)
    postgresql.ENUM(name="jobstatus").drop(bind, checkfirst=True)
    postgresql.ENUM(name="videostatus").drop(bind, checkfirst=True)
