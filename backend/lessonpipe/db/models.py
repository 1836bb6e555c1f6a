"""SQLAlchemy 2.0 ORM models for Lesson Pipeline."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Text, JSON, Integer, Float, ForeignKey, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC timestamp, the format SQLite round-trips unchanged."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class VideoJob(Base):
    """One end-to-end lesson-video generation request.

    ``status`` covers script analysis through image synthesis;
    ``video_generation_status`` is an independent axis for the render stage
    so a failed render can be retried without touching ``status``.
    """
    __tablename__ = "video_jobs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    youtube_url: Mapped[str] = mapped_column(String(500))
    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    video_generation_status: Mapped[str] = mapped_column(String(20), default="not_started")
    video_generation_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    original_duration: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    output_segments: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    preferences: Mapped[dict] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow)
    processed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)


class PipelineRun(Base):
    """Execution metrics for one orchestrator invocation against a job."""
    __tablename__ = "pipeline_runs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("video_jobs.id"), index=True)
    kind: Mapped[str] = mapped_column(String(20), default="full")  # 'full' or 'render'
    started_at: Mapped[datetime] = mapped_column(server_default=func.now())
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    total_duration_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    items_failed: Mapped[int] = mapped_column(Integer, default=0)
    log: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
