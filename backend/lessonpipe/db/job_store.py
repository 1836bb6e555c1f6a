"""Narrow read/write contract over persisted VideoJob records.

Everything above the database layer (state machine, orchestrator, CLI)
goes through JobStore rather than issuing ORM queries directly. Status
changes use compare_and_set, a single conditional UPDATE, so two
concurrent callers can never both win the same transition.
"""

import logging
import uuid
from typing import Any, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lessonpipe.db.models import PipelineRun, VideoJob, utcnow

logger = logging.getLogger(__name__)

# Columns that may never be written after creation
_IMMUTABLE_FIELDS = {"id", "preferences", "created_at"}
_STATUS_FIELDS = {"status", "video_generation_status"}


class JobNotFound(LookupError):
    """Raised when a job id has no persisted record."""


class JobStore:
    """Async persistence gateway for VideoJob records."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create(
        self,
        *,
        youtube_url: str,
        title: str,
        description: Optional[str] = None,
        user_id: Optional[str] = None,
        preferences: Optional[dict] = None,
    ) -> VideoJob:
        """Persist a new pending job and return it."""
        now = utcnow()
        job = VideoJob(
            youtube_url=youtube_url,
            title=title,
            description=description,
            user_id=user_id,
            preferences=dict(preferences or {}),
            status="pending",
            video_generation_status="not_started",
            output_segments=[],
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as session:
            session.add(job)
            await session.commit()
            await session.refresh(job)
        logger.info(f"Created job {job.id} for {youtube_url}")
        return job

    async def get(self, job_id: uuid.UUID) -> VideoJob:
        async with self._session_factory() as session:
            job = await session.get(VideoJob, job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    async def list_jobs(self, status: Optional[str] = None) -> list[VideoJob]:
        stmt = select(VideoJob).order_by(VideoJob.created_at.desc())
        if status is not None:
            stmt = stmt.where(VideoJob.status == status)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def compare_and_set(
        self,
        job_id: uuid.UUID,
        field: str,
        expected: str | Iterable[str],
        new: str,
        *,
        mark_processed: bool = False,
        **changes: Any,
    ) -> bool:
        """Atomically move ``field`` from one of ``expected`` to ``new``.

        Issues one ``UPDATE ... WHERE id = :id AND field IN (:expected)``.
        Returns True when exactly this call performed the change. Every
        successful write stamps ``updated_at``; ``mark_processed`` stamps
        ``processed_at`` only if it is still NULL.
        """
        if field not in _STATUS_FIELDS:
            raise ValueError(f"compare_and_set only supports status fields, got {field!r}")
        self._reject_immutable(changes)

        expected_values = [expected] if isinstance(expected, str) else list(expected)
        column = getattr(VideoJob, field)
        now = utcnow()
        values: dict[str, Any] = {field: new, "updated_at": now, **changes}
        if mark_processed:
            values["processed_at"] = func.coalesce(VideoJob.processed_at, now)

        stmt = (
            update(VideoJob)
            .where(VideoJob.id == job_id)
            .where(column.in_(expected_values))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    async def update_fields(self, job_id: uuid.UUID, **changes: Any) -> VideoJob:
        """Write non-status columns (progress data, durations)."""
        self._reject_immutable(changes)
        if _STATUS_FIELDS & changes.keys():
            raise ValueError("Status fields must be changed through compare_and_set")
        async with self._session_factory() as session:
            job = await session.get(VideoJob, job_id)
            if job is None:
                raise JobNotFound(f"Job {job_id} not found")
            for key, value in changes.items():
                setattr(job, key, value)
            job.updated_at = utcnow()
            await session.commit()
            await session.refresh(job)
        return job

    async def append_output_segment(self, job_id: uuid.UUID, entry: dict) -> VideoJob:
        """Append one produced segment record; completed jobs are immutable."""
        async with self._session_factory() as session:
            job = await session.get(VideoJob, job_id)
            if job is None:
                raise JobNotFound(f"Job {job_id} not found")
            if job.status == "completed":
                raise ValueError(f"Job {job_id} is completed; output_segments are immutable")
            # Reassign rather than mutate so the JSON column is flagged dirty
            job.output_segments = [*(job.output_segments or []), entry]
            job.updated_at = utcnow()
            await session.commit()
            await session.refresh(job)
        return job

    @staticmethod
    def _reject_immutable(changes: dict) -> None:
        blocked = _IMMUTABLE_FIELDS & changes.keys()
        if blocked:
            raise ValueError(f"Immutable job fields cannot be updated: {sorted(blocked)}")

    async def start_run(self, job_id: uuid.UUID, kind: str = "full") -> PipelineRun:
        """Open a PipelineRun timing record for one orchestrator invocation."""
        run = PipelineRun(job_id=job_id, kind=kind, started_at=utcnow())
        async with self._session_factory() as session:
            session.add(run)
            await session.commit()
            await session.refresh(run)
        return run

    async def finish_run(
        self,
        run_id: uuid.UUID,
        *,
        total_duration_seconds: float,
        items_failed: int = 0,
        log: Optional[dict] = None,
    ) -> PipelineRun:
        async with self._session_factory() as session:
            run = await session.get(PipelineRun, run_id)
            if run is None:
                raise LookupError(f"PipelineRun {run_id} not found")
            run.completed_at = utcnow()
            run.total_duration_seconds = total_duration_seconds
            run.items_failed = items_failed
            run.log = log
            await session.commit()
            await session.refresh(run)
        return run

    async def latest_run(self, job_id: uuid.UUID) -> Optional[PipelineRun]:
        stmt = (
            select(PipelineRun)
            .where(PipelineRun.job_id == job_id)
            .order_by(PipelineRun.started_at.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()
