"""State machine constants and transition logic for video jobs.

A job moves along two independent axes:

- ``status``: pending -> processing -> {completed, failed}. Both outcomes are
  terminal; a job never leaves them.
- ``video_generation_status``: not_started -> generating -> {completed, failed},
  with failed -> generating allowed so the render stage alone can be retried.

Every transition is a compare-and-set against the persisted record, so a
duplicate trigger observes InvalidTransition instead of double-processing.
"""

import logging
import uuid
from typing import Dict, FrozenSet, Optional

from lessonpipe.db.job_store import JobStore
from lessonpipe.db.models import VideoJob

logger = logging.getLogger(__name__)

STATUS = "status"
VIDEO_GENERATION_STATUS = "video_generation_status"

JOB_STATUSES = {
    "pending": "Created, waiting for a worker",
    "processing": "Pipeline stages running",
    "completed": "All required stages succeeded",
    "failed": "A fatal stage error stopped the job",
}

VIDEO_GENERATION_STATUSES = {
    "not_started": "Render stage has not run",
    "generating": "Render in progress",
    "completed": "Final video written",
    "failed": "Render failed; may be retried",
}

TRANSITIONS: Dict[str, Dict[str, FrozenSet[str]]] = {
    STATUS: {
        "pending": frozenset({"processing"}),
        "processing": frozenset({"completed", "failed"}),
        "completed": frozenset(),
        "failed": frozenset(),
    },
    VIDEO_GENERATION_STATUS: {
        "not_started": frozenset({"generating"}),
        "generating": frozenset({"completed", "failed"}),
        "completed": frozenset(),
        "failed": frozenset({"generating"}),
    },
}

# Entering any of these stamps processed_at (first time only)
TERMINAL_STATES = frozenset({"completed", "failed"})


class InvalidTransition(ValueError):
    """Raised when a transition is not permitted from the job's current state."""

    def __init__(self, job_id, axis: str, current: Optional[str], requested: str):
        self.job_id = job_id
        self.axis = axis
        self.current = current
        self.requested = requested
        super().__init__(
            f"Job {job_id}: cannot move {axis} from {current!r} to {requested!r}"
        )


def can_transition(axis: str, current: str, new: str) -> bool:
    """Check if ``current -> new`` is a permitted move on the given axis."""
    return new in TRANSITIONS[axis].get(current, frozenset())


def sources_for(axis: str, new: str) -> FrozenSet[str]:
    """Return every state from which ``new`` may be entered."""
    return frozenset(
        current for current, targets in TRANSITIONS[axis].items() if new in targets
    )


class JobStateMachine:
    """Validates and persists job state transitions through the JobStore."""

    def __init__(self, store: JobStore):
        self._store = store

    async def start(self, job_id: uuid.UUID) -> VideoJob:
        """pending -> processing. Only one concurrent caller can win."""
        return await self._transition(job_id, STATUS, "processing")

    async def complete(self, job_id: uuid.UUID) -> VideoJob:
        return await self._transition(job_id, STATUS, "completed")

    async def fail(self, job_id: uuid.UUID, error_message: str) -> VideoJob:
        return await self._transition(job_id, STATUS, "failed", error_message=error_message)

    async def begin_render(self, job_id: uuid.UUID) -> VideoJob:
        """not_started|failed -> generating; the job itself must be completed.

        ``status == completed`` is terminal, so reading it before the
        compare-and-set cannot race with another writer.
        """
        job = await self._store.get(job_id)
        if job.status != "completed":
            raise InvalidTransition(
                job_id, VIDEO_GENERATION_STATUS, job.video_generation_status, "generating"
            )
        return await self._transition(job_id, VIDEO_GENERATION_STATUS, "generating")

    async def complete_render(self, job_id: uuid.UUID, **changes) -> VideoJob:
        return await self._transition(job_id, VIDEO_GENERATION_STATUS, "completed", **changes)

    async def fail_render(self, job_id: uuid.UUID, error_message: str, **changes) -> VideoJob:
        return await self._transition(
            job_id, VIDEO_GENERATION_STATUS, "failed", error_message=error_message, **changes
        )

    async def _transition(
        self,
        job_id: uuid.UUID,
        axis: str,
        new: str,
        *,
        error_message: Optional[str] = None,
        **changes,
    ) -> VideoJob:
        sources = sources_for(axis, new)
        if not sources:
            raise InvalidTransition(job_id, axis, None, new)

        if new == "failed":
            changes["error_message"] = error_message or "Unknown error"
        elif "failed" in sources:
            # Leaving a failed state clears the previous error
            changes["error_message"] = None

        changed = await self._store.compare_and_set(
            job_id,
            axis,
            sources,
            new,
            mark_processed=new in TERMINAL_STATES,
            **changes,
        )
        job = await self._store.get(job_id)
        if not changed:
            current = getattr(job, axis)
            logger.warning(f"Job {job_id}: rejected {axis} transition {current} -> {new}")
            raise InvalidTransition(job_id, axis, current, new)

        logger.info(f"Job {job_id}: {axis} -> {new}")
        return job
