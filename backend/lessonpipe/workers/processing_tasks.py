"""Background processing tasks for lesson jobs.

This module provides background task execution for the pipeline
orchestrator with in-memory progress tracking. A job failure is recorded
here and on the job itself; it never escapes into the caller's event loop.
"""

import logging
import uuid
from typing import Optional

from lessonpipe.orchestrator.pipeline import PipelineOrchestrator

logger = logging.getLogger(__name__)

# Module-level dict for in-memory progress tracking
TASK_STATUS: dict[str, dict] = {}


async def process_job_task(
    orchestrator: PipelineOrchestrator,
    job_id: str,
    render: bool = True,
) -> Optional[str]:
    """Run the pipeline for a job in the background.

    Args:
        orchestrator: Wired orchestrator (see build_orchestrator)
        job_id: Job UUID as string
        render: Also render the final video once the job completes

    Returns:
        The final job status, or None when the run raised (details in TASK_STATUS).
    """
    task_id = f"job_{job_id}"
    TASK_STATUS[task_id] = {
        "status": "processing",
        "current_step": "initializing",
    }

    def _progress(message: str) -> None:
        TASK_STATUS[task_id]["current_step"] = message

    try:
        job = await orchestrator.run(uuid.UUID(job_id), render=render, progress_callback=_progress)
        TASK_STATUS[task_id] = {
            "status": "complete",
            "current_step": "done",
            "job_status": job.status,
            "video_generation_status": job.video_generation_status,
        }
        return job.status
    except Exception as e:
        logger.error(f"Processing failed for job {job_id}: {e}", exc_info=True)
        current_step = TASK_STATUS.get(task_id, {}).get("current_step", "unknown")
        TASK_STATUS[task_id] = {
            "status": "error",
            "error": str(e),
            "current_step": current_step,
        }
        return None
