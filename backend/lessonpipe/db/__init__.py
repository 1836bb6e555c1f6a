"""Persistence for lesson jobs and pipeline runs."""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from lessonpipe.db.engine import async_session, engine
from lessonpipe.db.models import Base, PipelineRun, VideoJob

logger = logging.getLogger(__name__)


async def init_database(bind: Optional[AsyncEngine] = None):
    """Initialize database schema on first run (idempotent)."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.debug("Database schema ready")


__all__ = [
    "Base",
    "VideoJob",
    "PipelineRun",
    "engine",
    "async_session",
    "init_database",
]
