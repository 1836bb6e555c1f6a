"""Correction of stale artifact locators in the synchronized timeline.

Used after a storage move (different host or base path). Only values that
start with the known stale prefix are touched, so running it twice is a
no-op the second time and nothing is written.
"""

import logging

from lessonpipe.schemas.timeline import SynchronizedLesson
from lessonpipe.services.artifact_store import TIMELINE_FILE, ArtifactStore

logger = logging.getLogger(__name__)

_REF_FIELDS = ("audio_ref", "image_ref")


def rewrite_stale_prefix(
    store: ArtifactStore,
    source_key: str,
    stale_prefix: str,
    new_prefix: str,
) -> int:
    """Rewrite audioRef/imageRef values starting with ``stale_prefix``.

    Returns:
        Number of locators rewritten; the file is left untouched when 0.
    """
    if not stale_prefix:
        raise ValueError("stale_prefix must not be empty")

    timeline = store.read_model(source_key, TIMELINE_FILE, SynchronizedLesson)
    rewritten = 0
    segments = []
    for segment in timeline.segments:
        updates = {}
        for name in _REF_FIELDS:
            value = getattr(segment, name)
            if value and value.startswith(stale_prefix):
                updates[name] = new_prefix + value[len(stale_prefix):]
        rewritten += len(updates)
        segments.append(segment.model_copy(update=updates) if updates else segment)

    if rewritten == 0:
        logger.info(f"{source_key}: no locators start with {stale_prefix!r}")
        return 0

    store.write_model(source_key, TIMELINE_FILE, timeline.model_copy(update={"segments": segments}))
    logger.info(f"{source_key}: rewrote {rewritten} locators {stale_prefix!r} -> {new_prefix!r}")
    return rewritten
