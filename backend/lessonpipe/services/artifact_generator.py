"""Idempotent synthesis wrapper for per-segment artifacts.

ensure() checks the working directory before calling out to a synthesis
capability: an artifact already on disk is returned as reused and no
external call is made. New artifacts are written atomically, so a crash
mid-write never leaves a file a later check would accept.

ensure_many() runs a batch under a concurrency bound and always reports one
outcome per item; per-item failures are collected rather than raised.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from lessonpipe.services.artifact_store import ArtifactStore, KeyedLocks

logger = logging.getLogger(__name__)

Produce = Callable[[], Awaitable[bytes]]


class ArtifactSynthesisFailure(RuntimeError):
    """External capability call failed for one artifact.

    The underlying error is chained as ``__cause__``.
    """

    def __init__(self, key: str, cause: BaseException):
        self.key = key
        self.cause = cause
        super().__init__(f"{key}: {type(cause).__name__}: {cause}")


@dataclass
class ArtifactOutcome:
    """Result of one ensure() call."""

    key: str
    reused: bool = False
    location: Optional[Path] = None
    error: Optional[ArtifactSynthesisFailure] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchOutcome:
    """One outcome per requested item, in request order."""

    outcomes: List[ArtifactOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> List[ArtifactOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> List[ArtifactOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def reused(self) -> List[ArtifactOutcome]:
        return [o for o in self.outcomes if o.reused]

    def by_key(self) -> Dict[str, ArtifactOutcome]:
        return {o.key: o for o in self.outcomes}


class ArtifactGenerator:
    """Existence check, then produce, then atomic write.

    The check-then-write sequence for one key is serialized in-process with a
    per-key asyncio.Lock. Cross-process exclusion is the caller's
    ArtifactStore.job_lock, held for the whole pipeline run.
    """

    def __init__(self, store: ArtifactStore, concurrency: int = 4):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.store = store
        self.concurrency = concurrency
        self._key_locks = KeyedLocks()

    async def ensure(self, source_key: str, key: str, produce: Produce) -> ArtifactOutcome:
        """Return the artifact at ``key``, producing it only if absent.

        Raises:
            ArtifactSynthesisFailure: The existence check, produce() or the write
                failed, or produce() returned no data.
        """
        async with self._key_locks.hold((source_key, key)):
            try:
                return await self._check_then_produce(source_key, key, produce)
            except ArtifactSynthesisFailure:
                raise
            except Exception as e:
                raise ArtifactSynthesisFailure(key, e) from e

    async def _check_then_produce(self, source_key: str, key: str, produce: Produce) -> ArtifactOutcome:
        if self.store.exists(source_key, key):
            logger.debug(f"{source_key}/{key} already exists, reusing")
            return ArtifactOutcome(key=key, reused=True, location=self.store.path(source_key, key))

        start = time.monotonic()
        data = await produce()
        if not data:
            empty = ValueError("synthesis returned no data")
            raise ArtifactSynthesisFailure(key, empty) from empty

        location = await asyncio.to_thread(self.store.write_bytes_atomic, source_key, key, data)
        logger.info(
            f"Generated {source_key}/{key} ({len(data) / 1024:.1f} KB) "
            f"in {time.monotonic() - start:.2f}s"
        )
        return ArtifactOutcome(key=key, reused=False, location=location)

    async def ensure_many(
        self,
        source_key: str,
        items: Sequence[Tuple[str, Produce]],
    ) -> BatchOutcome:
        """Ensure every (key, produce) pair; N items always yield N outcomes.

        Completion order is irrelevant because every artifact is keyed by its
        own name, not its position.
        """
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _one(key: str, produce: Produce) -> ArtifactOutcome:
            async with semaphore:
                try:
                    return await self.ensure(source_key, key, produce)
                except ArtifactSynthesisFailure as e:
                    logger.warning(f"Artifact {source_key}/{key} failed: {e}")
                    return ArtifactOutcome(key=key, error=e)

        outcomes = await asyncio.gather(*[_one(key, produce) for key, produce in items])
        batch = BatchOutcome(outcomes=list(outcomes))
        logger.info(
            f"{source_key}: {len(batch.outcomes)} artifacts, "
            f"{len(batch.reused)} reused, {len(batch.failed)} failed"
        )
        return batch
