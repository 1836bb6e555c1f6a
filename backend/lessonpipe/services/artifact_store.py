"""
Artifact storage for lesson working directories.

Each source video gets one working directory under videos_dir:

- {videos_dir}/{source_key}/lesson_analysis.json - content-analysis output
- {videos_dir}/{source_key}/audio_segments.json - ordered lesson script
- {videos_dir}/{source_key}/lesson_segments/ - per-segment audio/images and timing-metadata.json
- {videos_dir}/{source_key}/final_synchronized_lesson.json - renderer input
- {videos_dir}/{source_key}/output/ - rendered video

Writes are atomic (temp file + os.replace) so a crash never leaves a
truncated artifact that a later existence check would accept.
"""
import asyncio
import fcntl
import json
import logging
import os
import re
import tempfile
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Hashable, Optional, Type, TypeVar
from urllib.parse import parse_qs, urlparse

from pydantic import BaseModel

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

ANALYSIS_FILE = "lesson_analysis.json"
AUDIO_SEGMENTS_FILE = "audio_segments.json"
SEGMENTS_DIR = "lesson_segments"
TIMING_FILE = f"{SEGMENTS_DIR}/timing-metadata.json"
TIMELINE_FILE = "final_synchronized_lesson.json"
OUTPUT_DIR = "output"
LOCK_FILE = ".lock"

_YOUTUBE_ID = re.compile(r"^[A-Za-z0-9_-]{6,20}$")


def source_key_for(youtube_url: str, job_id: uuid.UUID) -> str:
    """Working-directory name for a job: the YouTube video id when parseable.

    Keying by source rather than job means a re-submitted job for the same
    video resumes from whatever artifacts already exist.
    """
    parsed = urlparse(youtube_url or "")
    candidate: Optional[str] = None
    if parsed.hostname in ("youtu.be", "www.youtu.be"):
        candidate = parsed.path.lstrip("/").split("/")[0]
    elif parsed.hostname and parsed.hostname.endswith("youtube.com"):
        if parsed.path.startswith(("/shorts/", "/embed/", "/live/")):
            candidate = parsed.path.split("/")[2]
        else:
            candidate = (parse_qs(parsed.query).get("v") or [None])[0]
    if candidate and _YOUTUBE_ID.match(candidate):
        return candidate
    return str(job_id)


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


class ArtifactStore:
    """
    Read/write access to lesson working directories.

    Implements path traversal protection to prevent directory escape attacks.
    """

    def __init__(self, base_dir: str | Path, public_base_url: str = "/videos"):
        """
        Initialize ArtifactStore with base directory.

        Args:
            base_dir: Root directory holding one working directory per source
            public_base_url: Prefix used when turning artifact keys into locators
        """
        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")
        # In-process locks, keyed by resolved working directory
        self._dir_locks = KeyedLocks()

    def job_dir(self, source_key: str) -> Path:
        """
        Get or create the working directory for a source.

        Raises:
            ValueError: If source_key creates path outside base_dir (traversal attack)
        """
        directory = (self.base_dir / source_key).resolve()
        if directory == self.base_dir or not directory.is_relative_to(self.base_dir):
            raise ValueError("Invalid job path")
        directory.mkdir(exist_ok=True)
        (directory / SEGMENTS_DIR).mkdir(exist_ok=True)
        (directory / OUTPUT_DIR).mkdir(exist_ok=True)
        return directory

    def path(self, source_key: str, key: str) -> Path:
        """Resolve an artifact key (relative path) inside the working directory."""
        directory = self.job_dir(source_key)
        target = (directory / key).resolve()
        if target == directory or not target.is_relative_to(directory):
            raise ValueError(f"Invalid artifact key: {key}")
        return target

    def exists(self, source_key: str, key: str) -> bool:
        """True when a complete artifact is on disk (empty files do not count)."""
        target = self.path(source_key, key)
        return target.is_file() and target.stat().st_size > 0

    def read_bytes(self, source_key: str, key: str) -> bytes:
        return self.path(source_key, key).read_bytes()

    def write_bytes_atomic(self, source_key: str, key: str, data: bytes) -> Path:
        """Write via a sibling temp file, fsync, then os.replace."""
        target = self.path(source_key, key)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return target

    def read_json(self, source_key: str, key: str) -> Any:
        return json.loads(self.read_bytes(source_key, key).decode("utf-8"))

    def write_json(self, source_key: str, key: str, data: Any) -> Path:
        payload = json.dumps(data, indent=2, ensure_ascii=False)
        return self.write_bytes_atomic(source_key, key, payload.encode("utf-8"))

    def read_model(self, source_key: str, key: str, model: Type[ModelT]) -> ModelT:
        """Load and validate a descriptor file; malformed input raises ValidationError."""
        return model.model_validate_json(self.read_bytes(source_key, key))

    def write_model(self, source_key: str, key: str, instance: BaseModel) -> Path:
        return self.write_json(
            source_key, key, instance.model_dump(mode="json", by_alias=True, exclude_none=True)
        )

    def public_url(self, source_key: str, key: str) -> str:
        """Locator stored in descriptors and consumed by the renderer/viewer."""
        self.path(source_key, key)
        return f"{self.public_base_url}/{source_key}/{key}"

    def resolve_url(self, url: str) -> Optional[Path]:
        """Map a locator produced by public_url back to a local file, if it is one."""
        prefix = f"{self.public_base_url}/"
        if not url.startswith(prefix):
            return None
        source_key, _, key = url[len(prefix):].partition("/")
        if not key:
            return None
        return self.path(source_key, key)

    @asynccontextmanager
    async def job_lock(self, source_key: str) -> AsyncIterator[None]:
        """Serialize check-then-write sequences on one working directory.

        Combines an in-process asyncio.Lock with an advisory flock on
        ``<dir>/.lock`` so separate worker processes are excluded too.
        """
        directory = self.job_dir(source_key)
        async with self._dir_locks.hold(directory):
            handle = open(directory / LOCK_FILE, "a+")
            try:
                await asyncio.to_thread(fcntl.flock, handle.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            finally:
                handle.close()
