"""Final video rendering from the synchronized timeline.

Each timeline segment becomes one still-image clip carrying its narration,
encoded for exactly the segment's duration so the rendered video keeps the
timeline's clock. Segments without an image get a solid placeholder frame;
segments without audio get silence. Clips are joined with the ffmpeg concat
demuxer.
"""

import asyncio
import logging
import subprocess
import tempfile
from pathlib import Path
from typing import List, Optional, Protocol

from lessonpipe.schemas.timeline import SynchronizedLesson, TimelineSegment
from lessonpipe.services.artifact_store import ArtifactStore

logger = logging.getLogger(__name__)

WIDTH = 1920
HEIGHT = 1080
FPS = 25
AUDIO_RATE = 24000


class Renderer(Protocol):
    async def render(self, timeline: SynchronizedLesson, output_path: Path) -> Path:
        ...


class FfmpegRenderer:
    """Renderer that shells out to ffmpeg (validated by validate_dependencies)."""

    def __init__(self, store: ArtifactStore, placeholder_color: str = "0x1e1e2e"):
        self.store = store
        self.placeholder_color = placeholder_color

    async def render(self, timeline: SynchronizedLesson, output_path: Path) -> Path:
        """Render the timeline to ``output_path``.

        Raises:
            ValueError: If the timeline has no playable segments
            subprocess.CalledProcessError: If ffmpeg fails
        """
        playable = [s for s in timeline.segments if s.duration > 0]
        if not playable:
            raise ValueError("Timeline has no segments with a positive duration")
        logger.info(f"Rendering {len(playable)} segments ({timeline.total_duration:.2f}s) -> {output_path}")
        await asyncio.to_thread(self._render_sync, playable, output_path)
        logger.info(f"Render complete: {output_path}")
        return output_path

    def _render_sync(self, segments: List[TimelineSegment], output_path: Path) -> None:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(dir=output_path.parent, prefix=".clips-") as work:
            work_dir = Path(work)
            clips = []
            for index, segment in enumerate(segments):
                clip = work_dir / f"{index:04d}.mp4"
                _run_ffmpeg(self._clip_command(segment, clip))
                clips.append(clip)

            list_file = work_dir / "concat_list.txt"
            with open(list_file, "w") as f:
                for clip in clips:
                    # Use absolute paths for reliability
                    f.write(f"file '{clip.resolve()}'\n")

            # Render to a temp name so a failed concat never replaces a good video
            partial = work_dir / f"partial{output_path.suffix}"
            _run_ffmpeg([
                "ffmpeg", "-y",
                "-f", "concat",
                "-safe", "0",  # Allow absolute paths
                "-i", str(list_file),
                "-c", "copy",
                str(partial),
            ])
            partial.replace(output_path)

    def _clip_command(self, segment: TimelineSegment, clip: Path) -> List[str]:
        duration = f"{segment.duration:.3f}"
        image = self._local(segment.image_ref)
        audio = self._local(segment.audio_ref)

        cmd = ["ffmpeg", "-y"]
        if image:
            cmd += ["-loop", "1", "-framerate", str(FPS), "-i", str(image)]
        else:
            cmd += ["-f", "lavfi", "-i", f"color=c={self.placeholder_color}:s={WIDTH}x{HEIGHT}:r={FPS}"]
        if audio:
            cmd += ["-i", str(audio)]
        else:
            cmd += ["-f", "lavfi", "-i", f"anullsrc=r={AUDIO_RATE}:cl=mono"]

        return cmd + [
            "-t", duration,
            "-vf", (
                f"scale={WIDTH}:{HEIGHT}:force_original_aspect_ratio=decrease,"
                f"pad={WIDTH}:{HEIGHT}:(ow-iw)/2:(oh-ih)/2,format=yuv420p"
            ),
            "-c:v", "libx264", "-tune", "stillimage", "-r", str(FPS),
            "-c:a", "aac", "-ar", str(AUDIO_RATE), "-ac", "1",
            str(clip),
        ]

    def _local(self, ref: Optional[str]) -> Optional[Path]:
        if not ref:
            return None
        path = self.store.resolve_url(ref)
        if path is None or not path.is_file():
            logger.warning(f"Timeline reference {ref} is not a local file, using fallback")
            return None
        return path


def _run_ffmpeg(cmd: List[str]) -> None:
    try:
        subprocess.run(cmd, check=True, capture_output=True)
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.decode(errors="replace") if e.stderr else "No error output"
        logger.error(f"ffmpeg error: {stderr[-2000:]}")
        raise
