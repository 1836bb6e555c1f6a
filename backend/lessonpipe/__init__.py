"""Lesson Pipeline - language-lesson videos generated from source videos.

Only the render stage needs anything outside Python: the ffmpeg binary.
The CLI calls validate_dependencies() before any command that renders.
"""

import logging
import subprocess

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


def validate_dependencies() -> None:
    """Check that ffmpeg is on PATH and runs.

    Raises:
        RuntimeError: If the ffmpeg binary is missing or exits with an error.
    """
    try:
        result = subprocess.run(["ffmpeg", "-version"], capture_output=True, check=True, text=True)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        raise RuntimeError(
            "ffmpeg is required to render lesson videos but could not be run. "
            "Install it with your package manager (apt install ffmpeg, brew install ffmpeg) "
            "or from https://ffmpeg.org/download.html"
        ) from e
    logger.info(f"Using {result.stdout.splitlines()[0] if result.stdout else 'ffmpeg'}")
