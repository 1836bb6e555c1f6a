"""Background-image synthesis and web optimisation.

Images are generated from a segment's background description, optionally
grounded in the lesson's primary scene, and saved as PNG. A WebP sibling
(resized to fit inside the configured box, never enlarged) is written
afterwards for the viewer and renderer.
"""

import io
import logging
from abc import ABC, abstractmethod
from typing import Optional

from google import genai
from google.genai import types
from PIL import Image
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from lessonpipe.schemas.lesson import AudioSegment
from lessonpipe.schemas.scenes import SceneAnalysis
from lessonpipe.services.genai_client import is_retriable

logger = logging.getLogger(__name__)


def image_prompt(segment: AudioSegment, scenes: Optional[SceneAnalysis] = None) -> str:
    """Prompt for a segment's background image.

    Raises:
        ValueError: If the segment has no background description.
    """
    if not segment.background_image_description:
        raise ValueError(f"Segment {segment.id} has no background image description")
    prompt = segment.background_image_description.strip()
    if scenes and scenes.primary_scenes:
        top = scenes.primary_scenes[0]
        prompt += f"\n\nSetting: {top.name.replace('_', ' ')} in Thailand. {top.cultural_notes}"
    prompt += "\n\nWidescreen 16:9 photograph, no text, no captions, no watermarks."
    return prompt


def optimize_image(
    data: bytes,
    *,
    max_width: int = 1920,
    max_height: int = 1080,
    quality: int = 80,
) -> bytes:
    """Re-encode image bytes as WebP, fitting inside max_width x max_height."""
    with Image.open(io.BytesIO(data)) as img:
        img = img.convert("RGBA") if img.mode in ("P", "LA") else img
        if img.width > max_width or img.height > max_height:
            img.thumbnail((max_width, max_height))
        out = io.BytesIO()
        img.save(out, format="WEBP", quality=quality)
    optimized = out.getvalue()
    logger.debug(f"Optimized image {len(data) / 1024:.1f} KB -> {len(optimized) / 1024:.1f} KB")
    return optimized


class ImageSynthesizer(ABC):
    """Turns a text prompt into PNG bytes."""

    @abstractmethod
    async def generate(self, prompt: str) -> bytes:
        ...


class GeminiImageSynthesizer(ImageSynthesizer):
    """ImageSynthesizer backed by a Gemini image model (google-genai SDK)."""

    def __init__(
        self,
        client: genai.Client,
        model_id: str,
        *,
        max_retries: int = 5,
        base_delay: float = 2,
    ):
        self._client = client
        self._model_id = model_id
        self._max_retries = max_retries
        self._base_delay = base_delay

    async def generate(self, prompt: str) -> bytes:
        """Generate an image from a text prompt using generate_content().

        Raises:
            ValueError: If no image found in response
        """
        @retry(
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential(multiplier=self._base_delay, min=self._base_delay * 2, max=120) + wait_random(0, 5),
            retry=retry_if_exception(is_retriable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async def _call() -> bytes:
            response = await self._client.aio.models.generate_content(
                model=self._model_id,
                contents=prompt,
                config=types.GenerateContentConfig(
                    response_modalities=["IMAGE"],
                    image_config=types.ImageConfig(aspect_ratio="16:9"),
                ),
            )
            for part in response.candidates[0].content.parts:
                if part.inline_data:
                    return part.inline_data.data
            raise ValueError("No image generated in response")

        return await _call()
