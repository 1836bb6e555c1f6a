"""Narration synthesis for lesson segments.

A segment's text parts are synthesized one at a time (each part may be a
different language and speaking rate) and the PCM is concatenated into a
single WAV. Per-part offsets are returned so the viewer can highlight the
part currently being spoken.
"""

import io
import logging
import wave
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from google import genai
from google.genai import types
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from lessonpipe.schemas.lesson import AudioSegment, TextPart
from lessonpipe.schemas.timeline import TextPartTiming
from lessonpipe.services.genai_client import is_retriable

logger = logging.getLogger(__name__)

# Gemini TTS returns 16-bit mono PCM at 24 kHz
SAMPLE_RATE = 24000
SAMPLE_WIDTH = 2
CHANNELS = 1


@dataclass
class SpeechResult:
    """WAV bytes for one segment plus where each text part sits inside it."""

    audio: bytes
    duration: float
    part_timings: List[TextPartTiming] = field(default_factory=list)


def merge_short_parts(parts: Sequence[TextPart], min_chars: int = 3) -> List[TextPart]:
    """Fold parts shorter than ``min_chars`` (usually punctuation) into a neighbour.

    A short part joins the previous part when both share a language,
    otherwise the next part when that one does. Parts with no
    same-language neighbour are kept as they are.
    """
    if len(parts) <= 1:
        return [p.model_copy() for p in parts]

    merged: List[TextPart] = []
    i = 0
    while i < len(parts):
        current = parts[i]
        short = len(current.text.strip()) < min_chars

        if short and merged and merged[-1].language == current.language:
            previous = merged[-1]
            merged[-1] = previous.model_copy(update={
                "text": previous.text + current.text,
                "english_translation": _join(previous.english_translation, current.english_translation),
            })
            i += 1
            continue

        if short and i + 1 < len(parts) and parts[i + 1].language == current.language:
            following = parts[i + 1]
            merged.append(TextPart(
                text=current.text + following.text,
                language=current.language,
                speaking_rate=current.speaking_rate or following.speaking_rate,
                english_translation=_join(current.english_translation, following.english_translation),
            ))
            i += 2
            continue

        merged.append(current.model_copy())
        i += 1
    return merged


def _join(first: Optional[str], second: Optional[str]) -> Optional[str]:
    if first and second:
        return first + second
    return first or second


def pcm_to_wav(pcm: bytes) -> bytes:
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(CHANNELS)
        wav.setsampwidth(SAMPLE_WIDTH)
        wav.setframerate(SAMPLE_RATE)
        wav.writeframes(pcm)
    return buffer.getvalue()


def wav_duration(data: bytes) -> float:
    """Duration in seconds, read from the WAV header."""
    with wave.open(io.BytesIO(data), "rb") as wav:
        return wav.getnframes() / float(wav.getframerate())


def pcm_duration(pcm: bytes) -> float:
    return len(pcm) / float(SAMPLE_RATE * SAMPLE_WIDTH * CHANNELS)


class SpeechSynthesizer(ABC):
    """Turns one audio segment into a WAV file."""

    @abstractmethod
    async def synthesize(self, segment: AudioSegment) -> SpeechResult:
        ...


class GeminiSpeechSynthesizer(SpeechSynthesizer):
    """SpeechSynthesizer backed by a Gemini TTS model (google-genai SDK)."""

    def __init__(
        self,
        client: genai.Client,
        model_id: str,
        voice: str,
        *,
        english_speaking_rate: float = 0.8,
        short_part_chars: int = 3,
        max_retries: int = 5,
        base_delay: float = 2,
    ):
        self._client = client
        self._model_id = model_id
        self._voice = voice
        self._english_rate = english_speaking_rate
        self._short_part_chars = short_part_chars
        self._max_retries = max_retries
        self._base_delay = base_delay

    async def synthesize(self, segment: AudioSegment) -> SpeechResult:
        parts = segment.text_parts or [TextPart(text=segment.text, language="th")]
        parts = merge_short_parts(parts, self._short_part_chars)
        logger.info(f"Synthesizing {segment.id}: {len(parts)} parts")

        pcm = bytearray()
        timings: List[TextPartTiming] = []
        cursor = 0.0
        for index, part in enumerate(parts):
            rate = self.speaking_rate(part)
            chunk = await self._synthesize_part(part.text, rate)
            duration = pcm_duration(chunk)
            timings.append(TextPartTiming(
                text=part.text,
                language=part.language,
                duration=duration,
                start_time=cursor,
                end_time=cursor + duration,
                english_translation=part.english_translation,
            ))
            cursor += duration
            pcm.extend(chunk)
            logger.debug(f"{segment.id} part {index + 1}/{len(parts)} [{part.language}] {duration:.2f}s")

        audio = pcm_to_wav(bytes(pcm))
        return SpeechResult(audio=audio, duration=wav_duration(audio), part_timings=timings)

    def speaking_rate(self, part: TextPart) -> float:
        if part.speaking_rate:
            return part.speaking_rate
        return self._english_rate if part.language == "en" else 1.0

    async def _synthesize_part(self, text: str, rate: float) -> bytes:
        @retry(
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential(multiplier=self._base_delay, min=self._base_delay, max=60) + wait_random(0, 2),
            retry=retry_if_exception(is_retriable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async def _call() -> bytes:
            response = await self._client.aio.models.generate_content(
                model=self._model_id,
                contents=_delivery_prompt(text, rate),
                config=types.GenerateContentConfig(
                    response_modalities=["AUDIO"],
                    speech_config=types.SpeechConfig(
                        voice_config=types.VoiceConfig(
                            prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=self._voice),
                        ),
                    ),
                ),
            )
            for part in response.candidates[0].content.parts:
                if part.inline_data and part.inline_data.data:
                    return part.inline_data.data
            raise RuntimeError("No audio data in TTS response")

        return await _call()


def _delivery_prompt(text: str, rate: float) -> str:
    # Gemini TTS takes pacing as a natural-language instruction
    if rate < 0.95:
        return f"Say slowly and clearly, for a language learner: {text}"
    if rate > 1.05:
        return f"Say briskly: {text}"
    return text
