"""Content analysis and lesson-script writing.

Both calls return validated pydantic models via Gemini structured output
(response_schema), so downstream stages never see loosely typed JSON.
The orchestrator treats any failure here as fatal for the job: every later
stage depends on the script.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Optional, Type, TypeVar

from google import genai
from google.genai import types
from pydantic import BaseModel
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from lessonpipe.db.models import VideoJob
from lessonpipe.schemas.lesson import AudioSegmentsDescriptor, LessonAnalysis
from lessonpipe.schemas.scenes import SceneAnalysis
from lessonpipe.services.genai_client import is_retriable

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)

ANALYSIS_SYSTEM_PROMPT = """You are an experienced English teacher preparing lessons for Thai learners.
Watch the video and break it into topical segments. For each segment give a short title,
a summary of what is said, and lowercase key topic words. Then list the vocabulary worth
teaching with plain-English definitions and Thai translations."""

SCRIPT_SYSTEM_PROMPT = """You write narration scripts for short English lessons aimed at Thai learners.
The narrator speaks Thai and switches to English for the words and phrases being taught.

Rules:
- Start with a segment with id "intro" and finish with one with id "conclusion".
- Use ids like "learning_objective_1", "vocab_word_1", "grammar_1", "practice_1".
- Ids must be unique and safe as file names.
- Split each segment's narration into textParts by language ("th" or "en");
  give Thai parts an englishTranslation.
- Vocabulary segments set vocabWord and screenElement "vocabulary_card".
- Every segment gets a backgroundImageDescription: one detailed, photographic scene
  matching the situation being taught. Never ask for text in the image."""


class ContentAnalyzer(ABC):
    """Produces the lesson analysis and the narration script for a job."""

    @abstractmethod
    async def analyze_source(self, job: VideoJob) -> LessonAnalysis:
        """Analyse the job's source video."""
        ...

    @abstractmethod
    async def write_script(
        self,
        analysis: LessonAnalysis,
        scenes: SceneAnalysis,
        preferences: dict,
    ) -> AudioSegmentsDescriptor:
        """Write the ordered narration script, steered by the ranked scenes."""
        ...


class GeminiContentAnalyzer(ContentAnalyzer):
    """ContentAnalyzer backed by a Gemini text model."""

    def __init__(
        self,
        client: genai.Client,
        model_id: str,
        *,
        max_retries: int = 3,
        temperature: float = 0.4,
    ):
        self._client = client
        self._model_id = model_id
        self._max_retries = max_retries
        self._temperature = temperature

    async def analyze_source(self, job: VideoJob) -> LessonAnalysis:
        contents = [
            types.Part.from_uri(file_uri=job.youtube_url, mime_type="video/*"),
            f"Video title: {job.title}\n"
            f"Description: {job.description or '(none)'}\n"
            f"Target audience: {(job.preferences or {}).get('target_audience', 'thai_college_students')}",
        ]
        analysis = await self._generate(contents, LessonAnalysis, ANALYSIS_SYSTEM_PROMPT)
        logger.info(
            f"Analysed {job.youtube_url}: {len(analysis.segments)} segments, "
            f"{len(analysis.vocabulary)} vocabulary items"
        )
        return analysis

    async def write_script(
        self,
        analysis: LessonAnalysis,
        scenes: SceneAnalysis,
        preferences: dict,
    ) -> AudioSegmentsDescriptor:
        prompt = _script_prompt(analysis, scenes, preferences)
        script = await self._generate(prompt, AudioSegmentsDescriptor, SCRIPT_SYSTEM_PROMPT)
        logger.info(f"Wrote script for {analysis.title!r}: {len(script.audio_segments)} segments")
        return script

    async def _generate(self, contents, schema: Type[SchemaT], system_prompt: str) -> SchemaT:
        @retry(
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential(multiplier=1, min=2, max=30),
            retry=retry_if_exception(is_retriable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async def _call() -> SchemaT:
            response = await self._client.aio.models.generate_content(
                model=self._model_id,
                contents=contents,
                config=types.GenerateContentConfig(
                    temperature=self._temperature,
                    response_mime_type="application/json",
                    response_schema=schema,
                    system_instruction=system_prompt,
                ),
            )
            return schema.model_validate_json(response.text)

        return await _call()


def _script_prompt(analysis: LessonAnalysis, scenes: SceneAnalysis, preferences: dict) -> str:
    duration = preferences.get("target_segment_duration")
    audience = preferences.get("target_audience", "thai_college_students")
    difficulty: Optional[str] = preferences.get("difficulty_level")

    scene_lines = [
        f"- {s.name} (confidence {s.confidence:.2f}): {s.cultural_notes}; situations: {', '.join(s.situations)}"
        for s in scenes.primary_scenes
    ]
    fallback_lines = [f"- {s.name}: {', '.join(s.situations)}" for s in scenes.secondary_scenes]

    sections = [
        "Lesson analysis:",
        json.dumps(analysis.model_dump(by_alias=True, exclude_none=True), ensure_ascii=False, indent=2),
        "",
        f"Audience: {audience}",
    ]
    if duration:
        sections.append(f"Target length: about {duration} seconds of narration")
    if difficulty:
        sections.append(f"Difficulty: {difficulty}")
    if scene_lines:
        sections += ["", "Build the examples around these situations:", *scene_lines]
    if fallback_lines:
        sections += ["", "If those run thin, use:", *fallback_lines]
    if scenes.suggested_vocabulary:
        sections += ["", f"Prioritise these words: {', '.join(scenes.suggested_vocabulary)}"]
    if scenes.cultural_elements:
        sections += [f"Cultural points to weave in: {', '.join(scenes.cultural_elements)}"]
    if preferences.get("include_vocabulary_highlights", True) is False:
        sections += ["Do not add separate vocabulary segments."]
    return "\n".join(sections)
