"""Pydantic schemas for content-analysis output and the audio-segments descriptor.

LessonAnalysis and AudioSegmentsDescriptor double as Gemini structured
output schemas (response_schema), so fields carry descriptions. On disk they
are stored with camelCase keys (audio_segments.json, lesson_analysis.json);
both spellings are accepted when reading.

Malformed descriptor files fail validation here rather than leaking
missing fields deeper into the pipeline.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ArtifactModel(BaseModel):
    """Base for every model persisted as a working-directory JSON file."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SourceSegment(ArtifactModel):
    """One topical section of the source video."""

    title: str = Field(description="Short heading for this section of the source video")
    content: str = Field(description="Summary of what is said in this section")
    key_topics: List[str] = Field(
        default_factory=list,
        description="Lowercase topic words discussed in this section (e.g., 'coffee', 'ordering')",
    )


class VocabularyItem(ArtifactModel):
    """A word or phrase worth teaching from the source."""

    word: str = Field(description="English word or short phrase")
    definition: str = Field(default="", description="Plain-English definition")
    translation: Optional[str] = Field(default=None, description="Translation into the learner's language")


class LessonAnalysis(ArtifactModel):
    """Structured analysis of the source video (content-analysis stage output)."""

    title: str = Field(description="Lesson title derived from the source video")
    description: str = Field(default="", description="One-paragraph summary of the lesson")
    segments: List[SourceSegment] = Field(default_factory=list)
    vocabulary: List[VocabularyItem] = Field(default_factory=list)
    original_duration: Optional[float] = Field(
        default=None, description="Source video duration in seconds, if known"
    )


class TextPart(ArtifactModel):
    """A single-language span of narration, synthesized separately."""

    text: str
    language: str = Field(description="ISO 639-1 language code, e.g. 'th' or 'en'")
    speaking_rate: Optional[float] = Field(
        default=None, description="Speech rate multiplier; omit for the language default"
    )
    english_translation: Optional[str] = None


class AudioSegment(ArtifactModel):
    """One narration unit of the lesson script."""

    id: str = Field(description="Stable segment id, e.g. 'intro', 'vocab_restaurant', 'conclusion'")
    text: str = Field(description="Complete narration text for display")
    text_parts: List[TextPart] = Field(
        default_factory=list,
        description="Narration split by language for speech synthesis",
    )
    description: Optional[str] = None
    screen_element: str = Field(
        default="content_card",
        description="Card type shown on screen (title_card, vocabulary_card, ...)",
    )
    visual_description: Optional[str] = None
    vocab_word: Optional[str] = None
    background_image_description: Optional[str] = Field(
        default=None,
        description="Detailed scene description used to generate the background image",
    )

    @field_validator("id")
    @classmethod
    def id_is_file_safe(cls, v: str) -> str:
        """Segment ids name files on disk (<id>.wav, <id>.png)."""
        if not v or "/" in v or "\\" in v or v.startswith("."):
            raise ValueError(f"segment id {v!r} is not a safe file name")
        return v


class AudioSegmentsDescriptor(ArtifactModel):
    """Contents of audio_segments.json: the ordered lesson script."""

    audio_segments: List[AudioSegment] = Field(default_factory=list)

    @field_validator("audio_segments")
    @classmethod
    def ids_are_unique(cls, v: List[AudioSegment]) -> List[AudioSegment]:
        seen = set()
        for segment in v:
            if segment.id in seen:
                raise ValueError(f"duplicate segment id {segment.id!r}")
            seen.add(segment.id)
        return v
