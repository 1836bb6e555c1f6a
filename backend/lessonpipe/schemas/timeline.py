"""Timing and synchronized-timeline descriptors.

timing-metadata.json records what the audio stage actually produced;
final_synchronized_lesson.json is the single source of truth the renderer
consumes. Both validate that segments are contiguous, gapless and ordered.
"""

import math
from typing import List, Optional

from pydantic import Field, model_validator

from lessonpipe.schemas.lesson import ArtifactModel, TextPart

_TOLERANCE = 1e-6


class TextPartTiming(ArtifactModel):
    """Offset of one text part inside its segment's audio."""

    text: str
    language: str
    duration: float
    start_time: float
    end_time: float
    english_translation: Optional[str] = None


class TimingEntry(ArtifactModel):
    """One synthesized audio segment placed on the lesson clock."""

    segment_id: str
    file_name: str
    duration: float = Field(ge=0)
    start_time: float = Field(ge=0)
    end_time: float = Field(ge=0)
    text: str
    text_part_timings: Optional[List[TextPartTiming]] = None


class TimelineSegment(ArtifactModel):
    """One scheduled unit of the final video."""

    id: str
    text: str
    duration: float = Field(ge=0)
    start_time: float = Field(ge=0)
    end_time: float = Field(ge=0)
    audio_ref: Optional[str] = None
    image_ref: Optional[str] = None
    screen_element: str = "content_card"
    vocab_word: Optional[str] = None
    text_parts: Optional[List[TextPart]] = None
    text_part_timings: Optional[List[TextPartTiming]] = None


def _check_contiguous(items, start_attr: str, label: str) -> float:
    """Return the running end time, raising on any gap, overlap or bad end."""
    cursor = 0.0
    for item in items:
        start = getattr(item, start_attr)
        if not math.isclose(start, cursor, abs_tol=_TOLERANCE):
            raise ValueError(f"{label}: segment starts at {start}, expected {cursor}")
        if not math.isclose(item.end_time, start + item.duration, abs_tol=_TOLERANCE):
            raise ValueError(f"{label}: end_time {item.end_time} != start_time + duration")
        cursor = item.end_time
    return cursor


class TimingMetadata(ArtifactModel):
    """Contents of lesson_segments/timing-metadata.json."""

    segments: List[TimingEntry] = Field(default_factory=list)
    total_duration: float = 0.0
    generated_at: Optional[str] = None

    @model_validator(mode="after")
    def contiguous(self) -> "TimingMetadata":
        end = _check_contiguous(self.segments, "start_time", "timing metadata")
        if not math.isclose(end, self.total_duration, abs_tol=_TOLERANCE):
            raise ValueError(f"timing metadata: total_duration {self.total_duration} != {end}")
        return self


class SynchronizedLesson(ArtifactModel):
    """Contents of final_synchronized_lesson.json."""

    segments: List[TimelineSegment] = Field(default_factory=list)
    total_duration: float = 0.0
    generated_at: Optional[str] = None

    @model_validator(mode="after")
    def contiguous(self) -> "SynchronizedLesson":
        end = _check_contiguous(self.segments, "start_time", "timeline")
        if not math.isclose(end, self.total_duration, abs_tol=_TOLERANCE):
            raise ValueError(f"timeline: total_duration {self.total_duration} != {end}")
        return self
