"""Merge independently produced audio and image artifacts into one timeline.

Segments are laid out back to back: segment i starts at the sum of the
durations of segments 0..i-1. Images are matched to timing entries by
segment id first, then by exact narration text when ids have drifted
between runs. Entries without an image keep imageRef unset; the renderer
shows a placeholder for them.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Sequence

from lessonpipe.schemas.lesson import AudioSegment, AudioSegmentsDescriptor
from lessonpipe.schemas.timeline import (
    SynchronizedLesson,
    TextPartTiming,
    TimelineSegment,
    TimingEntry,
    TimingMetadata,
)
from lessonpipe.services.artifact_store import (
    AUDIO_SEGMENTS_FILE,
    SEGMENTS_DIR,
    TIMELINE_FILE,
    TIMING_FILE,
    ArtifactStore,
)

logger = logging.getLogger(__name__)

# Preferred first: the web-optimised variant written after the PNG
IMAGE_EXTENSIONS = (".webp", ".png")

# Screen element fallbacks for segments the descriptor does not describe
_SCREEN_ELEMENTS = {
    "intro": "title_card",
    "conclusion": "conclusion_card",
    "lesson_review": "review_card",
}
_SCREEN_ELEMENT_PREFIXES = (
    ("learning_objective", "objective_card"),
    ("explanation", "explanation_card"),
    ("vocab_word", "vocabulary_card"),
    ("grammar", "grammar_card"),
    ("practice", "practice_card"),
)


@dataclass
class ProducedAudio:
    """One synthesized audio file, in lesson order."""

    segment_id: str
    file_name: str
    duration: float
    text: str
    text_part_timings: Optional[List[TextPartTiming]] = None


@dataclass
class ReconciliationGap:
    """A timing entry whose audio file is not on disk.

    Recorded, never raised: the entry keeps its slot on the timeline with
    audioRef and imageRef unset.
    """

    segment_id: str
    file_name: str
    reason: str


@dataclass
class Reconciliation:
    timeline: SynchronizedLesson
    gaps: List[ReconciliationGap] = field(default_factory=list)

    @property
    def without_image(self) -> List[str]:
        return [s.id for s in self.timeline.segments if s.image_ref is None]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def screen_element_for(segment_id: str) -> str:
    """Card type implied by a segment id."""
    for prefix, element in _SCREEN_ELEMENT_PREFIXES:
        if segment_id.startswith(prefix):
            return element
    return _SCREEN_ELEMENTS.get(segment_id, "content_card")


def image_key(segment_id: str, extension: str = ".png") -> str:
    return f"{SEGMENTS_DIR}/{segment_id}{extension}"


def audio_key(file_name: str) -> str:
    return f"{SEGMENTS_DIR}/{file_name}"


class TimingReconciler:
    """Builds timing-metadata.json and final_synchronized_lesson.json.

    Output depends only on its inputs apart from generated_at, so re-running
    against the same artifacts yields the same timeline.
    """

    def __init__(self, store: ArtifactStore):
        self.store = store

    def build_timing(
        self,
        produced: Sequence[ProducedAudio],
        generated_at: Optional[str] = None,
    ) -> TimingMetadata:
        cursor = 0.0
        entries = []
        for item in produced:
            if item.duration < 0:
                raise ValueError(f"segment {item.segment_id} has negative duration {item.duration}")
            entries.append(TimingEntry(
                segment_id=item.segment_id,
                file_name=item.file_name,
                duration=item.duration,
                start_time=cursor,
                end_time=cursor + item.duration,
                text=item.text,
                text_part_timings=item.text_part_timings,
            ))
            cursor += item.duration
        return TimingMetadata(
            segments=entries,
            total_duration=cursor,
            generated_at=generated_at or _now(),
        )

    def available_images(self, source_key: str, descriptor: AudioSegmentsDescriptor) -> Dict[str, str]:
        """Segment id -> image locator for every image on disk, WebP preferred."""
        images: Dict[str, str] = {}
        for segment in descriptor.audio_segments:
            for extension in IMAGE_EXTENSIONS:
                key = image_key(segment.id, extension)
                if self.store.exists(source_key, key):
                    images[segment.id] = self.store.public_url(source_key, key)
                    break
        return images

    def build_timeline(
        self,
        source_key: str,
        timing: TimingMetadata,
        descriptor: AudioSegmentsDescriptor,
        images: Mapping[str, str],
        generated_at: Optional[str] = None,
    ) -> Reconciliation:
        by_id = {s.id: s for s in descriptor.audio_segments}
        by_text: Dict[str, AudioSegment] = {}
        for s in descriptor.audio_segments:
            by_text.setdefault(s.text, s)

        segments: List[TimelineSegment] = []
        gaps: List[ReconciliationGap] = []
        for entry in timing.segments:
            source = by_id.get(entry.segment_id) or by_text.get(entry.text)

            audio_ref: Optional[str] = None
            image_ref: Optional[str] = None
            if self.store.exists(source_key, audio_key(entry.file_name)):
                audio_ref = self.store.public_url(source_key, audio_key(entry.file_name))
                image_ref = self._match_image(entry, by_text, images)
            else:
                gap = ReconciliationGap(entry.segment_id, entry.file_name, "audio file missing")
                logger.warning(f"{source_key}: reconciliation gap for {entry.segment_id}: {gap.reason}")
                gaps.append(gap)

            screen_element = source.screen_element if source else screen_element_for(entry.segment_id)
            vocab_word = source.vocab_word if source else None
            if vocab_word and entry.segment_id.startswith("vocab"):
                screen_element = "vocabulary_card"

            segments.append(TimelineSegment(
                id=entry.segment_id,
                text=entry.text,
                duration=entry.duration,
                start_time=entry.start_time,
                end_time=entry.end_time,
                audio_ref=audio_ref,
                image_ref=image_ref,
                screen_element=screen_element,
                vocab_word=vocab_word,
                text_parts=(source.text_parts or None) if source else None,
                text_part_timings=entry.text_part_timings,
            ))

        timeline = SynchronizedLesson(
            segments=segments,
            total_duration=timing.total_duration,
            generated_at=generated_at or _now(),
        )
        return Reconciliation(timeline=timeline, gaps=gaps)

    def _match_image(
        self,
        entry: TimingEntry,
        by_text: Mapping[str, AudioSegment],
        images: Mapping[str, str],
    ) -> Optional[str]:
        if entry.segment_id in images:
            return images[entry.segment_id]
        renamed = by_text.get(entry.text)
        if renamed is not None and renamed.id in images:
            logger.info(f"Matched image for {entry.segment_id} by text (descriptor id {renamed.id})")
            return images[renamed.id]
        return None

    def reconcile(self, source_key: str, generated_at: Optional[str] = None) -> Reconciliation:
        """Rebuild final_synchronized_lesson.json from the artifacts on disk."""
        timing = self.store.read_model(source_key, TIMING_FILE, TimingMetadata)
        descriptor = self.store.read_model(source_key, AUDIO_SEGMENTS_FILE, AudioSegmentsDescriptor)
        images = self.available_images(source_key, descriptor)

        result = self.build_timeline(source_key, timing, descriptor, images, generated_at)
        self.store.write_model(source_key, TIMELINE_FILE, result.timeline)
        logger.info(
            f"{source_key}: timeline with {len(result.timeline.segments)} segments "
            f"({result.timeline.total_duration:.2f}s), {len(result.without_image)} without image, "
            f"{len(result.gaps)} gaps"
        )
        return result
