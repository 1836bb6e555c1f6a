"""TimingReconciler layout, image matching and idempotency tests."""

import pytest
from pydantic import ValidationError

from lessonpipe.schemas.lesson import AudioSegment, AudioSegmentsDescriptor
from lessonpipe.schemas.timeline import SynchronizedLesson, TimingMetadata
from lessonpipe.services.artifact_store import AUDIO_SEGMENTS_FILE, TIMELINE_FILE, TIMING_FILE
from lessonpipe.services.timing_reconciler import (
    ProducedAudio,
    TimingReconciler,
    audio_key,
    image_key,
    screen_element_for,
)

KEY = "abc123"
FIXED = "2026-01-01T00:00:00+00:00"


def _descriptor(*ids):
    return AudioSegmentsDescriptor(audio_segments=[
        AudioSegment(id=i, text=f"text for {i}", background_image_description=f"image of {i}") for i in ids
    ])


def _produced(descriptor, durations):
    return [
        ProducedAudio(segment_id=s.id, file_name=f"{s.id}.wav", duration=d, text=s.text)
        for s, d in zip(descriptor.audio_segments, durations)
    ]


def _write_audio(store, *ids):
    for i in ids:
        store.write_bytes_atomic(KEY, audio_key(f"{i}.wav"), b"RIFF")


# ---------------------------------------------------------------------------
# Timing layout
# ---------------------------------------------------------------------------

def test_start_times_are_cumulative(store):
    descriptor = _descriptor("intro", "explanation_1", "conclusion")
    timing = TimingReconciler(store).build_timing(_produced(descriptor, [5, 3, 7]))

    assert [(s.start_time, s.end_time) for s in timing.segments] == [(0, 5), (5, 8), (8, 15)]
    assert timing.total_duration == 15


def test_empty_audio_list_gives_empty_timing(store):
    timing = TimingReconciler(store).build_timing([])

    assert timing.segments == []
    assert timing.total_duration == 0


def test_timing_with_gap_is_rejected():
    with pytest.raises(ValidationError):
        TimingMetadata.model_validate({
            "segments": [
                {"segmentId": "a", "fileName": "a.wav", "duration": 2, "startTime": 0, "endTime": 2, "text": "a"},
                {"segmentId": "b", "fileName": "b.wav", "duration": 2, "startTime": 3, "endTime": 5, "text": "b"},
            ],
            "totalDuration": 5,
        })


def test_timeline_with_wrong_total_is_rejected():
    with pytest.raises(ValidationError):
        SynchronizedLesson.model_validate({
            "segments": [{"id": "a", "text": "a", "duration": 2, "startTime": 0, "endTime": 2}],
            "totalDuration": 3,
        })


# ---------------------------------------------------------------------------
# Image matching
# ---------------------------------------------------------------------------

def test_missing_image_leaves_only_that_entry_unset(store):
    reconciler = TimingReconciler(store)
    descriptor = _descriptor("intro", "vocab_word_1", "conclusion")
    _write_audio(store, "intro", "vocab_word_1", "conclusion")
    timing = reconciler.build_timing(_produced(descriptor, [2, 3, 4]), generated_at=FIXED)

    all_images = {i: f"/videos/{KEY}/lesson_segments/{i}.png" for i in ("intro", "vocab_word_1", "conclusion")}
    partial = {k: v for k, v in all_images.items() if k != "vocab_word_1"}

    full = reconciler.build_timeline(KEY, timing, descriptor, all_images, generated_at=FIXED).timeline
    result = reconciler.build_timeline(KEY, timing, descriptor, partial, generated_at=FIXED)

    assert result.without_image == ["vocab_word_1"]
    assert result.gaps == []
    for before, after in zip(full.segments, result.timeline.segments):
        if after.id == "vocab_word_1":
            assert after.image_ref is None
            assert after.model_copy(update={"image_ref": before.image_ref}) == before
        else:
            assert after == before


def test_image_matched_by_text_when_ids_diverge(store):
    reconciler = TimingReconciler(store)
    old = _descriptor("segment_1")
    _write_audio(store, "segment_1")
    timing = reconciler.build_timing(_produced(old, [2]))

    # Script regenerated: same narration, new id
    renamed = AudioSegmentsDescriptor(audio_segments=[
        AudioSegment(id="intro", text=old.audio_segments[0].text, screen_element="title_card"),
    ])
    images = {"intro": "/videos/abc123/lesson_segments/intro.webp"}

    segment = reconciler.build_timeline(KEY, timing, renamed, images).timeline.segments[0]

    assert segment.id == "segment_1"
    assert segment.image_ref == "/videos/abc123/lesson_segments/intro.webp"
    assert segment.screen_element == "title_card"


def test_webp_preferred_over_png(store):
    reconciler = TimingReconciler(store)
    descriptor = _descriptor("intro", "conclusion")
    store.write_bytes_atomic(KEY, image_key("intro"), b"png")
    store.write_bytes_atomic(KEY, image_key("intro", ".webp"), b"webp")
    store.write_bytes_atomic(KEY, image_key("conclusion"), b"png")

    images = reconciler.available_images(KEY, descriptor)

    assert images == {
        "intro": "/videos/abc123/lesson_segments/intro.webp",
        "conclusion": "/videos/abc123/lesson_segments/conclusion.png",
    }


def test_missing_audio_is_recorded_as_gap(store):
    reconciler = TimingReconciler(store)
    descriptor = _descriptor("intro", "conclusion")
    _write_audio(store, "intro")
    timing = reconciler.build_timing(_produced(descriptor, [1, 2]))
    images = {"intro": "/videos/abc123/lesson_segments/intro.png",
              "conclusion": "/videos/abc123/lesson_segments/conclusion.png"}

    result = reconciler.build_timeline(KEY, timing, descriptor, images)

    assert [g.segment_id for g in result.gaps] == ["conclusion"]
    gap_segment = result.timeline.segments[1]
    assert gap_segment.audio_ref is None
    assert gap_segment.image_ref is None
    assert (gap_segment.start_time, gap_segment.end_time) == (1, 3)


def test_screen_element_fallbacks():
    assert screen_element_for("intro") == "title_card"
    assert screen_element_for("learning_objective_2") == "objective_card"
    assert screen_element_for("vocab_word_3") == "vocabulary_card"
    assert screen_element_for("something_else") == "content_card"


# ---------------------------------------------------------------------------
# reconcile()
# ---------------------------------------------------------------------------

def test_reconcile_is_idempotent_apart_from_generated_at(store):
    reconciler = TimingReconciler(store)
    descriptor = _descriptor("intro", "conclusion")
    _write_audio(store, "intro", "conclusion")
    store.write_bytes_atomic(KEY, image_key("intro"), b"png")
    store.write_model(KEY, AUDIO_SEGMENTS_FILE, descriptor)
    store.write_model(KEY, TIMING_FILE, reconciler.build_timing(_produced(descriptor, [1.5, 2.25])))

    reconciler.reconcile(KEY, generated_at=FIXED)
    first = store.read_bytes(KEY, TIMELINE_FILE)
    reconciler.reconcile(KEY, generated_at=FIXED)
    second = store.read_bytes(KEY, TIMELINE_FILE)

    assert first == second
    timeline = store.read_model(KEY, TIMELINE_FILE, SynchronizedLesson)
    assert timeline.total_duration == 3.75
    assert timeline.segments[0].audio_ref == "/videos/abc123/lesson_segments/intro.wav"
    assert timeline.segments[1].image_ref is None
