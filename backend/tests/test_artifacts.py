"""ArtifactStore and ArtifactGenerator tests."""

import asyncio
import uuid

import pytest
from pydantic import ValidationError

from lessonpipe.schemas.lesson import AudioSegmentsDescriptor
from lessonpipe.services.artifact_generator import ArtifactGenerator, ArtifactSynthesisFailure
from lessonpipe.services.artifact_store import AUDIO_SEGMENTS_FILE, KeyedLocks, source_key_for


# ---------------------------------------------------------------------------
# ArtifactStore
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("url", [
    "https://www.youtube.com/watch?v=abcDEF12345",
    "https://youtu.be/abcDEF12345?t=30",
    "https://www.youtube.com/shorts/abcDEF12345",
    "https://www.youtube.com/embed/abcDEF12345",
    "https://m.youtube.com/watch?feature=share&v=abcDEF12345",
])
def test_source_key_is_youtube_video_id(url):
    assert source_key_for(url, uuid.uuid4()) == "abcDEF12345"


def test_source_key_falls_back_to_job_id():
    job_id = uuid.uuid4()
    assert source_key_for("https://example.com/video.mp4", job_id) == str(job_id)
    assert source_key_for("https://www.youtube.com/watch?v=../../etc", job_id) == str(job_id)


def test_paths_cannot_escape_working_directory(store):
    with pytest.raises(ValueError):
        store.path("abc123", "../../outside.txt")
    with pytest.raises(ValueError):
        store.job_dir("../escape")


def test_empty_file_is_not_an_artifact(store):
    store.path("abc123", "lesson_segments/intro.wav").write_bytes(b"")
    assert not store.exists("abc123", "lesson_segments/intro.wav")


def test_atomic_write_leaves_no_temp_files(store):
    target = store.write_bytes_atomic("abc123", "lesson_segments/intro.wav", b"RIFF")

    assert target.read_bytes() == b"RIFF"
    assert [p.name for p in target.parent.iterdir()] == ["intro.wav"]


def test_malformed_descriptor_is_rejected_at_read(store):
    store.write_json("abc123", AUDIO_SEGMENTS_FILE, {"audioSegments": [{"text": "no id"}]})

    with pytest.raises(ValidationError):
        store.read_model("abc123", AUDIO_SEGMENTS_FILE, AudioSegmentsDescriptor)


def test_public_url_round_trips_to_local_path(store):
    url = store.public_url("abc123", "lesson_segments/intro.webp")

    assert url == "/videos/abc123/lesson_segments/intro.webp"
    assert store.resolve_url(url) == store.path("abc123", "lesson_segments/intro.webp")
    assert store.resolve_url("https://cdn.example.com/abc123/intro.webp") is None


@pytest.mark.asyncio
async def test_job_lock_serializes_holders(store):
    order = []

    async def holder(name):
        async with store.job_lock("abc123"):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(holder("a"), holder("b"))

    assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])


@pytest.mark.asyncio
async def test_job_lock_forgets_directory_once_released(store):
    async with store.job_lock("abc123"):
        assert len(store._dir_locks) == 1

    assert len(store._dir_locks) == 0


@pytest.mark.asyncio
async def test_keyed_lock_survives_while_a_waiter_remains():
    locks = KeyedLocks()
    order = []

    async def holder(name):
        async with locks.hold("k"):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(holder("a"), holder("b"), holder("c"))

    assert order == ["a-in", "a-out", "b-in", "b-out", "c-in", "c-out"]
    assert len(locks) == 0


# ---------------------------------------------------------------------------
# ArtifactGenerator
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_second_ensure_reuses_without_calling_produce(store):
    generator = ArtifactGenerator(store)
    calls = []

    async def produce():
        calls.append(1)
        if len(calls) > 1:
            raise RuntimeError("must not be called again")
        return b"audio"

    first = await generator.ensure("abc123", "lesson_segments/intro.wav", produce)
    second = await generator.ensure("abc123", "lesson_segments/intro.wav", produce)

    assert first.reused is False
    assert second.reused is True
    assert second.location == first.location
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_failed_produce_writes_nothing(store):
    generator = ArtifactGenerator(store)

    async def produce():
        raise ConnectionError("quota")

    with pytest.raises(ArtifactSynthesisFailure) as exc_info:
        await generator.ensure("abc123", "lesson_segments/intro.wav", produce)

    assert exc_info.value.key == "lesson_segments/intro.wav"
    assert isinstance(exc_info.value.__cause__, ConnectionError)
    assert not store.exists("abc123", "lesson_segments/intro.wav")


@pytest.mark.asyncio
async def test_empty_result_counts_as_failure(store):
    async def produce():
        return b""

    with pytest.raises(ArtifactSynthesisFailure):
        await ArtifactGenerator(store).ensure("abc123", "lesson_segments/intro.png", produce)


@pytest.mark.asyncio
async def test_concurrent_ensure_of_one_key_produces_once(store):
    generator = ArtifactGenerator(store)
    calls = []

    async def produce():
        calls.append(1)
        await asyncio.sleep(0.01)
        return b"image"

    outcomes = await asyncio.gather(*[
        generator.ensure("abc123", "lesson_segments/intro.png", produce) for _ in range(3)
    ])

    assert len(calls) == 1
    assert sorted(o.reused for o in outcomes) == [False, True, True]


@pytest.mark.asyncio
async def test_batch_reports_one_outcome_per_item(store):
    generator = ArtifactGenerator(store, concurrency=2)
    store.write_bytes_atomic("abc123", "lesson_segments/a.wav", b"existing")

    def ok(data):
        async def produce():
            return data
        return produce

    async def broken():
        raise TimeoutError("slow")

    batch = await generator.ensure_many("abc123", [
        ("lesson_segments/a.wav", broken),
        ("lesson_segments/b.wav", ok(b"b")),
        ("lesson_segments/c.wav", broken),
        ("lesson_segments/d.wav", ok(b"d")),
    ])

    assert [o.key for o in batch.outcomes] == [
        "lesson_segments/a.wav", "lesson_segments/b.wav",
        "lesson_segments/c.wav", "lesson_segments/d.wav",
    ]
    assert [o.key for o in batch.reused] == ["lesson_segments/a.wav"]
    assert [o.key for o in batch.failed] == ["lesson_segments/c.wav"]
    assert store.read_bytes("abc123", "lesson_segments/d.wav") == b"d"


@pytest.mark.asyncio
async def test_batch_respects_concurrency_limit(store):
    generator = ArtifactGenerator(store, concurrency=2)
    running = 0
    peak = 0

    def produce_for(i):
        async def produce():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return f"{i}".encode()
        return produce

    batch = await generator.ensure_many(
        "abc123", [(f"lesson_segments/{i}.wav", produce_for(i)) for i in range(6)]
    )

    assert len(batch.succeeded) == 6
    assert peak <= 2


@pytest.mark.asyncio
async def test_write_failure_becomes_that_items_outcome(store, monkeypatch):
    generator = ArtifactGenerator(store)
    real_write = store.write_bytes_atomic

    def write(source_key, key, data):
        if key == "lesson_segments/b.bin":
            raise OSError("No space left on device")
        return real_write(source_key, key, data)

    monkeypatch.setattr(store, "write_bytes_atomic", write)

    async def produce():
        return b"data"

    batch = await generator.ensure_many("abc123", [
        ("lesson_segments/a.bin", produce),
        ("lesson_segments/b.bin", produce),
        ("lesson_segments/c.bin", produce),
    ])

    assert len(batch.outcomes) == 3
    assert [o.key for o in batch.failed] == ["lesson_segments/b.bin"]
    assert isinstance(batch.failed[0].error.__cause__, OSError)
    assert store.exists("abc123", "lesson_segments/a.bin")
    assert store.exists("abc123", "lesson_segments/c.bin")
    assert not store.exists("abc123", "lesson_segments/b.bin")


@pytest.mark.asyncio
async def test_invalid_key_becomes_that_items_outcome(store):
    async def produce():
        return b"data"

    batch = await ArtifactGenerator(store).ensure_many("abc123", [
        ("../../outside.bin", produce),
        ("lesson_segments/ok.bin", produce),
    ])

    assert isinstance(batch.outcomes[0].error.__cause__, ValueError)
    assert batch.outcomes[1].ok


@pytest.mark.asyncio
async def test_generator_forgets_keys_after_batch(store):
    generator = ArtifactGenerator(store)

    async def produce():
        return b"data"

    async def broken():
        raise ConnectionError("quota")

    await generator.ensure_many("abc123", [
        ("lesson_segments/a.bin", produce),
        ("lesson_segments/b.bin", broken),
    ])

    assert len(generator._key_locks) == 0
