"""Shared fixtures: a throwaway SQLite database per test and fake capabilities.

Nothing here touches the network; the Gemini-backed capabilities are
replaced by in-process fakes injected through the orchestrator constructor.
"""

import io
from pathlib import Path

import pytest
import pytest_asyncio
from PIL import Image

from lessonpipe.db import init_database
from lessonpipe.db.engine import build_engine, build_sessionmaker
from lessonpipe.db.job_store import JobStore
from lessonpipe.orchestrator.pipeline import PipelineOrchestrator
from lessonpipe.schemas.lesson import (
    AudioSegment,
    AudioSegmentsDescriptor,
    LessonAnalysis,
    SourceSegment,
    TextPart,
    VocabularyItem,
)
from lessonpipe.services.artifact_store import ArtifactStore
from lessonpipe.services.content_analysis import ContentAnalyzer
from lessonpipe.services.imagery import ImageSynthesizer
from lessonpipe.services.speech import SAMPLE_RATE, SpeechResult, SpeechSynthesizer, pcm_to_wav

YOUTUBE_URL = "https://www.youtube.com/watch?v=abcDEF12345"


# ---------------------------------------------------------------------------
# Database and storage
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_database(engine)
    yield build_sessionmaker(engine)
    await engine.dispose()


@pytest.fixture
def jobs(session_factory):
    return JobStore(session_factory)


@pytest.fixture
def store(tmp_path):
    return ArtifactStore(tmp_path / "videos")


# ---------------------------------------------------------------------------
# Lesson content
# ---------------------------------------------------------------------------

@pytest.fixture
def analysis():
    return LessonAnalysis(
        title="Ordering coffee in English",
        description="A barista explains how to order drinks at a cafe",
        segments=[
            SourceSegment(
                title="At the counter",
                content="Customers order a latte and an espresso from the barista",
                key_topics=["coffee", "ordering"],
            ),
            SourceSegment(
                title="Paying",
                content="The customer pays and waits for the drink",
                key_topics=["coffee", "payment"],
            ),
        ],
        vocabulary=[
            VocabularyItem(word="latte", definition="coffee with steamed milk", translation="ลาเต้"),
            VocabularyItem(word="receipt", definition="proof of payment", translation="ใบเสร็จ"),
        ],
        original_duration=312.0,
    )


@pytest.fixture
def script():
    return AudioSegmentsDescriptor(audio_segments=[
        AudioSegment(
            id="intro",
            text="สวัสดีครับ Welcome to the cafe",
            text_parts=[
                TextPart(text="สวัสดีครับ", language="th", english_translation="Hello"),
                TextPart(text="Welcome to the cafe", language="en"),
            ],
            screen_element="title_card",
            background_image_description="A cosy Bangkok cafe counter in the morning",
        ),
        AudioSegment(
            id="vocab_word_1",
            text="latte",
            vocab_word="latte",
            screen_element="vocabulary_card",
            background_image_description="A latte with foam art on a wooden table",
        ),
        AudioSegment(
            id="conclusion",
            text="See you next time",
            screen_element="conclusion_card",
            background_image_description="A barista waving goodbye",
        ),
    ])


# ---------------------------------------------------------------------------
# Fake capabilities
# ---------------------------------------------------------------------------

def silent_wav(seconds: float) -> bytes:
    return pcm_to_wav(b"\x00\x00" * int(SAMPLE_RATE * seconds))


def png_bytes(width: int = 64, height: int = 36) -> bytes:
    out = io.BytesIO()
    Image.new("RGB", (width, height), "orange").save(out, format="PNG")
    return out.getvalue()


class FakeAnalyzer(ContentAnalyzer):
    def __init__(self, analysis, script, error: Exception = None):
        self.analysis = analysis
        self.script = script
        self.error = error
        self.calls = 0

    async def analyze_source(self, job):
        self.calls += 1
        if self.error:
            raise self.error
        return self.analysis

    async def write_script(self, analysis, scenes, preferences):
        self.calls += 1
        return self.script


class FakeSpeech(SpeechSynthesizer):
    """One second of silence per segment; ids in ``fail_ids`` raise."""

    def __init__(self, durations=None, fail_ids=()):
        self.durations = durations or {}
        self.fail_ids = set(fail_ids)
        self.calls = []

    async def synthesize(self, segment):
        self.calls.append(segment.id)
        if segment.id in self.fail_ids:
            raise ConnectionError(f"TTS unavailable for {segment.id}")
        seconds = self.durations.get(segment.id, 1.0)
        return SpeechResult(audio=silent_wav(seconds), duration=seconds)


class FakeImages(ImageSynthesizer):
    """PNG for every prompt unless it contains one of ``fail_words``."""

    def __init__(self, fail_words=()):
        self.fail_words = tuple(fail_words)
        self.calls = 0

    async def generate(self, prompt):
        self.calls += 1
        if any(word in prompt for word in self.fail_words):
            raise ValueError("No image generated in response")
        return png_bytes()


class FakeRenderer:
    def __init__(self, error: Exception = None):
        self.error = error
        self.rendered = []

    async def render(self, timeline, output_path: Path):
        if self.error:
            raise self.error
        self.rendered.append(timeline)
        output_path.write_bytes(b"fake mp4")
        return output_path


@pytest.fixture
def make_orchestrator(jobs, store, analysis, script):
    """Build an orchestrator with fakes; keyword overrides replace any capability."""

    def _make(**overrides):
        capabilities = {
            "analyzer": FakeAnalyzer(analysis, script),
            "speech": FakeSpeech(),
            "images": FakeImages(),
            "renderer": FakeRenderer(),
        }
        capabilities.update(overrides)
        return PipelineOrchestrator(jobs, store, concurrency=2, **capabilities)

    return _make
