"""Speech and image helper tests. The Gemini client is replaced by a stub."""

import io
from types import SimpleNamespace

import pytest
from google.genai import errors
from PIL import Image

from lessonpipe.schemas.lesson import AudioSegment, TextPart
from lessonpipe.schemas.scenes import SceneAnalysis, SceneCandidate
from lessonpipe.services.genai_client import is_retriable
from lessonpipe.services.imagery import image_prompt, optimize_image
from lessonpipe.services.speech import (
    SAMPLE_RATE,
    GeminiSpeechSynthesizer,
    merge_short_parts,
    pcm_to_wav,
    wav_duration,
)

from conftest import png_bytes


class _StubModels:
    """Returns half a second of silence per request and records prompts."""

    def __init__(self, seconds=0.5):
        self.prompts = []
        self.seconds = seconds

    async def generate_content(self, model, contents, config):
        self.prompts.append(contents)
        pcm = b"\x00\x00" * int(SAMPLE_RATE * self.seconds)
        part = SimpleNamespace(inline_data=SimpleNamespace(data=pcm))
        return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=[part]))])


def _stub_client(models):
    return SimpleNamespace(aio=SimpleNamespace(models=models))


# ---------------------------------------------------------------------------
# Speech
# ---------------------------------------------------------------------------

def test_short_part_joins_previous_same_language_part():
    parts = [
        TextPart(text="สวัสดี", language="th", english_translation="Hello"),
        TextPart(text="!", language="th"),
        TextPart(text="Welcome", language="en"),
    ]

    merged = merge_short_parts(parts)

    assert [(p.text, p.language) for p in merged] == [("สวัสดี!", "th"), ("Welcome", "en")]
    assert merged[0].english_translation == "Hello"


def test_short_part_joins_following_part_when_previous_differs():
    parts = [
        TextPart(text="Hi", language="en"),
        TextPart(text="..", language="th"),
        TextPart(text="ครับ", language="th"),
    ]

    merged = merge_short_parts(parts)

    assert [p.text for p in merged] == ["Hi", "..ครับ"]


def test_short_part_without_same_language_neighbour_is_kept():
    parts = [TextPart(text="OK", language="en"), TextPart(text="ครับ", language="th")]

    assert [p.text for p in merge_short_parts(parts)] == ["OK", "ครับ"]


def test_wav_duration_reads_header():
    assert wav_duration(pcm_to_wav(b"\x00\x00" * SAMPLE_RATE * 2)) == 2.0


@pytest.mark.asyncio
async def test_synthesize_concatenates_parts_with_offsets():
    models = _StubModels(seconds=0.5)
    synth = GeminiSpeechSynthesizer(_stub_client(models), "tts-model", "Kore")
    segment = AudioSegment(
        id="intro",
        text="สวัสดีครับ Welcome",
        text_parts=[
            TextPart(text="สวัสดีครับ", language="th"),
            TextPart(text="Welcome", language="en"),
        ],
    )

    result = await synth.synthesize(segment)

    assert result.duration == 1.0
    assert [(t.start_time, t.end_time) for t in result.part_timings] == [(0.0, 0.5), (0.5, 1.0)]
    assert models.prompts[0] == "สวัสดีครับ"
    assert models.prompts[1].startswith("Say slowly and clearly")


@pytest.mark.asyncio
async def test_segment_without_parts_is_spoken_whole():
    models = _StubModels()
    synth = GeminiSpeechSynthesizer(_stub_client(models), "tts-model", "Kore")

    result = await synth.synthesize(AudioSegment(id="conclusion", text="ลาก่อน"))

    assert models.prompts == ["ลาก่อน"]
    assert len(result.part_timings) == 1


def test_explicit_speaking_rate_wins():
    synth = GeminiSpeechSynthesizer(_stub_client(_StubModels()), "tts-model", "Kore")

    assert synth.speaking_rate(TextPart(text="Hi", language="en")) == 0.8
    assert synth.speaking_rate(TextPart(text="Hi", language="en", speaking_rate=1.2)) == 1.2
    assert synth.speaking_rate(TextPart(text="ครับ", language="th")) == 1.0


@pytest.mark.parametrize("exc, expected", [
    (errors.ClientError(429, {"error": {"message": "rate limited"}}), True),
    (errors.ClientError(400, {"error": {"message": "bad request"}}), False),
    (errors.ServerError(503, {"error": {"message": "unavailable"}}), True),
    (ConnectionError("reset"), True),
    (ValueError("no image"), False),
])
def test_retriable_errors(exc, expected):
    assert is_retriable(exc) is expected


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

def test_image_prompt_adds_primary_scene_setting():
    segment = AudioSegment(id="intro", text="Hi", background_image_description="A busy cafe counter")
    scenes = SceneAnalysis(primary_scenes=[
        SceneCandidate(name="coffee_shop", confidence=0.8, cultural_notes="Thai coffee culture"),
    ])

    prompt = image_prompt(segment, scenes)

    assert prompt.startswith("A busy cafe counter")
    assert "coffee shop in Thailand. Thai coffee culture" in prompt
    assert "no text" in prompt


def test_image_prompt_requires_description():
    with pytest.raises(ValueError):
        image_prompt(AudioSegment(id="intro", text="Hi"))


def test_optimize_image_fits_bounds_and_encodes_webp():
    data = optimize_image(png_bytes(3840, 2160), max_width=1920, max_height=1080, quality=70)

    with Image.open(io.BytesIO(data)) as img:
        assert img.format == "WEBP"
        assert img.size == (1920, 1080)


def test_optimize_image_does_not_upscale():
    with Image.open(io.BytesIO(optimize_image(png_bytes(64, 36)))) as img:
        assert img.size == (64, 36)
