"""Main pipeline orchestrator with idempotent stage execution and run tracking.

Coordinates one job end to end:
- content: source analysis, scene classification, script writing
- audio: per-segment narration (concurrent, bounded)
- images: per-segment background images plus WebP variants
- timeline: timing metadata and the synchronized lesson
- render: final video on the independent video_generation_status axis

Failure policy: a content failure is fatal (status -> failed). A segment
whose audio failed is left off the timeline and gets no image; an image
failure leaves the segment without a background. A render failure only moves video_generation_status to failed and
can be retried with retry_render() without re-running earlier stages.
"""

import asyncio
import logging
import time
import uuid
import wave
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lessonpipe.config import Settings
from lessonpipe.db.job_store import JobStore
from lessonpipe.db.models import VideoJob
from lessonpipe.orchestrator.state import JobStateMachine
from lessonpipe.schemas.lesson import AudioSegment, AudioSegmentsDescriptor, LessonAnalysis
from lessonpipe.schemas.scenes import SceneAnalysis
from lessonpipe.schemas.timeline import SynchronizedLesson, TextPartTiming, TimingMetadata
from lessonpipe.services.artifact_generator import ArtifactGenerator, BatchOutcome
from lessonpipe.services.artifact_store import (
    ANALYSIS_FILE,
    AUDIO_SEGMENTS_FILE,
    OUTPUT_DIR,
    TIMELINE_FILE,
    TIMING_FILE,
    ArtifactStore,
    source_key_for,
)
from lessonpipe.services.content_analysis import ContentAnalyzer, GeminiContentAnalyzer
from lessonpipe.services.genai_client import build_genai_client
from lessonpipe.services.imagery import (
    GeminiImageSynthesizer,
    ImageSynthesizer,
    image_prompt,
    optimize_image,
)
from lessonpipe.services.renderer import FfmpegRenderer, Renderer
from lessonpipe.services.scene_classifier import SceneClassifier
from lessonpipe.services.speech import GeminiSpeechSynthesizer, SpeechSynthesizer, wav_duration
from lessonpipe.services.timing_reconciler import (
    ProducedAudio,
    TimingReconciler,
    audio_key,
    image_key,
)

logger = logging.getLogger(__name__)

OUTPUT_VIDEO = f"{OUTPUT_DIR}/lesson.mp4"


class FatalStageFailure(RuntimeError):
    """A stage every later stage depends on has failed; the job is failed."""

    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage} failed: {type(cause).__name__}: {cause}")


class PipelineOrchestrator:
    """Runs jobs through the pipeline with injected capabilities.

    Holds the working directory's job_lock for the whole invocation so two
    workers never interleave check-then-write sequences on the same files.
    """

    def __init__(
        self,
        jobs: JobStore,
        store: ArtifactStore,
        analyzer: ContentAnalyzer,
        speech: SpeechSynthesizer,
        images: ImageSynthesizer,
        renderer: Renderer,
        *,
        classifier: Optional[SceneClassifier] = None,
        concurrency: int = 4,
        image_max_width: int = 1920,
        image_max_height: int = 1080,
        image_quality: int = 80,
    ):
        self.jobs = jobs
        self.store = store
        self.state = JobStateMachine(jobs)
        self.analyzer = analyzer
        self.speech = speech
        self.images = images
        self.renderer = renderer
        self.classifier = classifier or SceneClassifier()
        self.generator = ArtifactGenerator(store, concurrency)
        self.reconciler = TimingReconciler(store)
        self._image_options = {
            "max_width": image_max_width,
            "max_height": image_max_height,
            "quality": image_quality,
        }

    async def run(
        self,
        job_id: uuid.UUID,
        *,
        render: bool = True,
        progress_callback: Optional[Callable[[str], None]] = None,
    ) -> VideoJob:
        """Process a pending job through every stage.

        Raises:
            InvalidTransition: If the job is not pending (already started or finished)
            FatalStageFailure: If the content stage fails; the job is left failed
            Exception: Re-raises any other stage error after persisting the failure
        """
        job = await self.state.start(job_id)
        source_key = source_key_for(job.youtube_url, job.id)
        logger.info(f"Starting pipeline for job {job_id} (working directory {source_key})")

        run = await self.jobs.start_run(job_id, "full")
        step_log: Dict[str, float] = {}
        items_failed = 0
        pipeline_start = time.monotonic()
        stage = "content"

        def _progress(message: str) -> None:
            if progress_callback:
                progress_callback(message)

        try:
            async with self.store.job_lock(source_key):
                step_start = time.monotonic()
                _progress("Analysing source and writing script...")
                try:
                    analysis, scenes, script = await self._content_stage(job, source_key)
                except Exception as e:
                    raise FatalStageFailure("content", e) from e
                step_log["content"] = time.monotonic() - step_start
                logger.info(f"Content stage completed in {step_log['content']:.2f}s")

                stage = "audio"
                step_start = time.monotonic()
                _progress(f"Synthesizing narration for {len(script.audio_segments)} segments...")
                timing, audio_failed = await self._audio_stage(job_id, source_key, script)
                items_failed += audio_failed
                step_log["audio"] = time.monotonic() - step_start
                logger.info(f"Audio stage completed in {step_log['audio']:.2f}s")

                stage = "images"
                step_start = time.monotonic()
                _progress("Generating background images...")
                items_failed += await self._image_stage(source_key, script, scenes, timing)
                step_log["images"] = time.monotonic() - step_start
                logger.info(f"Image stage completed in {step_log['images']:.2f}s")

                stage = "timeline"
                step_start = time.monotonic()
                _progress("Reconciling timeline...")
                reconciliation = await asyncio.to_thread(self.reconciler.reconcile, source_key)
                step_log["timeline"] = time.monotonic() - step_start

                stage = "finalize"
                await self.jobs.update_fields(job_id, original_duration=analysis.original_duration)
                job = await self.state.complete(job_id)
                logger.info(
                    f"Job {job_id} completed: {len(reconciliation.timeline.segments)} segments, "
                    f"{timing.total_duration:.2f}s, {items_failed} items failed"
                )

                if render:
                    stage = "render"
                    step_start = time.monotonic()
                    _progress("Rendering final video...")
                    job = await self._render(job_id, source_key)
                    step_log["render"] = time.monotonic() - step_start

        except FatalStageFailure as e:
            logger.error(f"Pipeline failed for job {job_id}: {e}")
            await self.state.fail(job_id, str(e))
            await self._finish_run(run.id, pipeline_start, step_log, items_failed)
            raise

        except Exception as e:
            logger.error(f"Pipeline failed at stage {stage} for job {job_id}: {type(e).__name__}: {e}")
            current = await self.jobs.get(job_id)
            if current.status == "processing":
                await self.state.fail(job_id, f"{stage} failed: {type(e).__name__}: {e}")
            await self._finish_run(run.id, pipeline_start, step_log, items_failed)
            raise

        await self._finish_run(run.id, pipeline_start, step_log, items_failed)
        return job

    async def retry_render(
        self,
        job_id: uuid.UUID,
        progress_callback: Optional[Callable[[str], None]] = None,
    ) -> VideoJob:
        """Re-run only the render stage of a completed job.

        Raises:
            InvalidTransition: If the job is not completed or a render is in progress
        """
        job = await self.jobs.get(job_id)
        source_key = source_key_for(job.youtube_url, job.id)
        run = await self.jobs.start_run(job_id, "render")
        start = time.monotonic()
        if progress_callback:
            progress_callback("Rendering final video...")
        try:
            async with self.store.job_lock(source_key):
                job = await self._render(job_id, source_key)
        except Exception:
            await self._finish_run(run.id, start, {"render": time.monotonic() - start}, 0)
            raise
        failed = 1 if job.video_generation_status == "failed" else 0
        await self._finish_run(run.id, start, {"render": time.monotonic() - start}, failed)
        return job

    async def _content_stage(
        self, job: VideoJob, source_key: str
    ) -> tuple[LessonAnalysis, SceneAnalysis, AudioSegmentsDescriptor]:
        if self.store.exists(source_key, ANALYSIS_FILE):
            analysis = self.store.read_model(source_key, ANALYSIS_FILE, LessonAnalysis)
            logger.info(f"{source_key}: reusing {ANALYSIS_FILE}")
        else:
            analysis = await self.analyzer.analyze_source(job)
            self.store.write_model(source_key, ANALYSIS_FILE, analysis)

        scenes = self.classifier.classify(analysis)

        if self.store.exists(source_key, AUDIO_SEGMENTS_FILE):
            script = self.store.read_model(source_key, AUDIO_SEGMENTS_FILE, AudioSegmentsDescriptor)
            logger.info(f"{source_key}: reusing {AUDIO_SEGMENTS_FILE}")
        else:
            preferences = dict(job.preferences or {})
            script = await self.analyzer.write_script(analysis, scenes, preferences)
            if not script.audio_segments:
                raise ValueError("Script has no segments")
            self.store.write_model(source_key, AUDIO_SEGMENTS_FILE, script)
        return analysis, scenes, script

    async def _audio_stage(
        self, job_id: uuid.UUID, source_key: str, script: AudioSegmentsDescriptor
    ) -> tuple[TimingMetadata, int]:
        """Synthesize narration; segments whose audio failed are left off the timing."""
        part_timings: Dict[str, List[TextPartTiming]] = self._previous_part_timings(source_key)

        def _produce(segment: AudioSegment):
            async def produce() -> bytes:
                result = await self.speech.synthesize(segment)
                part_timings[segment.id] = result.part_timings
                return result.audio
            return produce

        batch = await self.generator.ensure_many(
            source_key,
            [(audio_key(f"{s.id}.wav"), _produce(s)) for s in script.audio_segments],
        )
        outcomes = batch.by_key()

        produced: List[ProducedAudio] = []
        unreadable = 0
        for segment in script.audio_segments:
            file_name = f"{segment.id}.wav"
            outcome = outcomes[audio_key(file_name)]
            if not outcome.ok:
                logger.warning(f"Job {job_id}: segment {segment.id} has no audio: {outcome.error}")
                continue
            data = await asyncio.to_thread(self.store.read_bytes, source_key, audio_key(file_name))
            try:
                duration = wav_duration(data)
            except (wave.Error, EOFError) as e:
                logger.warning(f"Job {job_id}: segment {segment.id} audio is not a readable WAV: {e}")
                unreadable += 1
                continue
            produced.append(ProducedAudio(
                segment_id=segment.id,
                file_name=file_name,
                duration=duration,
                text=segment.text,
                text_part_timings=part_timings.get(segment.id) or None,
            ))
            await self.jobs.append_output_segment(job_id, {
                "id": segment.id,
                "audioRef": self.store.public_url(source_key, audio_key(file_name)),
                "duration": duration,
                "text": segment.text,
            })

        timing = self.reconciler.build_timing(produced)
        self.store.write_model(source_key, TIMING_FILE, timing)
        return timing, len(batch.failed) + unreadable

    def _previous_part_timings(self, source_key: str) -> Dict[str, List[TextPartTiming]]:
        """Part timings recorded by an earlier run, for audio that will be reused."""
        if not self.store.exists(source_key, TIMING_FILE):
            return {}
        try:
            previous = self.store.read_model(source_key, TIMING_FILE, TimingMetadata)
        except ValidationError as e:
            logger.warning(f"{source_key}: ignoring unreadable {TIMING_FILE}: {e.error_count()} errors")
            return {}
        return {s.segment_id: s.text_part_timings for s in previous.segments if s.text_part_timings}

    async def _image_stage(
        self,
        source_key: str,
        script: AudioSegmentsDescriptor,
        scenes: SceneAnalysis,
        timing: TimingMetadata,
    ) -> int:
        """Images only for segments that made it onto the timing."""
        timed = {s.segment_id for s in timing.segments}
        illustrated = [
            s for s in script.audio_segments if s.background_image_description and s.id in timed
        ]

        def _produce_png(segment: AudioSegment):
            async def produce() -> bytes:
                return await self.images.generate(image_prompt(segment, scenes))
            return produce

        pngs: BatchOutcome = await self.generator.ensure_many(
            source_key, [(image_key(s.id), _produce_png(s)) for s in illustrated]
        )
        ready = pngs.by_key()

        def _produce_webp(segment: AudioSegment):
            async def produce() -> bytes:
                data = await asyncio.to_thread(self.store.read_bytes, source_key, image_key(segment.id))
                return await asyncio.to_thread(optimize_image, data, **self._image_options)
            return produce

        webps = await self.generator.ensure_many(
            source_key,
            [
                (image_key(s.id, ".webp"), _produce_webp(s))
                for s in illustrated
                if ready[image_key(s.id)].ok
            ],
        )
        return len(pngs.failed) + len(webps.failed)

    async def _render(self, job_id: uuid.UUID, source_key: str) -> VideoJob:
        """Render on the video_generation_status axis; failures stay on that axis."""
        job = await self.state.begin_render(job_id)
        attempts = (job.video_generation_data or {}).get("attempts", 0) + 1
        try:
            output_path = self.store.path(source_key, OUTPUT_VIDEO)
            timeline = self.store.read_model(source_key, TIMELINE_FILE, SynchronizedLesson)
            await self.renderer.render(timeline, output_path)
        except Exception as e:
            message = f"render failed: {type(e).__name__}: {e}"
            logger.error(f"Job {job_id}: {message}")
            return await self.state.fail_render(
                job_id,
                message,
                video_generation_data={"outputPath": None, "attempts": attempts, "error": message},
            )
        except BaseException as e:
            # Leave the axis retriable, then let the interruption propagate
            message = f"render interrupted: {type(e).__name__}"
            logger.error(f"Job {job_id}: {message}")
            await self.state.fail_render(
                job_id,
                message,
                video_generation_data={"outputPath": None, "attempts": attempts, "error": message},
            )
            raise
        return await self.state.complete_render(
            job_id,
            video_generation_data={
                "outputPath": self.store.public_url(source_key, OUTPUT_VIDEO),
                "attempts": attempts,
                "error": None,
            },
        )

    async def _finish_run(
        self, run_id: uuid.UUID, started: float, step_log: Dict[str, float], items_failed: int
    ) -> None:
        total = time.monotonic() - started
        await self.jobs.finish_run(
            run_id,
            total_duration_seconds=total,
            items_failed=items_failed,
            log={name: round(seconds, 3) for name, seconds in step_log.items()},
        )
        logger.info(f"Pipeline run {run_id} finished in {total:.2f}s")


def build_orchestrator(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> PipelineOrchestrator:
    """Wire the Gemini-backed capabilities from settings."""
    client = build_genai_client(settings)
    pipeline = settings.pipeline
    store = ArtifactStore(settings.storage.videos_dir, settings.storage.public_base_url)
    return PipelineOrchestrator(
        JobStore(session_factory),
        store,
        GeminiContentAnalyzer(client, settings.models.content_llm, max_retries=pipeline.retry_max_attempts),
        GeminiSpeechSynthesizer(
            client,
            settings.models.tts,
            settings.models.tts_voice,
            english_speaking_rate=pipeline.english_speaking_rate,
            short_part_chars=pipeline.short_text_part_chars,
            max_retries=pipeline.retry_max_attempts,
            base_delay=pipeline.retry_base_delay,
        ),
        GeminiImageSynthesizer(
            client,
            settings.models.image_gen,
            max_retries=pipeline.retry_max_attempts,
            base_delay=pipeline.retry_base_delay,
        ),
        FfmpegRenderer(store, pipeline.placeholder_color),
        concurrency=pipeline.generation_concurrency,
        image_max_width=pipeline.image_max_width,
        image_max_height=pipeline.image_max_height,
        image_quality=pipeline.image_quality,
    )
