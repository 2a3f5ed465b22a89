"""Main pipeline module - orchestrates transcribe, detect, clip and render for one project."""

import asyncio
import enum
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional

import httpx

from viralclip.config import Settings
from viralclip.store import ProjectStore

from .captions import CaptionPolicy, DEFAULT_POLICY, get_caption_policy, segment_words, shift_words, words_in_range
from .clip import ClippingClient
from .errors import (
    ConfigurationError,
    InvalidTransitionError,
    PipelineBusyError,
    ProjectNotFoundError,
    SourceMediaError,
    TransientExternalFailure,
    UnrecoverablePipelineFailure,
)
from .strategies import Strategy, first_success
from .subtitles import SUBTITLE_CONTENT_TYPES, encode
from .transcribe import DeepgramTranscriber, TranscriptionOptions, TranscriptionResult, probe_source_media
from .viral_analyzer import ViralMoment, ViralMomentSelector, default_moment

logger = logging.getLogger(__name__)

SUBTITLE_FORMATS = ("srt", "vtt")


class ProcessingStatus(str, enum.Enum):
    PROCESSING = "processing"
    TRANSCRIBING = "transcribing"
    TRANSCRIBED = "transcribed"
    TRANSCRIPT_EMPTY = "transcript_empty"
    DETECTING = "detecting"
    SEGMENT_SELECTED = "segment_selected"
    ANALYSIS_SKIPPED = "analysis_skipped"
    ANALYSIS_FAILED = "analysis_failed"
    CLIPPING = "clipping"
    RENDERING = "rendering"
    READY = "ready"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _STAGE_RANK.get(self, -1)

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessingStatus.READY, ProcessingStatus.ERROR)

    def can_advance_to(self, new: "ProcessingStatus") -> bool:
        """
        Stage order is monotonic. Any non-terminal status may fall to `error`;
        `error` only goes back to `processing` (explicit retry).
        """
        if self is ProcessingStatus.ERROR:
            return new is ProcessingStatus.PROCESSING
        if self is ProcessingStatus.READY:
            return False
        if new is ProcessingStatus.ERROR:
            return True
        return new.rank > self.rank


# Outcome variants of a stage share its rank
_STAGE_RANK = {
    ProcessingStatus.PROCESSING: 0,
    ProcessingStatus.TRANSCRIBING: 1,
    ProcessingStatus.TRANSCRIBED: 2,
    ProcessingStatus.TRANSCRIPT_EMPTY: 2,
    ProcessingStatus.DETECTING: 3,
    ProcessingStatus.SEGMENT_SELECTED: 4,
    ProcessingStatus.ANALYSIS_SKIPPED: 4,
    ProcessingStatus.ANALYSIS_FAILED: 4,
    ProcessingStatus.CLIPPING: 5,
    ProcessingStatus.RENDERING: 6,
    ProcessingStatus.READY: 7,
}


def parse_status(value: str) -> Optional[ProcessingStatus]:
    try:
        return ProcessingStatus(value)
    except ValueError:
        return None


def can_retry_from(status: Optional[ProcessingStatus]) -> bool:
    """
    Retry resets a failed project, or one left mid-stage by a run that
    never finished (the process died before writing a terminal status).
    The caller must check that no run is active.
    """
    if status is None or status is ProcessingStatus.ERROR:
        return True
    return not status.is_terminal and status is not ProcessingStatus.PROCESSING


@dataclass
class StatusEvent:
    """One step-log line, optionally carrying a status change."""
    project_id: int
    step: str
    message: str
    status: Optional[ProcessingStatus] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ProjectEventWriter:
    """
    Serializes status and log writes for one project.

    `emit` validates the transition and queues the event without waiting;
    a single consumer task writes events in emission order. A failed write
    is logged and never aborts the run.
    """

    def __init__(
        self,
        project_id: int,
        store: ProjectStore,
        initial_status: ProcessingStatus = ProcessingStatus.PROCESSING,
    ):
        self.project_id = project_id
        self.store = store
        self._status = initial_status
        self._queue: "asyncio.Queue[Optional[StatusEvent]]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self.events: list[StatusEvent] = []

    @property
    def status(self) -> ProcessingStatus:
        return self._status

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._consume())

    def emit(
        self,
        step: str,
        message: str,
        status: Optional[ProcessingStatus] = None,
    ) -> StatusEvent:
        """
        Queue a log line (and status change).

        Raises:
            InvalidTransitionError: the status change is not allowed from the current status
        """
        if status is not None:
            if not self._status.can_advance_to(status):
                raise InvalidTransitionError(
                    f"Project {self.project_id}: cannot go from '{self._status.value}' to '{status.value}'"
                )
            self._status = status

        event = StatusEvent(project_id=self.project_id, step=step, message=message, status=status)
        self.events.append(event)
        self._queue.put_nowait(event)
        logger.info(f"[project {self.project_id}] {step}: {message}")
        return event

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            await self._write(event)

    async def _write(self, event: StatusEvent) -> None:
        try:
            await self.store.add_log(event.project_id, event.step, event.message, created_at=event.created_at)
        except Exception:
            logger.exception(f"Failed to write log for project {event.project_id} ({event.step})")

        if event.status is not None:
            try:
                await self.store.set_status(event.project_id, event.status.value)
            except Exception:
                logger.exception(
                    f"Failed to set status '{event.status.value}' for project {event.project_id}"
                )

    async def close(self) -> None:
        """Flush every queued event, then stop the consumer."""
        if self._task is None:
            return
        self._queue.put_nowait(None)
        await self._task
        self._task = None


@dataclass
class PipelineConfig:
    """Configuration for the clipping pipeline."""
    transcription_model: str = "nova-2"
    fallback_model: str = "nova"
    caption_policy: CaptionPolicy = DEFAULT_POLICY
    detect_min_words: int = 20
    default_clip_length: float = 60.0
    probe_source: bool = True
    # Credential name -> value; a blank value fails the run before any stage
    credentials: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PipelineConfig":
        policy = get_caption_policy(settings.caption_policy).with_overrides(
            max_words=settings.caption_max_words,
            max_duration=settings.caption_max_duration,
            min_words=settings.caption_min_words,
        )
        return cls(
            transcription_model=settings.transcription_model,
            fallback_model=settings.transcription_fallback_model,
            caption_policy=policy,
            detect_min_words=settings.detect_min_words,
            default_clip_length=settings.default_clip_length,
            credentials={
                "DEEPGRAM_API_KEY": settings.deepgram_api_key,
                "AI_API_KEY": settings.ai_api_key,
            },
        )


@dataclass
class PipelineOutcome:
    """Result of one pipeline run."""
    project_id: int
    success: bool
    status: ProcessingStatus
    viral_moment: Optional[ViralMoment] = None
    generated_video_id: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "success": self.success,
            "status": self.status.value,
            "viral_moment": self.viral_moment.to_dict() if self.viral_moment else None,
            "generated_video_id": self.generated_video_id,
            "error": self.error,
        }


class ClipPipeline:
    """Runs one project from its raw video to a captioned clip."""

    def __init__(
        self,
        store: ProjectStore,
        transcriber: DeepgramTranscriber,
        selector: ViralMomentSelector,
        clipper: ClippingClient,
        config: Optional[PipelineConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.store = store
        self.transcriber = transcriber
        self.selector = selector
        self.clipper = clipper
        self.config = config or PipelineConfig()
        self.http_client = http_client

    async def run(self, project_id: int) -> PipelineOutcome:
        """
        Process a project whose status is `processing`.

        Never raises: any unhandled failure ends the project in `error`
        with the message as the last log line.
        """
        writer = ProjectEventWriter(project_id, self.store)
        writer.start()
        try:
            return await self._run_stages(project_id, writer)
        except Exception as e:
            failure = e if isinstance(e, UnrecoverablePipelineFailure) else UnrecoverablePipelineFailure(
                str(e) or e.__class__.__name__
            )
            logger.exception(f"Pipeline failed for project {project_id}: {failure}")
            try:
                writer.emit("error", str(failure), ProcessingStatus.ERROR)
            except InvalidTransitionError as te:
                logger.error(str(te))
            return PipelineOutcome(
                project_id=project_id,
                success=False,
                status=ProcessingStatus.ERROR,
                error=str(failure),
            )
        finally:
            await writer.close()

    async def _run_stages(self, project_id: int, writer: ProjectEventWriter) -> PipelineOutcome:
        self._check_configuration()

        raw = await self.store.get_raw_video(project_id)
        if raw is None:
            raise SourceMediaError("No raw video found")

        if self.config.probe_source:
            await probe_source_media(raw.file_url, self.http_client)

        transcript = await self._transcribe(raw, writer)
        moment = await self._detect(transcript, writer)
        video_url, clipped = await self._clip(project_id, raw.file_url, moment, writer)
        video = await self._render(project_id, transcript, moment, video_url, clipped, writer)

        writer.emit("complete", "Video processing complete!", ProcessingStatus.READY)
        return PipelineOutcome(
            project_id=project_id,
            success=True,
            status=ProcessingStatus.READY,
            viral_moment=moment,
            generated_video_id=video.id,
        )

    def _check_configuration(self) -> None:
        missing = [name for name, value in self.config.credentials.items() if not value]
        if missing:
            raise ConfigurationError(f"{', '.join(missing)} not configured")

    async def _transcribe_primary(self, source_url: str) -> TranscriptionResult:
        media_url = source_url
        if self.clipper.configured:
            media_url = await self.clipper.extract_audio(source_url)
        return await self.transcriber.transcribe(
            media_url, TranscriptionOptions(model=self.config.transcription_model)
        )

    async def _transcribe(self, raw, writer: ProjectEventWriter) -> TranscriptionResult:
        primary = self.config.transcription_model
        fallback = self.config.fallback_model
        writer.emit("transcribing", f"Starting transcription ({primary})...", ProcessingStatus.TRANSCRIBING)

        outcome = await first_success([
            Strategy(primary, lambda: self._transcribe_primary(raw.file_url)),
            Strategy(fallback, lambda: self.transcriber.transcribe(
                raw.file_url, TranscriptionOptions(model=fallback)
            )),
        ])

        for failure in outcome.failures:
            writer.emit("transcribing", f"Transcription with {failure.strategy} failed: {failure.error}")

        if not outcome.ok:
            writer.emit(
                "transcribing",
                "Warning: transcription failed, continuing with empty transcript",
                ProcessingStatus.TRANSCRIPT_EMPTY,
            )
            return TranscriptionResult.empty(raw.duration_seconds or 0.0)

        transcript = outcome.result.value
        if transcript.defects:
            logger.warning(f"Corrected {len(transcript.defects)} timestamp defects")

        data = transcript.to_dict()
        await self.store.save_transcript(
            raw.id,
            transcript.text,
            data["segments"],
            data["words"],
            duration=transcript.duration,
        )
        writer.emit(
            "transcribing",
            f"Transcription complete – {len(transcript.segments)} segments, duration: {transcript.duration}s",
            ProcessingStatus.TRANSCRIBED,
        )
        return transcript

    def _fit_moment(self, moment: ViralMoment, duration: float) -> ViralMoment:
        """Keep the moment inside the known media duration."""
        if duration <= 0 or moment.end_time <= duration:
            return moment
        if moment.start_time >= duration:
            logger.warning(
                f"Viral moment starts at {moment.start_time:.1f}s past media end ({duration:.1f}s), using default"
            )
            return default_moment(duration, self.config.default_clip_length, reason=moment.reason)
        return ViralMoment(
            start_time=moment.start_time,
            end_time=duration,
            hook_text=moment.hook_text,
            captions=moment.captions,
            reason=moment.reason,
        )

    async def _detect(self, transcript: TranscriptionResult, writer: ProjectEventWriter) -> ViralMoment:
        length = self.config.default_clip_length

        if transcript.word_count < self.config.detect_min_words:
            writer.emit(
                "detecting",
                f"Transcript too short for analysis ({transcript.word_count} words), using default segment",
                ProcessingStatus.ANALYSIS_SKIPPED,
            )
            return default_moment(transcript.duration, length, reason="Analysis skipped: transcript too short")

        writer.emit("detecting", "Analyzing transcript for viral moments...", ProcessingStatus.DETECTING)
        try:
            moment = await self.selector.select(transcript.segments)
        except TransientExternalFailure as e:
            logger.warning(f"Viral detection failed, using default segment: {e}")
            writer.emit(
                "detecting",
                f"Viral detection failed, using default segment: {e}",
                ProcessingStatus.ANALYSIS_FAILED,
            )
            return default_moment(transcript.duration, length, reason=f"Analysis failed: {e}")

        moment = self._fit_moment(moment, transcript.duration)
        writer.emit(
            "detecting",
            f"Viral moment found: {moment.start_time:.1f}s – {moment.end_time:.1f}s. {moment.reason}",
            ProcessingStatus.SEGMENT_SELECTED,
        )
        return moment

    async def _clip(
        self,
        project_id: int,
        source_url: str,
        moment: ViralMoment,
        writer: ProjectEventWriter,
    ) -> tuple[str, bool]:
        """Returns (video_url, clipped). Falls back to the source video on failure."""
        writer.emit(
            "clipping",
            f"Clipping {moment.start_time:.1f}s – {moment.end_time:.1f}s...",
            ProcessingStatus.CLIPPING,
        )
        output_name = f"project-{project_id}-{int(moment.start_time * 1000)}-{int(moment.end_time * 1000)}.mp4"
        try:
            clipped_url = await self.clipper.clip(source_url, moment.start_time, moment.end_time, output_name)
        except TransientExternalFailure as e:
            logger.warning(f"Clipping failed for project {project_id}, using original video: {e}")
            writer.emit("clip_failed", f"Clipping failed, using original video: {e}")
            return source_url, False

        writer.emit("clipping", "Clip created")
        return clipped_url, True

    async def _render(
        self,
        project_id: int,
        transcript: TranscriptionResult,
        moment: ViralMoment,
        video_url: str,
        clipped: bool,
        writer: ProjectEventWriter,
    ):
        writer.emit("rendering", "Rendering with overlays and captions...", ProcessingStatus.RENDERING)

        words = words_in_range(transcript.words, moment.start_time, moment.end_time)
        if clipped:
            # Clipped media starts at zero
            words = shift_words(words, moment.start_time)
        segments = segment_words(words, self.config.caption_policy)

        subtitles = {
            fmt: (SUBTITLE_CONTENT_TYPES[fmt], encode(segments, fmt).encode("utf-8"))
            for fmt in SUBTITLE_FORMATS
        }

        video = await self.store.replace_generated_video(
            project_id=project_id,
            video_url=video_url,
            clipped=clipped,
            start_time=moment.start_time,
            end_time=moment.end_time,
            hook_text=moment.hook_text,
            captions=moment.captions,
            reason=moment.reason,
            captions_json=[s.to_dict() for s in segments],
            word_timestamps=[asdict(w) for w in words],
            subtitles=subtitles,
        )
        writer.emit("rendering", f"Saved clip with {len(segments)} captions")
        return video


class PipelineRunner:
    """
    Allows at most one active run per project.

    `claim` is synchronous, so two requests racing in one event loop cannot
    both start a run.
    """

    def __init__(self, pipeline: ClipPipeline):
        self.pipeline = pipeline
        self.store = pipeline.store
        self._active: set[int] = set()

    def is_running(self, project_id: int) -> bool:
        return project_id in self._active

    def claim(self, project_id: int) -> None:
        if project_id in self._active:
            raise PipelineBusyError(project_id)
        self._active.add(project_id)

    def release(self, project_id: int) -> None:
        self._active.discard(project_id)

    async def run_claimed(self, project_id: int) -> PipelineOutcome:
        try:
            return await self.pipeline.run(project_id)
        finally:
            self.release(project_id)

    async def prepare_run(self, project_id: int) -> None:
        """
        Claim a project for a fresh run.

        Raises:
            ProjectNotFoundError, PipelineBusyError, InvalidTransitionError
        """
        project = await self.store.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        self.claim(project_id)
        if project.status != ProcessingStatus.PROCESSING.value:
            self.release(project_id)
            raise InvalidTransitionError(
                f"Project {project_id} is '{project.status}', a run can only start from 'processing'"
            )

    async def prepare_retry(self, project_id: int) -> None:
        """
        Claim a project in `error` (or stuck mid-stage with no active run),
        clear its log and reset it to `processing`.

        Earlier output is replaced by the new run, so retrying after a crash
        never leaves two derived videos.
        """
        project = await self.store.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        self.claim(project_id)

        if not can_retry_from(parse_status(project.status)):
            self.release(project_id)
            raise InvalidTransitionError(
                f"Project {project_id} is '{project.status}', retry is only available after an error "
                f"or an interrupted run"
            )
        if project.status != ProcessingStatus.ERROR.value:
            logger.warning(f"Project {project_id} was left in '{project.status}' with no active run, resetting")

        try:
            await self.store.reset_for_retry(project_id)
        except Exception:
            self.release(project_id)
            raise

    async def run(self, project_id: int) -> PipelineOutcome:
        await self.prepare_run(project_id)
        return await self.run_claimed(project_id)

    async def retry(self, project_id: int) -> PipelineOutcome:
        await self.prepare_retry(project_id)
        return await self.run_claimed(project_id)


def build_pipeline(
    settings: Settings,
    store: ProjectStore,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ClipPipeline:
    """Wire the external service clients from settings."""
    transcriber = DeepgramTranscriber(
        api_key=settings.deepgram_api_key,
        base_url=settings.deepgram_base_url,
        timeout=settings.transcription_timeout,
        http_client=http_client,
    )
    selector = ViralMomentSelector(
        api_key=settings.ai_api_key,
        base_url=settings.ai_base_url,
        model=settings.ai_model,
        timeout=settings.ai_timeout,
        http_client=http_client,
    )
    clipper = ClippingClient(
        base_url=settings.clipper_url,
        timeout=settings.clipper_timeout,
        http_client=http_client,
    )
    return ClipPipeline(
        store=store,
        transcriber=transcriber,
        selector=selector,
        clipper=clipper,
        config=PipelineConfig.from_settings(settings),
        http_client=http_client,
    )
