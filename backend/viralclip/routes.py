"""
API routes for the viral clip generator.
"""

import logging
from datetime import datetime
from functools import lru_cache
from typing import Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field

from viralclip.config import get_settings
from viralclip.database import get_session_maker
from viralclip.store import ProjectStore
from viralclip.services.clipper.captions import CaptionSegment, get_caption_policy, segment_words
from viralclip.services.clipper.errors import InvalidTransitionError, PipelineBusyError, ProjectNotFoundError
from viralclip.services.clipper.pipeline import (
    PipelineRunner,
    ProcessingStatus,
    build_pipeline,
    can_retry_from,
    parse_status,
)
from viralclip.services.clipper.playback import render_frame
from viralclip.services.clipper.subtitles import SUBTITLE_CONTENT_TYPES, encode
from viralclip.services.clipper.transcribe import sanitize_words

logger = logging.getLogger(__name__)

router = APIRouter()

VERSION = "1.0.0"


def get_store() -> ProjectStore:
    session_maker = get_session_maker()
    if session_maker is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return ProjectStore(session_maker)


@lru_cache()
def get_runner() -> PipelineRunner:
    """One runner per process so the busy check covers every request."""
    return PipelineRunner(build_pipeline(get_settings(), get_store()))


# Request/Response Models

class HealthResponse(BaseModel):
    status: str
    version: str


class CreateProjectRequest(BaseModel):
    file_url: str = Field(min_length=1)
    title: Optional[str] = None
    duration_seconds: Optional[float] = Field(default=None, ge=0)


class ProjectResponse(BaseModel):
    id: int
    title: Optional[str]
    status: str
    is_terminal: bool
    retry_available: bool
    running: bool
    last_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class LogResponse(BaseModel):
    id: int
    step: str
    message: Optional[str]
    created_at: Optional[datetime]


class RunResponse(BaseModel):
    project_id: int
    status: str
    message: str


class ClipResponse(BaseModel):
    id: int
    project_id: int
    video_url: str
    clipped: bool
    start_time: float
    end_time: float
    hook_text: Optional[str]
    captions: Optional[str]
    reason: Optional[str]
    segments: list[dict]
    subtitle_formats: list[str]


class WordIn(BaseModel):
    word: str
    start: Optional[float] = None
    end: Optional[float] = None
    confidence: Optional[float] = None


class SegmentRequest(BaseModel):
    words: list[WordIn]
    policy: str = "punchy"
    max_words: Optional[int] = Field(default=None, ge=1)
    max_duration: Optional[float] = Field(default=None, gt=0)
    min_words: Optional[int] = Field(default=None, ge=1)
    format: Optional[Literal["srt", "vtt"]] = None


class SegmentResponse(BaseModel):
    policy: str
    segments: list[dict]
    defects: list[str]
    subtitles: Optional[str] = None


# Helpers

async def _require_project(store: ProjectStore, project_id: int):
    project = await store.get_project(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


async def _project_response(store: ProjectStore, runner: PipelineRunner, project) -> ProjectResponse:
    status = parse_status(project.status)
    last = await store.last_log(project.id)
    return ProjectResponse(
        id=project.id,
        title=project.title,
        status=project.status,
        is_terminal=bool(status and status.is_terminal),
        retry_available=can_retry_from(status) and not runner.is_running(project.id),
        running=runner.is_running(project.id),
        last_message=last.message if last else None,
        created_at=project.created_at,
        updated_at=project.updated_at,
    )


# Routes

@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(status="healthy", version=VERSION)


@router.post("/projects", response_model=ProjectResponse, status_code=201)
async def create_project(
    request: CreateProjectRequest,
    store: ProjectStore = Depends(get_store),
    runner: PipelineRunner = Depends(get_runner),
):
    """Register a source video. The project starts in `processing`."""
    project = await store.create_project(
        file_url=request.file_url,
        title=request.title,
        duration_seconds=request.duration_seconds,
    )
    return await _project_response(store, runner, project)


@router.get("/projects/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: int,
    store: ProjectStore = Depends(get_store),
    runner: PipelineRunner = Depends(get_runner),
):
    project = await _require_project(store, project_id)
    return await _project_response(store, runner, project)


@router.get("/projects/{project_id}/logs", response_model=list[LogResponse])
async def get_project_logs(project_id: int, store: ProjectStore = Depends(get_store)):
    """Step log in the order it was written."""
    await _require_project(store, project_id)
    logs = await store.list_logs(project_id)
    return [
        LogResponse(id=log.id, step=log.step, message=log.message, created_at=log.created_at)
        for log in logs
    ]


@router.post("/projects/{project_id}/generate", response_model=RunResponse, status_code=202)
async def generate_clip(
    project_id: int,
    background_tasks: BackgroundTasks,
    runner: PipelineRunner = Depends(get_runner),
):
    """Start a pipeline run in the background."""
    try:
        await runner.prepare_run(project_id)
    except ProjectNotFoundError:
        raise HTTPException(status_code=404, detail="Project not found")
    except (PipelineBusyError, InvalidTransitionError) as e:
        raise HTTPException(status_code=409, detail=str(e))

    background_tasks.add_task(runner.run_claimed, project_id)
    return RunResponse(project_id=project_id, status=ProcessingStatus.PROCESSING.value, message="Processing started")


@router.post("/projects/{project_id}/retry", response_model=RunResponse, status_code=202)
async def retry_project(
    project_id: int,
    background_tasks: BackgroundTasks,
    runner: PipelineRunner = Depends(get_runner),
):
    """Clear the step log of a failed or interrupted project and run it again."""
    try:
        await runner.prepare_retry(project_id)
    except ProjectNotFoundError:
        raise HTTPException(status_code=404, detail="Project not found")
    except (PipelineBusyError, InvalidTransitionError) as e:
        raise HTTPException(status_code=409, detail=str(e))

    background_tasks.add_task(runner.run_claimed, project_id)
    return RunResponse(project_id=project_id, status=ProcessingStatus.PROCESSING.value, message="Retry started")


@router.get("/projects/{project_id}/clip", response_model=ClipResponse)
async def get_clip(project_id: int, store: ProjectStore = Depends(get_store)):
    await _require_project(store, project_id)
    video = await store.get_generated_video(project_id)
    if video is None:
        raise HTTPException(status_code=404, detail="No clip generated yet")

    return ClipResponse(
        id=video.id,
        project_id=video.project_id,
        video_url=video.video_url,
        clipped=bool(video.clipped),
        start_time=video.start_time,
        end_time=video.end_time,
        hook_text=video.hook_text,
        captions=video.captions,
        reason=video.reason,
        segments=video.captions_json or [],
        subtitle_formats=sorted(SUBTITLE_CONTENT_TYPES),
    )


@router.get("/projects/{project_id}/subtitles.{fmt}")
async def get_subtitles(project_id: int, fmt: str, store: ProjectStore = Depends(get_store)):
    """Download the stored subtitle file."""
    if fmt not in SUBTITLE_CONTENT_TYPES:
        raise HTTPException(status_code=404, detail=f"Unsupported subtitle format: {fmt}")

    subtitle = await store.get_subtitle(project_id, fmt)
    if subtitle is None:
        raise HTTPException(status_code=404, detail="Subtitles not found")

    return Response(
        content=subtitle.content,
        media_type=subtitle.content_type,
        headers={"Content-Disposition": f'attachment; filename="project-{project_id}.{fmt}"'},
    )


@router.get("/projects/{project_id}/captions/frame")
async def get_caption_frame(
    project_id: int,
    t: float = Query(..., ge=0, description="Playback time in seconds"),
    previous_t: Optional[float] = Query(None, ge=0, description="Time of the previous frame"),
    store: ProjectStore = Depends(get_store),
):
    """Caption overlay state at playback time `t`."""
    video = await store.get_generated_video(project_id)
    if video is None:
        raise HTTPException(status_code=404, detail="No clip generated yet")

    crossfade = get_settings().crossfade_ms / 1000
    segments = [CaptionSegment.from_dict(s) for s in video.captions_json or []]
    frame = render_frame(
        segments,
        t,
        fallback_caption=video.captions or None,
        previous_time=previous_t,
        crossfade=crossfade,
    )
    return {**frame.to_dict(), "crossfade_seconds": crossfade}


@router.post("/captions/segment", response_model=SegmentResponse)
async def segment_captions(request: SegmentRequest):
    """Group posted word timestamps into caption segments."""
    try:
        policy = get_caption_policy(request.policy).with_overrides(
            max_words=request.max_words,
            max_duration=request.max_duration,
            min_words=request.min_words,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    words, defects = sanitize_words(w.model_dump() for w in request.words)
    segments = segment_words(words, policy)

    return SegmentResponse(
        policy=policy.name,
        segments=[s.to_dict() for s in segments],
        defects=[str(d) for d in defects],
        subtitles=encode(segments, request.format) if request.format else None,
    )
