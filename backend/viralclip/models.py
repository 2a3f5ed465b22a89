from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Boolean, Float, LargeBinary, ForeignKey
from sqlalchemy.sql import func
from viralclip.database import Base


class Project(Base):
    """A single upload moving through the clipping pipeline."""
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(500), nullable=True)
    status = Column(String(40), default="processing", nullable=False)  # see ProcessingStatus
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class RawVideo(Base):
    """Source media for a project plus its transcription output."""
    __tablename__ = "raw_videos"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    file_url = Column(Text, nullable=False)
    duration_seconds = Column(Float, nullable=True)

    transcript = Column(Text, nullable=True)
    transcript_json = Column(JSON, nullable=True)  # TranscriptSegment list
    word_timestamps = Column(JSON, nullable=True)  # WordTimestamp list

    uploaded_at = Column(DateTime(timezone=True), server_default=func.now())


class ProcessingLog(Base):
    """Step log shown to the user while a project is processing."""
    __tablename__ = "processing_logs"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    step = Column(String(40), nullable=False)
    message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class GeneratedVideo(Base):
    """The derived short video produced by a successful pipeline attempt."""
    __tablename__ = "generated_videos"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    video_url = Column(Text, nullable=False)
    clipped = Column(Boolean, default=False)  # False when the original media is used as-is

    start_time = Column(Float, nullable=True)
    end_time = Column(Float, nullable=True)
    hook_text = Column(Text, nullable=True)
    captions = Column(Text, nullable=True)
    reason = Column(Text, nullable=True)

    # Caption segments and words, timed relative to video_url
    captions_json = Column(JSON, nullable=True)
    word_timestamps = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())


class SubtitleFile(Base):
    """Rendered subtitle document for a generated video."""
    __tablename__ = "subtitle_files"

    id = Column(Integer, primary_key=True, index=True)
    generated_video_id = Column(Integer, ForeignKey("generated_videos.id"), nullable=False, index=True)
    format = Column(String(10), nullable=False)  # srt, vtt
    content_type = Column(String(50), nullable=False)
    content = Column(LargeBinary, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
