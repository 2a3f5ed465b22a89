"""
Project persistence: status, step logs, transcripts and generated videos.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update, delete, desc, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from viralclip.models import Project, RawVideo, ProcessingLog, GeneratedVideo, SubtitleFile

logger = logging.getLogger(__name__)


class ProjectStore:
    """All reads and writes of project state go through here."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def create_project(
        self,
        file_url: str,
        title: Optional[str] = None,
        duration_seconds: Optional[float] = None,
    ) -> Project:
        async with self.session_maker() as db:
            project = Project(title=title, status="processing")
            db.add(project)
            await db.flush()
            db.add(RawVideo(
                project_id=project.id,
                file_url=file_url,
                duration_seconds=duration_seconds,
            ))
            await db.commit()
            await db.refresh(project)
            logger.info(f"Created project {project.id}")
            return project

    async def get_project(self, project_id: int) -> Optional[Project]:
        async with self.session_maker() as db:
            return await db.get(Project, project_id)

    async def get_raw_video(self, project_id: int) -> Optional[RawVideo]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(RawVideo)
                .where(RawVideo.project_id == project_id)
                .order_by(RawVideo.id)
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def set_status(self, project_id: int, status: str) -> None:
        async with self.session_maker() as db:
            await db.execute(
                update(Project)
                .where(Project.id == project_id)
                .values(status=status, updated_at=func.now())
            )
            await db.commit()

    async def add_log(
        self,
        project_id: int,
        step: str,
        message: str,
        created_at: Optional[datetime] = None,
    ) -> None:
        async with self.session_maker() as db:
            entry = ProcessingLog(project_id=project_id, step=step, message=message)
            if created_at is not None:
                entry.created_at = created_at
            db.add(entry)
            await db.commit()

    async def list_logs(self, project_id: int) -> list[ProcessingLog]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(ProcessingLog)
                .where(ProcessingLog.project_id == project_id)
                .order_by(ProcessingLog.id)
            )
            return list(result.scalars().all())

    async def last_log(self, project_id: int) -> Optional[ProcessingLog]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(ProcessingLog)
                .where(ProcessingLog.project_id == project_id)
                .order_by(desc(ProcessingLog.id))
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def reset_for_retry(self, project_id: int) -> None:
        """Clear the step log and put the project back to `processing`."""
        async with self.session_maker() as db:
            await db.execute(delete(ProcessingLog).where(ProcessingLog.project_id == project_id))
            await db.execute(
                update(Project)
                .where(Project.id == project_id)
                .values(status="processing", updated_at=func.now())
            )
            await db.commit()
        logger.info(f"Project {project_id} reset for retry")

    async def save_transcript(
        self,
        raw_video_id: int,
        transcript: str,
        segments: list[dict],
        words: list[dict],
        duration: Optional[float] = None,
    ) -> None:
        values = {
            "transcript": transcript,
            "transcript_json": segments,
            "word_timestamps": words,
        }
        if duration:
            values["duration_seconds"] = duration
        async with self.session_maker() as db:
            await db.execute(update(RawVideo).where(RawVideo.id == raw_video_id).values(**values))
            await db.commit()

    async def replace_generated_video(
        self,
        project_id: int,
        video_url: str,
        clipped: bool,
        start_time: float,
        end_time: float,
        hook_text: str,
        captions: str,
        reason: str,
        captions_json: list[dict],
        word_timestamps: list[dict],
        subtitles: dict[str, tuple[str, bytes]],
    ) -> GeneratedVideo:
        """
        Store the derived video for a project, replacing any earlier one.

        Args:
            subtitles: format -> (content_type, content)
        """
        async with self.session_maker() as db:
            old_ids = select(GeneratedVideo.id).where(GeneratedVideo.project_id == project_id)
            await db.execute(delete(SubtitleFile).where(SubtitleFile.generated_video_id.in_(old_ids)))
            await db.execute(delete(GeneratedVideo).where(GeneratedVideo.project_id == project_id))

            video = GeneratedVideo(
                project_id=project_id,
                video_url=video_url,
                clipped=clipped,
                start_time=start_time,
                end_time=end_time,
                hook_text=hook_text,
                captions=captions,
                reason=reason,
                captions_json=captions_json,
                word_timestamps=word_timestamps,
            )
            db.add(video)
            await db.flush()

            for fmt, (content_type, content) in subtitles.items():
                db.add(SubtitleFile(
                    generated_video_id=video.id,
                    format=fmt,
                    content_type=content_type,
                    content=content,
                ))

            await db.commit()
            await db.refresh(video)
            return video

    async def get_generated_video(self, project_id: int) -> Optional[GeneratedVideo]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(GeneratedVideo)
                .where(GeneratedVideo.project_id == project_id)
                .order_by(desc(GeneratedVideo.id))
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def count_generated_videos(self, project_id: int) -> int:
        async with self.session_maker() as db:
            result = await db.execute(
                select(func.count(GeneratedVideo.id)).where(GeneratedVideo.project_id == project_id)
            )
            return result.scalar_one()

    async def get_subtitle(self, project_id: int, fmt: str) -> Optional[SubtitleFile]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(SubtitleFile)
                .join(GeneratedVideo, SubtitleFile.generated_video_id == GeneratedVideo.id)
                .where(GeneratedVideo.project_id == project_id, SubtitleFile.format == fmt)
                .order_by(desc(SubtitleFile.id))
                .limit(1)
            )
            return result.scalar_one_or_none()
