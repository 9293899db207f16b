"""
SQL Job Store - SQLAlchemy backend for jobs and clips.

The write-once terminal rule is enforced by the database itself: every job
update is a single ``UPDATE ... WHERE id = :id AND status NOT IN (terminal)``.
A reconciliation pass that lost a race against a cancel simply updates zero
rows.
"""

import asyncio
import functools
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    or_,
    select,
    update,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from viralclips.config import Settings
from viralclips.errors import NotFoundError
from viralclips.services.job_store import (
    TERMINAL_STATUSES,
    Clip,
    ClipStatus,
    Job,
    JobOptions,
    JobStatus,
    JobStore,
    utcnow,
    validate_changes,
)
from viralclips.services.metadata_provider import VideoMetadata

logger = logging.getLogger(__name__)

Base = declarative_base()

_TERMINAL_VALUES = [status.value for status in TERMINAL_STATUSES]


class JobRow(Base):
    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(255), nullable=False)
    source_url = Column(Text, nullable=False)
    video_id = Column(String(64), nullable=False)
    remote_job_id = Column(String(255), nullable=True)
    status = Column(String(32), nullable=False, default=JobStatus.QUEUED.value)
    stage = Column(String(255), nullable=True)
    progress = Column(Integer, nullable=False, default=0)
    options = Column(JSON, nullable=True)
    # "metadata" is reserved on declarative classes
    video_metadata = Column("metadata", JSON, nullable=True)
    clips = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_jobs_owner_created", "owner_id", "created_at"),
    )


class ClipRow(Base):
    __tablename__ = "clips"

    id = Column(String(36), primary_key=True)
    job_id = Column(String(36), nullable=False)
    owner_id = Column(String(255), nullable=False)
    title = Column(Text, nullable=False)
    start_time = Column(Float, nullable=False)
    end_time = Column(Float, nullable=False)
    duration_seconds = Column(Float, nullable=False)
    video_url = Column(Text, nullable=True)
    predicted_engagement = Column(Float, nullable=True)
    thumbnail_urls = Column(JSON, nullable=True)
    subtitle_urls = Column(JSON, nullable=True)
    file_size_bytes = Column(Integer, nullable=True)
    status = Column(String(32), nullable=False, default=ClipStatus.READY.value)
    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_clips_owner_created", "owner_id", "created_at"),
        Index("idx_clips_job", "job_id"),
    )


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _job_from_row(row: JobRow) -> Job:
    return Job(
        id=row.id,
        owner_id=row.owner_id,
        source_url=row.source_url,
        video_id=row.video_id,
        status=JobStatus(row.status),
        stage=row.stage or "",
        progress=row.progress or 0,
        remote_job_id=row.remote_job_id,
        options=JobOptions.from_dict(row.options),
        metadata=VideoMetadata.from_dict(row.video_metadata),
        clips=list(row.clips or []),
        error_message=row.error_message,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        expires_at=_aware(row.expires_at),
    )


def _clip_from_row(row: ClipRow) -> Clip:
    return Clip(
        id=row.id,
        job_id=row.job_id,
        owner_id=row.owner_id,
        title=row.title,
        start_time=row.start_time,
        end_time=row.end_time,
        video_url=row.video_url,
        predicted_engagement=row.predicted_engagement,
        thumbnail_urls=list(row.thumbnail_urls or []),
        subtitle_urls=list(row.subtitle_urls or []),
        file_size_bytes=row.file_size_bytes,
        status=ClipStatus(row.status),
        created_at=_aware(row.created_at),
        expires_at=_aware(row.expires_at),
    )


def _clip_to_row(clip: Clip) -> ClipRow:
    return ClipRow(
        id=clip.id,
        job_id=clip.job_id,
        owner_id=clip.owner_id,
        title=clip.title,
        start_time=clip.start_time,
        end_time=clip.end_time,
        duration_seconds=clip.duration_seconds,
        video_url=clip.video_url,
        predicted_engagement=clip.predicted_engagement,
        thumbnail_urls=list(clip.thumbnail_urls),
        subtitle_urls=list(clip.subtitle_urls),
        file_size_bytes=clip.file_size_bytes,
        status=clip.status.value,
        created_at=clip.created_at,
        expires_at=clip.expires_at,
    )


def _columns_for(changes: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, value in changes.items():
        if key == "status":
            values["status"] = JobStatus(value).value
        elif key == "metadata":
            values["video_metadata"] = value.to_dict() if value is not None else None
        else:
            values[key] = value
    return values


class SqlJobStore(JobStore):
    """
    Job store backed by any SQLAlchemy-supported database.

    Blocking database calls run in the default executor so they do not stall
    the event loop.
    """

    def __init__(self, database_url: str, settings: Optional[Settings] = None):
        super().__init__(settings)
        engine_kwargs: dict[str, Any] = {}
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
                engine_kwargs["poolclass"] = StaticPool
        self.engine = create_engine(database_url, **engine_kwargs)
        self._session_factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def _create_job_sync(self, job: Job) -> Job:
        if job.expires_at is None:
            job.expires_at = self.expiry_from(job.created_at)
        with self._session_factory() as session, session.begin():
            session.add(
                JobRow(
                    id=job.id,
                    owner_id=job.owner_id,
                    source_url=job.source_url,
                    video_id=job.video_id,
                    remote_job_id=job.remote_job_id,
                    status=job.status.value,
                    stage=job.stage,
                    progress=job.progress,
                    options=job.options.to_dict(),
                    video_metadata=job.metadata.to_dict() if job.metadata else None,
                    clips=list(job.clips),
                    error_message=job.error_message,
                    created_at=job.created_at,
                    updated_at=job.updated_at,
                    expires_at=job.expires_at,
                )
            )
        logger.info(f"Job {job.id} created for owner {job.owner_id} (status {job.status.value})")
        return job

    async def create_job(self, job: Job) -> Job:
        return await self._run(self._create_job_sync, job)

    def _get_job_sync(self, job_id: str, owner_id: Optional[str]) -> Job:
        with self._session_factory() as session:
            row = session.get(JobRow, job_id)
            if row is None or (owner_id is not None and row.owner_id != owner_id):
                raise NotFoundError()
            return _job_from_row(row)

    async def get_job(self, job_id: str, owner_id: str) -> Job:
        return await self._run(self._get_job_sync, job_id, owner_id)

    def _list_jobs_sync(
        self, owner_id: str, status: Optional[JobStatus], limit: Optional[int]
    ) -> list[Job]:
        query = select(JobRow).where(JobRow.owner_id == owner_id)
        if status is not None:
            query = query.where(JobRow.status == JobStatus(status).value)
        query = query.order_by(JobRow.created_at.desc())
        if limit is not None:
            query = query.limit(limit)
        with self._session_factory() as session:
            return [_job_from_row(row) for row in session.scalars(query)]

    async def list_jobs(
        self,
        owner_id: str,
        status: Optional[JobStatus] = None,
        limit: Optional[int] = None,
    ) -> list[Job]:
        return await self._run(self._list_jobs_sync, owner_id, status, limit)

    def _update_sync(self, job_id: str, changes: dict[str, Any], clips: list[Clip]) -> Job:
        with self._session_factory() as session, session.begin():
            row = session.get(JobRow, job_id)
            if row is None:
                raise NotFoundError()
            if row.status in _TERMINAL_VALUES:
                logger.info(f"Ignoring update to terminal job {job_id} ({row.status})")
                return _job_from_row(row)

            values = _columns_for(validate_changes(_job_from_row(row), changes))
            values["updated_at"] = utcnow()
            conditions = [JobRow.id == job_id, JobRow.status.notin_(_TERMINAL_VALUES)]
            if "remote_job_id" in values:
                # Set-once, checked against the committed row
                conditions.append(
                    or_(
                        JobRow.remote_job_id.is_(None),
                        JobRow.remote_job_id == values["remote_job_id"],
                    )
                )
            result = session.execute(
                update(JobRow)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                for clip in clips:
                    if clip.expires_at is None:
                        clip.expires_at = self.expiry_from(clip.created_at)
                    session.add(_clip_to_row(clip))
            else:
                current = session.execute(
                    select(JobRow.status, JobRow.remote_job_id).where(JobRow.id == job_id)
                ).one()
                if current.status not in _TERMINAL_VALUES:
                    raise ValueError(
                        f"remote_job_id already set for job {job_id} ({current.remote_job_id})"
                    )
                logger.info(f"Job {job_id} became terminal concurrently; update skipped")

        return self._get_job_sync(job_id, None)

    async def update_job(self, job_id: str, changes: dict[str, Any]) -> Job:
        return await self._run(self._update_sync, job_id, changes, [])

    async def complete_job(self, job_id: str, clips: list[Clip], changes: dict[str, Any]) -> Job:
        return await self._run(self._update_sync, job_id, changes, clips)

    # ------------------------------------------------------------------
    # Clips
    # ------------------------------------------------------------------

    def _create_clip_sync(self, clip: Clip) -> Clip:
        if clip.expires_at is None:
            clip.expires_at = self.expiry_from(clip.created_at)
        with self._session_factory() as session, session.begin():
            session.add(_clip_to_row(clip))
        return clip

    async def create_clip(self, clip: Clip) -> Clip:
        return await self._run(self._create_clip_sync, clip)

    def _list_clips_sync(self, owner_id: str, job_id: Optional[str]) -> list[Clip]:
        query = select(ClipRow).where(ClipRow.owner_id == owner_id)
        if job_id is not None:
            query = query.where(ClipRow.job_id == job_id)
        query = query.order_by(ClipRow.created_at.desc())
        with self._session_factory() as session:
            return [_clip_from_row(row) for row in session.scalars(query)]

    async def list_clips(self, owner_id: str, job_id: Optional[str] = None) -> list[Clip]:
        return await self._run(self._list_clips_sync, owner_id, job_id)
