"""
Job Store - persistence for jobs and clips.

All reads are scoped by owner id. A job owned by someone else is reported
exactly like a job that does not exist.

Terminal states are write-once at this layer: once a job is ``completed``,
``failed`` or ``cancelled`` no update touches it again, whatever the caller
asks for. Callers always get back the row as it is actually stored.
"""

import asyncio
import copy
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from viralclips.config import Settings, get_settings
from viralclips.errors import NotFoundError
from viralclips.services.metadata_provider import VideoMetadata

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Status of a clip job. Declaration order is pipeline order."""

    QUEUED = "queued"
    DOWNLOADING = "downloading"
    TRANSCRIBING = "transcribing"
    DETECTING_HIGHLIGHTS = "detecting_highlights"
    CREATING_CLIPS = "creating_clips"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# Non-terminal statuses in pipeline order
PIPELINE_ORDER = (
    JobStatus.QUEUED,
    JobStatus.DOWNLOADING,
    JobStatus.TRANSCRIBING,
    JobStatus.DETECTING_HIGHLIGHTS,
    JobStatus.CREATING_CLIPS,
    JobStatus.UPLOADING,
)


class ClipStatus(str, Enum):
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"
    EXPIRED = "expired"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class JobOptions:
    """Processing options chosen by the user. Passed through to the gateway."""

    caption_style: str = "modern"
    music_enabled: bool = True
    sfx_enabled: bool = True
    max_clips: int = 3
    min_duration: int = 15
    max_duration: int = 60

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_gateway_options(self) -> dict[str, Any]:
        """Option names the processing service understands."""
        return {
            "captions": self.caption_style,
            "music": self.music_enabled,
            "sfx": self.sfx_enabled,
            "max_clips": self.max_clips,
            "min_duration": self.min_duration,
            "max_duration": self.max_duration,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "JobOptions":
        if not data:
            return cls()
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class Job:
    """One user-submitted video processing request."""

    id: str
    owner_id: str
    source_url: str
    video_id: str
    status: JobStatus = JobStatus.QUEUED
    stage: str = "Queued"
    progress: int = 0
    remote_job_id: Optional[str] = None
    options: JobOptions = field(default_factory=JobOptions)
    metadata: Optional[VideoMetadata] = None
    clips: list[dict[str, Any]] = field(default_factory=list)
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class Clip:
    """One generated highlight belonging to a completed job."""

    id: str
    job_id: str
    owner_id: str
    title: str
    start_time: float
    end_time: float
    video_url: Optional[str] = None
    predicted_engagement: Optional[float] = None
    thumbnail_urls: list[str] = field(default_factory=list)
    subtitle_urls: list[str] = field(default_factory=list)
    file_size_bytes: Optional[int] = None
    status: ClipStatus = ClipStatus.READY
    created_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> float:
        return round(self.end_time - self.start_time, 3)

    def to_descriptor(self) -> dict[str, Any]:
        """Denormalized form stored on the owning job."""
        return {
            "id": self.id,
            "title": self.title,
            "video_url": self.video_url,
            "thumbnail_urls": list(self.thumbnail_urls),
            "subtitle_urls": list(self.subtitle_urls),
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_seconds": self.duration_seconds,
            "predicted_engagement": self.predicted_engagement,
            "status": self.status.value,
        }


# Fields an update may write
UPDATABLE_FIELDS = frozenset(
    {"status", "stage", "progress", "remote_job_id", "clips", "error_message", "metadata"}
)


def validate_changes(job: Job, changes: dict[str, Any]) -> dict[str, Any]:
    """Reject unknown fields and enforce the set-once ``remote_job_id`` rule."""
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update job fields: {sorted(unknown)}")
    if (
        "remote_job_id" in changes
        and job.remote_job_id is not None
        and changes["remote_job_id"] != job.remote_job_id
    ):
        raise ValueError(f"remote_job_id already set for job {job.id}")
    if "status" in changes:
        changes = {**changes, "status": JobStatus(changes["status"])}
    return changes


class JobStore(ABC):
    """Persistence contract shared by every backend."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def expiry_from(self, created_at: datetime) -> datetime:
        return created_at + timedelta(hours=self.settings.job_expiration_hours)

    @abstractmethod
    async def create_job(self, job: Job) -> Job:
        ...

    @abstractmethod
    async def get_job(self, job_id: str, owner_id: str) -> Job:
        """Raises NotFoundError for missing or foreign jobs."""

    @abstractmethod
    async def list_jobs(
        self,
        owner_id: str,
        status: Optional[JobStatus] = None,
        limit: Optional[int] = None,
    ) -> list[Job]:
        """Newest first."""

    @abstractmethod
    async def update_job(self, job_id: str, changes: dict[str, Any]) -> Job:
        """
        Atomically apply ``changes`` unless the stored job is terminal.

        Returns the stored job after the update (unchanged if it was terminal).
        """

    @abstractmethod
    async def complete_job(self, job_id: str, clips: list[Clip], changes: dict[str, Any]) -> Job:
        """Atomically insert ``clips`` and apply ``changes`` unless the job is terminal."""

    @abstractmethod
    async def create_clip(self, clip: Clip) -> Clip:
        ...

    @abstractmethod
    async def list_clips(self, owner_id: str, job_id: Optional[str] = None) -> list[Clip]:
        """Newest first."""


class InMemoryJobStore(JobStore):
    """
    Process-local store (for development and tests; use the SQL store in production).

    A single asyncio lock guards every mutation, so each update is atomic with
    respect to concurrent reconciliation passes. Copies are handed out so that
    callers can never mutate stored rows behind the lock.
    """

    def __init__(self, settings: Optional[Settings] = None):
        super().__init__(settings)
        self._jobs: dict[str, Job] = {}
        self._clips: dict[str, Clip] = {}
        self._lock = asyncio.Lock()

    async def create_job(self, job: Job) -> Job:
        if job.expires_at is None:
            job.expires_at = self.expiry_from(job.created_at)
        async with self._lock:
            self._jobs[job.id] = copy.deepcopy(job)
        logger.info(f"Job {job.id} created for owner {job.owner_id} (status {job.status.value})")
        return copy.deepcopy(job)

    async def get_job(self, job_id: str, owner_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None or job.owner_id != owner_id:
            raise NotFoundError()
        return copy.deepcopy(job)

    async def list_jobs(
        self,
        owner_id: str,
        status: Optional[JobStatus] = None,
        limit: Optional[int] = None,
    ) -> list[Job]:
        jobs = [
            job for job in self._jobs.values()
            if job.owner_id == owner_id and (status is None or job.status == status)
        ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        if limit is not None:
            jobs = jobs[:limit]
        return [copy.deepcopy(job) for job in jobs]

    def _apply(self, job_id: str, changes: dict[str, Any]) -> tuple[Job, bool]:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError()
        if job.is_terminal:
            logger.info(f"Ignoring update to terminal job {job_id} ({job.status.value})")
            return job, False
        changes = validate_changes(job, changes)
        for key, value in changes.items():
            setattr(job, key, copy.deepcopy(value))
        job.updated_at = utcnow()
        return job, True

    async def update_job(self, job_id: str, changes: dict[str, Any]) -> Job:
        async with self._lock:
            job, _ = self._apply(job_id, changes)
            return copy.deepcopy(job)

    async def complete_job(self, job_id: str, clips: list[Clip], changes: dict[str, Any]) -> Job:
        async with self._lock:
            job, applied = self._apply(job_id, changes)
            if applied:
                for clip in clips:
                    if clip.expires_at is None:
                        clip.expires_at = self.expiry_from(clip.created_at)
                    self._clips[clip.id] = copy.deepcopy(clip)
            return copy.deepcopy(job)

    async def create_clip(self, clip: Clip) -> Clip:
        if clip.expires_at is None:
            clip.expires_at = self.expiry_from(clip.created_at)
        async with self._lock:
            self._clips[clip.id] = copy.deepcopy(clip)
        return copy.deepcopy(clip)

    async def list_clips(self, owner_id: str, job_id: Optional[str] = None) -> list[Clip]:
        clips = [
            clip for clip in self._clips.values()
            if clip.owner_id == owner_id and (job_id is None or clip.job_id == job_id)
        ]
        clips.sort(key=lambda c: c.created_at, reverse=True)
        return [copy.deepcopy(clip) for clip in clips]


def build_job_store(settings: Optional[Settings] = None) -> JobStore:
    """Pick the backend from ``DATABASE_URL`` (empty = in-memory)."""
    settings = settings or get_settings()
    if settings.database_url:
        from viralclips.services.sql_job_store import SqlJobStore

        logger.info("Using SQL job store")
        return SqlJobStore(settings.database_url, settings=settings)
    logger.warning("DATABASE_URL not configured - using in-memory job store")
    return InMemoryJobStore(settings)
