"""
Response schemas for the clip job API.

These are the JSON shapes the web frontend consumes (camelCase).
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import Field

from viralclips.schemas.requests import CamelModel
from viralclips.services.job_store import Clip, Job
from viralclips.services.metadata_provider import VideoMetadata


class VideoMetadataResponse(CamelModel):
    """Source video metadata."""

    video_id: str
    title: str
    description: str = ""
    duration_seconds: int = Field(..., description="Video duration in seconds")
    thumbnails: dict[str, Any] = Field(default_factory=dict)
    statistics: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_metadata(cls, metadata: VideoMetadata) -> "VideoMetadataResponse":
        return cls(**metadata.to_dict())


class ClipDescriptorResponse(CamelModel):
    """Clip summary embedded in a job status."""

    id: str
    title: str
    video_url: Optional[str] = None
    thumbnail_urls: list[str] = Field(default_factory=list)
    subtitle_urls: list[str] = Field(default_factory=list)
    start_time: float
    end_time: float
    duration_seconds: float
    predicted_engagement: Optional[float] = Field(None, ge=0.0, le=1.0)
    status: str


class JobStatusResponse(CamelModel):
    """Job projection returned by create, status and list."""

    job_id: str
    status: str = Field(..., description="queued, downloading, ..., completed, failed, cancelled")
    stage: str = Field(..., description="Human-readable stage label")
    progress: int = Field(..., ge=0, le=100)
    source_url: str
    clips: list[ClipDescriptorResponse] = Field(default_factory=list)
    metadata: Optional[VideoMetadataResponse] = None
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    expires_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusResponse":
        return cls(
            job_id=job.id,
            status=job.status.value,
            stage=job.stage,
            progress=job.progress,
            source_url=job.source_url,
            clips=[ClipDescriptorResponse(**clip) for clip in job.clips],
            metadata=VideoMetadataResponse.from_metadata(job.metadata) if job.metadata else None,
            error=job.error_message,
            created_at=job.created_at,
            updated_at=job.updated_at,
            expires_at=job.expires_at,
        )


class CancelJobResponse(CamelModel):
    job_id: str
    status: str


class ClipResponse(CamelModel):
    """A stored clip."""

    id: str
    job_id: str
    title: str
    start_time: float
    end_time: float
    duration_seconds: float
    video_url: Optional[str] = None
    predicted_engagement: Optional[float] = None
    thumbnail_urls: list[str] = Field(default_factory=list)
    subtitle_urls: list[str] = Field(default_factory=list)
    file_size_bytes: Optional[int] = None
    status: str
    created_at: datetime
    expires_at: Optional[datetime] = None

    @classmethod
    def from_clip(cls, clip: Clip) -> "ClipResponse":
        return cls(
            id=clip.id,
            job_id=clip.job_id,
            title=clip.title,
            start_time=clip.start_time,
            end_time=clip.end_time,
            duration_seconds=clip.duration_seconds,
            video_url=clip.video_url,
            predicted_engagement=clip.predicted_engagement,
            thumbnail_urls=clip.thumbnail_urls,
            subtitle_urls=clip.subtitle_urls,
            file_size_bytes=clip.file_size_bytes,
            status=clip.status.value,
            created_at=clip.created_at,
            expires_at=clip.expires_at,
        )


class MetadataPreviewResponse(CamelModel):
    metadata: VideoMetadataResponse


class ErrorResponse(CamelModel):
    """Error body. ``jobId`` is present when a job was stored before the failure."""

    error: str
    message: str
    job_id: Optional[str] = None


class HealthResponse(CamelModel):
    """Health check response."""

    status: str = Field(..., description="Service status")
    version: str = Field(..., description="Service version")


class ReadinessResponse(CamelModel):
    """Readiness check response."""

    ready: bool = Field(..., description="Whether the service is ready to accept requests")
    job_store: str = Field(..., description="Job store backend")
    gateway_configured: bool = Field(..., description="Whether a processing service URL is set")
    metadata_configured: bool = Field(..., description="Whether a YouTube API key is set")
