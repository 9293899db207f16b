"""
Pydantic schemas for request/response models.
"""

from viralclips.schemas.requests import CreateJobRequest, JobOptionsInput, MetadataRequest
from viralclips.schemas.responses import (
    CancelJobResponse,
    ClipDescriptorResponse,
    ClipResponse,
    ErrorResponse,
    HealthResponse,
    JobStatusResponse,
    MetadataPreviewResponse,
    ReadinessResponse,
    VideoMetadataResponse,
)

__all__ = [
    "CreateJobRequest",
    "JobOptionsInput",
    "MetadataRequest",
    "CancelJobResponse",
    "ClipDescriptorResponse",
    "ClipResponse",
    "ErrorResponse",
    "HealthResponse",
    "JobStatusResponse",
    "MetadataPreviewResponse",
    "ReadinessResponse",
    "VideoMetadataResponse",
]
