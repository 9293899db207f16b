"""
Jobs API Router - create, inspect and cancel clip jobs.

Every endpoint requires a bearer token and only exposes the caller's jobs.
A job owned by someone else answers 404, exactly like a missing one.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from viralclips.auth import get_current_user
from viralclips.errors import ClipJobError, JobValidationError
from viralclips.schemas.requests import CreateJobRequest, MetadataRequest
from viralclips.schemas.responses import (
    CancelJobResponse,
    ClipResponse,
    ErrorResponse,
    JobStatusResponse,
    MetadataPreviewResponse,
    VideoMetadataResponse,
)
from viralclips.services.job_service import JobService
from viralclips.services.job_store import JobStatus

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Jobs"])

_ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


# ============================================================================
# Dependencies
# ============================================================================


async def get_job_service(request: Request) -> JobService:
    """Get the job service from app state (initialized at startup)."""
    if not hasattr(request.app.state, "job_service"):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "not_ready", "message": "Service is starting up. Please retry."},
        )
    return request.app.state.job_service


def _http_error(error: ClipJobError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.to_dict())


# ============================================================================
# Endpoints
# ============================================================================


@router.post(
    "/jobs",
    response_model=JobStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={**_ERROR_RESPONSES, 500: {"model": ErrorResponse}},
)
async def create_job(
    body: CreateJobRequest,
    response: Response,
    owner_id: str = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> JobStatusResponse:
    """
    Submit a YouTube video for clipping.

    Returns 202 with the queued job, or 200 when the processing service
    finished synchronously. If the processing service cannot be reached the
    job is stored as failed and the response is a 500 carrying its ``jobId``.
    """
    try:
        outcome = await service.create_job(owner_id, body.source_url, body.options.to_options())
    except ClipJobError as e:
        logger.info(f"Job creation rejected for {owner_id}: {e.code}")
        raise _http_error(e)

    if outcome.error is not None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={**outcome.error.to_dict(), "jobId": outcome.job.id},
        )

    if outcome.job.status == JobStatus.COMPLETED:
        response.status_code = status.HTTP_200_OK
    return JobStatusResponse.from_job(outcome.job)


@router.get("/jobs", response_model=list[JobStatusResponse], responses=_ERROR_RESPONSES)
async def list_jobs(
    status_filter: Optional[JobStatus] = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    owner_id: str = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> list[JobStatusResponse]:
    """List the caller's jobs, newest first. Does not reconcile."""
    jobs = await service.list_jobs(owner_id, status=status_filter, limit=limit)
    return [JobStatusResponse.from_job(job) for job in jobs]


@router.get("/jobs/{job_id}/status", response_model=JobStatusResponse, responses=_ERROR_RESPONSES)
async def get_job_status(
    job_id: str,
    owner_id: str = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> JobStatusResponse:
    """
    Get the current status of a job.

    Reading the status reconciles the job with the processing service first.
    """
    try:
        job = await service.get_job_status(owner_id, job_id)
    except ClipJobError as e:
        raise _http_error(e)
    return JobStatusResponse.from_job(job)


@router.post("/jobs/{job_id}/cancel", response_model=CancelJobResponse, responses=_ERROR_RESPONSES)
async def cancel_job(
    job_id: str,
    owner_id: str = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> CancelJobResponse:
    """
    Cancel a job.

    Idempotent. Cancelling a job that already finished is a no-op and reports
    the job's final status.
    """
    try:
        job = await service.cancel_job(owner_id, job_id)
    except ClipJobError as e:
        raise _http_error(e)
    return CancelJobResponse(job_id=job.id, status=job.status.value)


@router.get("/clips", response_model=list[ClipResponse], responses=_ERROR_RESPONSES)
async def list_clips(
    job_id: Optional[str] = Query(None, alias="jobId"),
    owner_id: str = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> list[ClipResponse]:
    """List the caller's clips, optionally for one job."""
    try:
        clips = await service.list_clips(owner_id, job_id=job_id)
    except ClipJobError as e:
        raise _http_error(e)
    return [ClipResponse.from_clip(clip) for clip in clips]


@router.post("/metadata", response_model=MetadataPreviewResponse, responses=_ERROR_RESPONSES)
async def preview_metadata(
    body: MetadataRequest,
    owner_id: str = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> MetadataPreviewResponse:
    """Validate a YouTube URL and return its metadata without creating a job."""
    if not body.target_url:
        raise _http_error(JobValidationError("A video URL is required."))
    try:
        metadata = await service.preview_metadata(body.target_url)
    except ClipJobError as e:
        raise _http_error(e)
    return MetadataPreviewResponse(metadata=VideoMetadataResponse.from_metadata(metadata))
