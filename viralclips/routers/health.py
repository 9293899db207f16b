"""
Health check endpoints for the clip job service.
"""

from fastapi import APIRouter, Request

from viralclips import __version__
from viralclips.config import get_settings
from viralclips.schemas.responses import HealthResponse, ReadinessResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Basic health check endpoint.

    Returns 200 if the service is running.
    """
    return HealthResponse(status="healthy", version=__version__)


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request):
    """
    Readiness check endpoint.

    Ready once the job service is wired. Missing upstream credentials are
    reported but do not make the service unready: status reads still work.
    """
    settings = get_settings()
    store = getattr(request.app.state, "job_store", None)

    return ReadinessResponse(
        ready=hasattr(request.app.state, "job_service"),
        job_store=type(store).__name__ if store is not None else "not_initialized",
        gateway_configured=bool(settings.ffmpeg_service_url),
        metadata_configured=bool(settings.youtube_api_key),
    )
