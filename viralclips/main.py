"""
FastAPI application entry point for the viral clips service.

Turns a YouTube URL into short captioned clips:
1. Validates the URL and fetches video metadata (YouTube Data API)
2. Submits the video to the remote FFmpeg processing service
3. Reconciles job status with the processing service on every status read
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from viralclips import __version__
from viralclips.config import get_settings
from viralclips.routers import health, jobs
from viralclips.services.gateway_client import ProcessingGatewayClient
from viralclips.services.job_service import JobService
from viralclips.services.job_store import build_job_store
from viralclips.services.metadata_provider import YouTubeMetadataService
from viralclips.services.reconciler import JobReconciler

# Configure logging
logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Lifespan context manager for startup and shutdown events.
    Wires the store, the external clients and the job service on startup.
    """
    settings = get_settings()
    logger.info(f"Starting {settings.app_name} {__version__}...")

    job_store = build_job_store(settings)
    gateway = ProcessingGatewayClient()
    metadata_service = YouTubeMetadataService()
    reconciler = JobReconciler(job_store, gateway, settings)
    logger.info(f"Processing service: {gateway.base_url}")

    if not settings.youtube_api_key:
        logger.warning("YOUTUBE_API_KEY not configured - job creation will fail")
    if not settings.auth_jwt_secret:
        logger.warning("AUTH_JWT_SECRET not configured - all requests will be rejected")

    # Store in app state for dependency injection
    app.state.job_store = job_store
    app.state.job_service = JobService(job_store, gateway, metadata_service, reconciler)

    logger.info("Ready to accept requests.")

    yield

    logger.info(f"Shutting down {settings.app_name}...")
    engine = getattr(job_store, "engine", None)
    if engine is not None:
        engine.dispose()
    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Viral Clips",
    description="""
Turns a YouTube video into short, captioned viral clips.

## Usage

1. Submit a job: `POST /jobs`
2. Poll status: `GET /jobs/{job_id}/status` (every 2 seconds)
3. Cancel if needed: `POST /jobs/{job_id}/cancel`
4. Browse results: `GET /clips`
    """,
    version=__version__,
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, restrict to specific origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return error details as the top-level body: ``{"error", "message"}``."""
    if isinstance(exc.detail, dict):
        content = exc.detail
    else:
        content = {"error": "http_error", "message": str(exc.detail)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Request validation failures are plain 400s."""
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "The request is invalid.")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "validation_error",
            "message": f"{location}: {message}" if location else message,
        },
    )


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(jobs.router, tags=["Jobs"])


@app.get("/")
async def root():
    """Root endpoint with basic info."""
    settings = get_settings()
    return {
        "service": settings.app_name,
        "version": __version__,
        "status": "running",
        "docs": "/docs",
    }
