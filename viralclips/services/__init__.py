"""
Services for the clip job service.

Includes:
- External clients (processing gateway, YouTube metadata)
- Job persistence (in-memory and SQL stores)
- Job reconciliation and the API-facing job service
"""

from viralclips.services.gateway_client import ProcessingGatewayClient
from viralclips.services.job_service import CreateJobOutcome, JobService
from viralclips.services.job_store import InMemoryJobStore, JobStore, build_job_store
from viralclips.services.metadata_provider import YouTubeMetadataService
from viralclips.services.reconciler import JobReconciler

__all__ = [
    # External clients
    "ProcessingGatewayClient",
    "YouTubeMetadataService",
    # Persistence
    "JobStore",
    "InMemoryJobStore",
    "build_job_store",
    # Orchestration
    "JobReconciler",
    "JobService",
    "CreateJobOutcome",
]
