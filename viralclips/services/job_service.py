"""
Job Service - the operations behind the job orchestration API.

Every operation takes the authenticated owner id and only ever sees that
owner's jobs.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from viralclips.errors import GATEWAY_ERRORS, ClipJobError, JobValidationError
from viralclips.services.gateway_client import ProcessingGatewayClient
from viralclips.services.job_store import (
    Clip,
    Job,
    JobOptions,
    JobStatus,
    JobStore,
    new_id,
)
from viralclips.services.metadata_provider import (
    VideoMetadata,
    YouTubeMetadataService,
    extract_video_id,
)
from viralclips.services.reconciler import STAGE_LABELS, JobReconciler

logger = logging.getLogger(__name__)


@dataclass
class CreateJobOutcome:
    """Result of a create call. ``error`` is set when the gateway submit failed."""

    job: Job
    error: Optional[ClipJobError] = None


class JobService:
    def __init__(
        self,
        store: JobStore,
        gateway: ProcessingGatewayClient,
        metadata_service: YouTubeMetadataService,
        reconciler: Optional[JobReconciler] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.metadata_service = metadata_service
        self.reconciler = reconciler or JobReconciler(store, gateway)

    async def preview_metadata(self, source_url: str) -> VideoMetadata:
        """Validate a URL and fetch its metadata without creating a job."""
        return await self.metadata_service.lookup(source_url)

    async def create_job(
        self,
        owner_id: str,
        source_url: str,
        options: Optional[JobOptions] = None,
    ) -> CreateJobOutcome:
        """
        Create a job and submit it to the processing service.

        Args:
            owner_id: Authenticated caller
            source_url: YouTube URL to process
            options: Processing options (defaults if omitted)

        Returns:
            CreateJobOutcome with the stored job. On gateway failure the job
            is stored as failed and the gateway error is attached.

        Raises:
            InvalidSourceUrlError: URL is not a YouTube video URL
            JobValidationError: Inconsistent options
            SourceNotFoundError: Video is missing, private or deleted
            UpstreamCredentialsError / UpstreamUnavailableError: Metadata lookup failed
        """
        options = options or JobOptions()
        video_id = extract_video_id(source_url)
        if options.min_duration > options.max_duration:
            raise JobValidationError("Minimum duration cannot exceed maximum duration.")

        metadata = await self.metadata_service.fetch_metadata(video_id)

        job = await self.store.create_job(
            Job(
                id=new_id(),
                owner_id=owner_id,
                source_url=source_url.strip(),
                video_id=video_id,
                options=options,
                metadata=metadata,
            )
        )
        logger.info(f"Job {job.id} queued for video {video_id} ({metadata.title})")

        try:
            result = await self.gateway.submit(job.source_url, options.to_gateway_options())
        except GATEWAY_ERRORS as e:
            logger.error(f"Gateway submit failed for job {job.id}: {e.code}")
            return CreateJobOutcome(job=await self._record_failure(job, e.message), error=e)

        try:
            job = await self.reconciler.apply_result(job, result)
        except Exception as e:
            # The remote job exists; the next status read can still catch up
            logger.exception(f"Failed to record submit result for job {job.id}: {e}")
        return CreateJobOutcome(job=job)

    async def _record_failure(self, job: Job, message: str) -> Job:
        try:
            return await self.reconciler.fail(job, message)
        except Exception as e:
            logger.exception(f"Failed to persist failure for job {job.id}: {e}")
            job.status = JobStatus.FAILED
            job.stage = STAGE_LABELS[JobStatus.FAILED]
            job.error_message = message
            return job

    async def get_job_status(self, owner_id: str, job_id: str) -> Job:
        """Read a job and reconcile it with the processing service."""
        job = await self.store.get_job(job_id, owner_id)
        return await self.reconciler.reconcile(job)

    async def cancel_job(self, owner_id: str, job_id: str) -> Job:
        """Cancel a job. Succeeds for any job the caller owns."""
        job = await self.store.get_job(job_id, owner_id)
        return await self.reconciler.cancel(job)

    async def list_jobs(
        self,
        owner_id: str,
        status: Optional[JobStatus] = None,
        limit: Optional[int] = None,
    ) -> list[Job]:
        return await self.store.list_jobs(owner_id, status=status, limit=limit)

    async def list_clips(self, owner_id: str, job_id: Optional[str] = None) -> list[Clip]:
        if job_id is not None:
            # Foreign job ids are reported as not found, not as an empty list
            await self.store.get_job(job_id, owner_id)
        return await self.store.list_clips(owner_id, job_id=job_id)
