"""
Job Reconciler - merges remote processing status into stored jobs.

Reconciliation runs on every status read. There is no background worker:
a job only moves forward when somebody asks about it.

Steps for a non-terminal job:
1. Poll the processing service (only if the job has a remote id).
2. Completed -> materialize clips and complete the job atomically.
   Accepted  -> map the remote status onto our stage vocabulary.
   Failure   -> fail the job with the remote message.
   Gateway errors are logged and tolerated.
3. Apply the deadline policy (queued too long / never started).

Writes only happen when something actually changed, so polling a job whose
remote status is unchanged never touches the store.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional, Sequence, Union

from viralclips.config import Settings, get_settings
from viralclips.errors import GATEWAY_ERRORS, ProcessingTimeoutError
from viralclips.services.gateway_client import (
    Accepted,
    Completed,
    GatewayArtifacts,
    ProcessingGatewayClient,
    SegmentArtifact,
)
from viralclips.services.job_store import (
    PIPELINE_ORDER,
    Clip,
    ClipStatus,
    Job,
    JobOptions,
    JobStatus,
    JobStore,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)


STAGE_LABELS = {
    JobStatus.QUEUED: "Queued",
    JobStatus.DOWNLOADING: "Downloading video",
    JobStatus.TRANSCRIBING: "Generating transcript",
    JobStatus.DETECTING_HIGHLIGHTS: "Detecting viral moments",
    JobStatus.CREATING_CLIPS: "Generating video clips",
    JobStatus.UPLOADING: "Uploading clips",
    JobStatus.COMPLETED: "Completed",
    JobStatus.FAILED: "Failed",
    JobStatus.CANCELLED: "Cancelled by user",
}

QUEUED_TIMEOUT_MESSAGE = "Job queued too long — try again or use a different video."
START_TIMEOUT_MESSAGE = "Job is taking longer than expected to start."
NO_CLIPS_MESSAGE = "processing finished without producing any clips"
REMOTE_FAILURE_MESSAGE = "Video processing failed. Please try again."

# Substrings of remote stage names, checked in order
_STAGE_KEYWORDS = (
    ("download", JobStatus.DOWNLOADING),
    ("fetch", JobStatus.DOWNLOADING),
    ("transcri", JobStatus.TRANSCRIBING),
    ("highlight", JobStatus.DETECTING_HIGHLIGHTS),
    ("detect", JobStatus.DETECTING_HIGHLIGHTS),
    ("analy", JobStatus.DETECTING_HIGHLIGHTS),
    ("render", JobStatus.CREATING_CLIPS),
    ("clip", JobStatus.CREATING_CLIPS),
    ("cut", JobStatus.CREATING_CLIPS),
    ("convert", JobStatus.CREATING_CLIPS),
    ("upload", JobStatus.UPLOADING),
    ("finaliz", JobStatus.UPLOADING),
)

_WAITING_TOKENS = frozenset({"queued", "pending", "waiting", "accepted"})


def stage_from_name(name: Optional[str]) -> Optional[JobStatus]:
    """Map a remote stage name (``"transcription"``, ``"rendering"``...) to a status."""
    if not name:
        return None
    lowered = name.lower()
    for keyword, status in _STAGE_KEYWORDS:
        if keyword in lowered:
            return status
    return None


def stage_from_progress(progress: int, thresholds: Sequence[int]) -> JobStatus:
    """Bucket a remote percentage into a pipeline status."""
    buckets = PIPELINE_ORDER[1:]
    for threshold, status in zip(thresholds, buckets):
        if progress < threshold:
            return status
    return buckets[min(len(thresholds), len(buckets) - 1)]


def map_remote_status(accepted: Accepted, thresholds: Sequence[int]) -> JobStatus:
    """
    Pick the pipeline status a non-failed remote status corresponds to.

    An explicit remote stage name wins over percentage bucketing.
    """
    named = stage_from_name(accepted.stage) or stage_from_name(accepted.remote_status)
    if named is not None:
        return named
    if accepted.remote_status in _WAITING_TOKENS and not accepted.progress:
        return JobStatus.QUEUED
    if accepted.progress is None:
        return JobStatus.DOWNLOADING
    return stage_from_progress(accepted.progress, thresholds)


def _pipeline_index(status: JobStatus) -> int:
    return PIPELINE_ORDER.index(status)


def _engagement(score: Optional[float]) -> Optional[float]:
    if score is None:
        return None
    if score > 1:
        score = score / 100.0
    return round(max(0.0, min(1.0, score)), 3)


def fit_span(
    start: Optional[float],
    end: Optional[float],
    options: JobOptions,
    source_duration: Optional[float],
) -> tuple[float, float]:
    """
    Fit a clip span into ``[min_duration, max_duration]`` and the source bounds.

    A source shorter than ``min_duration`` yields the whole source.
    """
    start = max(0.0, start or 0.0)
    if source_duration:
        start = min(start, float(source_duration))
    if end is None or end <= start:
        end = start + options.max_duration

    duration = min(max(end - start, float(options.min_duration)), float(options.max_duration))
    end = start + duration
    if source_duration and end > source_duration:
        end = float(source_duration)
        start = max(0.0, end - duration)
    return round(start, 3), round(end, 3)


def materialize_clips(job: Job, artifacts: GatewayArtifacts) -> list[Clip]:
    """
    Turn the artifacts of a finished remote job into Clip records.

    - one clip per rendered segment when the service reports segments
    - otherwise one clip for the converted video, screenshots as thumbnails
    - otherwise one clip per screenshot (no playable video)

    At most ``options.max_clips`` clips are produced.
    """
    options = job.options
    source_duration = job.metadata.duration_seconds if job.metadata else None
    base_title = job.metadata.title if job.metadata and job.metadata.title else "Clip"
    screenshot_urls = tuple(shot.url for shot in artifacts.screenshots)

    segments: list[SegmentArtifact]
    if artifacts.segments:
        segments = list(artifacts.segments)
    elif artifacts.video_url:
        segments = [
            SegmentArtifact(
                video_url=artifacts.video_url,
                thumbnail_urls=screenshot_urls,
                size_bytes=artifacts.video_size,
            )
        ]
    else:
        segments = [
            SegmentArtifact(video_url=None, start_time=shot.timestamp, thumbnail_urls=(shot.url,))
            for shot in artifacts.screenshots
        ]

    clips = []
    for index, segment in enumerate(segments[: max(options.max_clips, 1)], start=1):
        start, end = fit_span(segment.start_time, segment.end_time, options, source_duration)
        clips.append(
            Clip(
                id=new_id(),
                job_id=job.id,
                owner_id=job.owner_id,
                title=segment.title or f"{base_title} #{index}",
                start_time=start,
                end_time=end,
                video_url=segment.video_url,
                predicted_engagement=_engagement(segment.score),
                thumbnail_urls=list(segment.thumbnail_urls),
                subtitle_urls=list(segment.subtitle_urls),
                file_size_bytes=segment.size_bytes,
                status=ClipStatus.READY,
            )
        )
    return clips


class JobReconciler:
    """
    Computes and persists the next state of a job.

    A per-job asyncio lock serializes reconciliation passes for the same job
    within this process. Across processes the store's conditional update keeps
    a stale pass from overwriting a terminal status.
    """

    def __init__(
        self,
        store: JobStore,
        gateway: ProcessingGatewayClient,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()
        self._lock_users[job_id] = self._lock_users.get(job_id, 0) + 1
        return lock

    def _release_lock(self, job_id: str) -> None:
        # The entry goes away once no pass holds or waits on it
        users = self._lock_users.get(job_id, 1) - 1
        if users > 0:
            self._lock_users[job_id] = users
        else:
            self._lock_users.pop(job_id, None)
            self._locks.pop(job_id, None)

    async def reconcile(self, job: Job) -> Job:
        """
        Bring ``job`` up to date with the processing service.

        Args:
            job: Job as read from the store

        Returns:
            The job as stored after this pass
        """
        if job.is_terminal:
            return job

        job_id = job.id
        lock = self._lock_for(job_id)
        try:
            async with lock:
                # Another pass may have finished while we waited for the lock
                job = await self.store.get_job(job_id, job.owner_id)
                if job.is_terminal:
                    return job

                if job.remote_job_id:
                    try:
                        result = await self.gateway.poll_status(job.remote_job_id)
                    except GATEWAY_ERRORS as e:
                        logger.warning(
                            f"Status poll for job {job.id} failed ({e.code}); keeping stored state"
                        )
                    else:
                        job = await self.apply_result(job, result)

                if not job.is_terminal:
                    job = await self._enforce_deadlines(job)
        finally:
            self._release_lock(job_id)
        return job

    async def apply_result(self, job: Job, result: Union[Completed, Accepted]) -> Job:
        """Persist a normalized gateway result (from submit or poll) onto ``job``."""
        if isinstance(result, Completed):
            return await self.complete(job, result.artifacts)

        if result.is_failure:
            logger.warning(
                f"Remote job {result.remote_job_id} reported {result.remote_status}: {result.message}"
            )
            return await self.fail(job, result.message or REMOTE_FAILURE_MESSAGE)

        changes = self._progress_changes(job, result)
        if not changes:
            return job

        logger.info(
            f"Job {job.id}: {job.status.value} ({job.progress}%) -> "
            f"{changes.get('status', job.status).value} ({changes.get('progress', job.progress)}%)"
        )
        return await self.store.update_job(job.id, changes)

    def _progress_changes(self, job: Job, result: Accepted) -> dict[str, Any]:
        mapped = map_remote_status(result, self.settings.stage_progress_thresholds)
        # Stage order never regresses
        if _pipeline_index(mapped) < _pipeline_index(job.status):
            mapped = job.status

        progress = result.progress if result.progress is not None else job.progress
        if mapped == job.status:
            progress = max(job.progress, progress)

        changes: dict[str, Any] = {}
        if job.remote_job_id is None:
            changes["remote_job_id"] = result.remote_job_id
        if mapped != job.status:
            changes["status"] = mapped
        if STAGE_LABELS[mapped] != job.stage:
            changes["stage"] = STAGE_LABELS[mapped]
        if progress != job.progress:
            changes["progress"] = progress
        return changes

    async def complete(self, job: Job, artifacts: GatewayArtifacts) -> Job:
        """Materialize clips and complete the job in one atomic store write."""
        clips = materialize_clips(job, artifacts)
        if not clips:
            logger.error(f"Job {job.id}: remote job finished without usable artifacts")
            return await self.fail(job, NO_CLIPS_MESSAGE)

        stored = await self.store.complete_job(
            job.id,
            clips,
            {
                "status": JobStatus.COMPLETED,
                "stage": STAGE_LABELS[JobStatus.COMPLETED],
                "progress": 100,
                "clips": [clip.to_descriptor() for clip in clips],
                "error_message": None,
            },
        )
        if stored.status == JobStatus.COMPLETED:
            logger.info(f"Job {job.id} completed with {len(clips)} clip(s)")
        return stored

    async def fail(self, job: Job, message: str) -> Job:
        stored = await self.store.update_job(
            job.id,
            {
                "status": JobStatus.FAILED,
                "stage": STAGE_LABELS[JobStatus.FAILED],
                "error_message": message,
            },
        )
        if stored.status == JobStatus.FAILED:
            logger.warning(f"Job {job.id} failed: {message}")
        return stored

    async def _enforce_deadlines(self, job: Job) -> Job:
        age = (self.clock() - job.created_at).total_seconds()

        if job.status == JobStatus.QUEUED and age > self.settings.queued_timeout_seconds:
            error = ProcessingTimeoutError(QUEUED_TIMEOUT_MESSAGE)
        elif (
            job.status != JobStatus.QUEUED
            and job.progress == 0
            and age > self.settings.start_timeout_seconds
        ):
            error = ProcessingTimeoutError(START_TIMEOUT_MESSAGE)
        else:
            return job

        logger.warning(f"Job {job.id} hit {error.code} after {int(age)}s in {job.status.value}")
        return await self.fail(job, error.message)

    async def cancel(self, job: Job) -> Job:
        """
        Cancel a job.

        Always succeeds locally for a job the caller owns. Terminal jobs are
        returned untouched. The remote cancel is best-effort and its outcome
        never changes the result.
        """
        if job.is_terminal:
            logger.info(f"Cancel for job {job.id} ignored: already {job.status.value}")
            return job

        stored = await self.store.update_job(
            job.id,
            {
                "status": JobStatus.CANCELLED,
                "stage": STAGE_LABELS[JobStatus.CANCELLED],
                "progress": 0,
            },
        )
        if stored.status != JobStatus.CANCELLED:
            # Finished concurrently; the stored terminal state stands
            return stored

        logger.info(f"Job {job.id} cancelled by owner")
        if stored.remote_job_id:
            try:
                await self.gateway.cancel(stored.remote_job_id)
            except Exception as e:
                logger.warning(f"Remote cancel for job {job.id} raised: {e}")
        return stored
