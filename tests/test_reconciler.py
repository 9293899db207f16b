"""
Tests for job reconciliation, deadlines, clip materialization and cancellation.
"""

import asyncio
from datetime import timedelta

import pytest

from viralclips.errors import GatewayUnavailableError, ProtocolMismatchError
from viralclips.services.gateway_client import (
    Accepted,
    Completed,
    GatewayArtifacts,
    Screenshot,
    SegmentArtifact,
)
from viralclips.services.job_store import Job, JobOptions, JobStatus, new_id
from viralclips.services.metadata_provider import VideoMetadata
from viralclips.services.reconciler import (
    NO_CLIPS_MESSAGE,
    QUEUED_TIMEOUT_MESSAGE,
    REMOTE_FAILURE_MESSAGE,
    START_TIMEOUT_MESSAGE,
    JobReconciler,
    fit_span,
    materialize_clips,
    stage_from_progress,
)

REMOTE_ID = "remote-1"


class FakeGateway:
    """Scripted gateway. The last scripted result repeats."""

    def __init__(self, *results):
        self.results = list(results)
        self.polls = []
        self.cancels = []
        self.cancel_error = None

    async def poll_status(self, remote_job_id):
        self.polls.append(remote_job_id)
        await asyncio.sleep(0)
        item = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def cancel(self, remote_job_id):
        self.cancels.append(remote_job_id)
        if self.cancel_error is not None:
            raise self.cancel_error
        return True


def accepted(status="processing", progress=None, stage=None, message=None):
    return Accepted(
        remote_job_id=REMOTE_ID, remote_status=status, progress=progress, stage=stage, message=message
    )


def completed(video_url="http://gateway.test/clip1.mp4", **kwargs):
    return Completed(artifacts=GatewayArtifacts(video_url=video_url, **kwargs))


async def create_job(store, remote_job_id=REMOTE_ID, **kwargs):
    defaults = dict(
        id=new_id(),
        owner_id="alice",
        source_url="https://youtu.be/abc123",
        video_id="abc123",
        remote_job_id=remote_job_id,
        options=JobOptions(max_clips=3, min_duration=15, max_duration=45),
        metadata=VideoMetadata(video_id="abc123", title="Test video", duration_seconds=300),
    )
    defaults.update(kwargs)
    return await store.create_job(Job(**defaults))


def reconciler_for(store, gateway, settings, age=timedelta(seconds=5), job=None):
    """Reconciler whose clock reads ``age`` after ``job`` was created."""
    return JobReconciler(store, gateway, settings, clock=lambda: job.created_at + age)


class TestStageMapping:
    """Tests for progress bucketing."""

    @pytest.mark.parametrize(
        "progress,expected",
        [
            (0, JobStatus.DOWNLOADING),
            (24, JobStatus.DOWNLOADING),
            (25, JobStatus.TRANSCRIBING),
            (60, JobStatus.DETECTING_HIGHLIGHTS),
            (80, JobStatus.CREATING_CLIPS),
            (85, JobStatus.UPLOADING),
            (100, JobStatus.UPLOADING),
        ],
    )
    def test_default_thresholds(self, progress, expected):
        assert stage_from_progress(progress, [25, 50, 75, 85]) == expected

    def test_custom_thresholds(self):
        assert stage_from_progress(15, [10, 20, 30, 40]) == JobStatus.TRANSCRIBING
        assert stage_from_progress(45, [10, 20, 30, 40]) == JobStatus.UPLOADING


class TestReconcile:
    """Tests for status reconciliation."""

    @pytest.mark.asyncio
    async def test_terminal_job_is_not_polled(self, job_store, settings):
        job = await create_job(job_store, status=JobStatus.COMPLETED, progress=100)
        gateway = FakeGateway(accepted())

        result = await reconciler_for(job_store, gateway, settings, job=job).reconcile(job)

        assert result.status == JobStatus.COMPLETED
        assert gateway.polls == []

    @pytest.mark.asyncio
    async def test_job_without_remote_id_is_not_polled(self, job_store, settings):
        job = await create_job(job_store, remote_job_id=None)
        gateway = FakeGateway(accepted())

        result = await reconciler_for(job_store, gateway, settings, job=job).reconcile(job)

        assert result.status == JobStatus.QUEUED
        assert gateway.polls == []

    @pytest.mark.asyncio
    async def test_job_without_remote_id_still_times_out(self, job_store, settings):
        job = await create_job(job_store, remote_job_id=None)
        reconciler = reconciler_for(
            job_store, FakeGateway(accepted()), settings, age=timedelta(minutes=4), job=job
        )

        result = await reconciler.reconcile(job)

        assert result.status == JobStatus.FAILED
        assert result.error_message == QUEUED_TIMEOUT_MESSAGE

    @pytest.mark.asyncio
    async def test_progress_maps_to_stage(self, job_store, settings):
        job = await create_job(job_store)
        gateway = FakeGateway(accepted(progress=60))

        result = await reconciler_for(job_store, gateway, settings, job=job).reconcile(job)

        assert result.status == JobStatus.DETECTING_HIGHLIGHTS
        assert result.stage == "Detecting viral moments"
        assert result.progress == 60
        assert gateway.polls == [REMOTE_ID]

    @pytest.mark.asyncio
    async def test_explicit_stage_wins_over_progress(self, job_store, settings):
        job = await create_job(job_store)
        gateway = FakeGateway(accepted(progress=90, stage="transcription"))

        result = await reconciler_for(job_store, gateway, settings, job=job).reconcile(job)

        assert result.status == JobStatus.TRANSCRIBING
        assert result.stage == "Generating transcript"

    @pytest.mark.asyncio
    async def test_processing_without_progress_is_downloading(self, job_store, settings):
        job = await create_job(job_store)
        gateway = FakeGateway(accepted(status="processing"))

        result = await reconciler_for(job_store, gateway, settings, job=job).reconcile(job)

        assert result.status == JobStatus.DOWNLOADING
        assert result.progress == 0

    @pytest.mark.asyncio
    async def test_stage_never_regresses(self, job_store, settings, mocker):
        job = await create_job(
            job_store, status=JobStatus.CREATING_CLIPS, stage="Generating video clips", progress=80
        )
        gateway = FakeGateway(accepted(progress=10, stage="downloading"))
        update_spy = mocker.spy(job_store, "update_job")

        result = await reconciler_for(job_store, gateway, settings, job=job).reconcile(job)

        assert result.status == JobStatus.CREATING_CLIPS
        assert result.progress == 80
        update_spy.assert_not_called()

    @pytest.mark.asyncio
    async def test_reconcile_is_idempotent(self, job_store, settings, mocker):
        """Repeating a reconciliation with the same remote status writes nothing."""
        job = await create_job(job_store)
        reconciler = reconciler_for(job_store, FakeGateway(accepted(progress=30)), settings, job=job)
        update_spy = mocker.spy(job_store, "update_job")

        first = await reconciler.reconcile(job)
        second = await reconciler.reconcile(first)

        assert update_spy.call_count == 1
        assert (second.status, second.stage, second.progress) == (
            first.status,
            first.stage,
            first.progress,
        )

    @pytest.mark.asyncio
    async def test_progress_is_monotonic_within_a_status(self, job_store, settings):
        job = await create_job(job_store, status=JobStatus.DOWNLOADING, stage="Downloading video", progress=20)
        gateway = FakeGateway(accepted(progress=5))

        result = await reconciler_for(job_store, gateway, settings, job=job).reconcile(job)

        assert result.status == JobStatus.DOWNLOADING
        assert result.progress == 20

    @pytest.mark.asyncio
    async def test_completed_materializes_clips(self, job_store, settings):
        job = await create_job(job_store, status=JobStatus.UPLOADING, progress=90)
        gateway = FakeGateway(
            completed(screenshots=(Screenshot(url="http://gateway.test/s1.jpg"),), video_size=2048)
        )

        result = await reconciler_for(job_store, gateway, settings, job=job).reconcile(job)

        assert result.status == JobStatus.COMPLETED
        assert result.stage == "Completed"
        assert result.progress == 100
        assert result.error_message is None
        assert len(result.clips) == 1
        descriptor = result.clips[0]
        assert descriptor["video_url"] == "http://gateway.test/clip1.mp4"
        assert descriptor["thumbnail_urls"] == ["http://gateway.test/s1.jpg"]
        assert (descriptor["start_time"], descriptor["end_time"]) == (0.0, 45.0)

        clips = await job_store.list_clips("alice", job_id=job.id)
        assert len(clips) == 1
        assert clips[0].file_size_bytes == 2048
        assert clips[0].id == descriptor["id"]

    @pytest.mark.asyncio
    async def test_completed_without_artifacts_fails(self, job_store, settings):
        job = await create_job(job_store)
        gateway = FakeGateway(Completed(artifacts=GatewayArtifacts()))

        result = await reconciler_for(job_store, gateway, settings, job=job).reconcile(job)

        assert result.status == JobStatus.FAILED
        assert result.error_message == NO_CLIPS_MESSAGE
        assert result.clips == []
        assert await job_store.list_clips("alice") == []

    @pytest.mark.asyncio
    async def test_remote_failure(self, job_store, settings):
        job = await create_job(job_store)
        gateway = FakeGateway(accepted(status="failed", message="Video is age restricted"))

        result = await reconciler_for(job_store, gateway, settings, job=job).reconcile(job)

        assert result.status == JobStatus.FAILED
        assert result.error_message == "Video is age restricted"
        assert result.clips == []

    @pytest.mark.asyncio
    async def test_remote_failure_without_message(self, job_store, settings):
        job = await create_job(job_store)
        gateway = FakeGateway(accepted(status="error"))

        result = await reconciler_for(job_store, gateway, settings, job=job).reconcile(job)

        assert result.error_message == REMOTE_FAILURE_MESSAGE

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error", [GatewayUnavailableError(), ProtocolMismatchError(status_code=200, body={})]
    )
    async def test_gateway_errors_are_tolerated(self, job_store, settings, error):
        job = await create_job(job_store, status=JobStatus.DOWNLOADING, progress=10)
        gateway = FakeGateway(error)

        result = await reconciler_for(job_store, gateway, settings, job=job).reconcile(job)

        assert result.status == JobStatus.DOWNLOADING
        assert result.progress == 10

    @pytest.mark.asyncio
    async def test_queued_too_long(self, job_store, settings):
        job = await create_job(job_store)
        reconciler = reconciler_for(
            job_store, FakeGateway(accepted(status="queued")), settings, age=timedelta(minutes=3, seconds=1), job=job
        )

        result = await reconciler.reconcile(job)

        assert result.status == JobStatus.FAILED
        assert result.error_message == QUEUED_TIMEOUT_MESSAGE

    @pytest.mark.asyncio
    async def test_queued_within_deadline(self, job_store, settings):
        job = await create_job(job_store)
        reconciler = reconciler_for(
            job_store, FakeGateway(accepted(status="queued")), settings, age=timedelta(minutes=2), job=job
        )

        result = await reconciler.reconcile(job)

        assert result.status == JobStatus.QUEUED

    @pytest.mark.asyncio
    async def test_queued_timeout_tolerates_gateway_outage(self, job_store, settings):
        job = await create_job(job_store)
        reconciler = reconciler_for(
            job_store, FakeGateway(GatewayUnavailableError()), settings, age=timedelta(minutes=5), job=job
        )

        result = await reconciler.reconcile(job)

        assert result.status == JobStatus.FAILED
        assert result.error_message == QUEUED_TIMEOUT_MESSAGE

    @pytest.mark.asyncio
    async def test_never_started(self, job_store, settings):
        job = await create_job(job_store, status=JobStatus.DOWNLOADING, stage="Downloading video")
        reconciler = reconciler_for(
            job_store, FakeGateway(accepted(status="processing")), settings, age=timedelta(minutes=11), job=job
        )

        result = await reconciler.reconcile(job)

        assert result.status == JobStatus.FAILED
        assert result.error_message == START_TIMEOUT_MESSAGE

    @pytest.mark.asyncio
    async def test_slow_job_with_progress_is_not_timed_out(self, job_store, settings):
        job = await create_job(job_store, status=JobStatus.DOWNLOADING, progress=15)
        reconciler = reconciler_for(
            job_store, FakeGateway(accepted(progress=15)), settings, age=timedelta(minutes=30), job=job
        )

        result = await reconciler.reconcile(job)

        assert result.status == JobStatus.DOWNLOADING

    @pytest.mark.asyncio
    async def test_configured_deadlines(self, job_store, monkeypatch):
        from viralclips.config import get_settings

        monkeypatch.setenv("QUEUED_TIMEOUT_SECONDS", "30")
        get_settings.cache_clear()
        job = await create_job(job_store)
        reconciler = reconciler_for(
            job_store, FakeGateway(accepted(status="queued")), get_settings(), age=timedelta(seconds=31), job=job
        )

        result = await reconciler.reconcile(job)

        assert result.status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_cancel_during_poll_wins(self, job_store, settings):
        """A completion that lands after a cancel never overwrites it."""
        job = await create_job(job_store)

        class CancellingGateway(FakeGateway):
            async def poll_status(self, remote_job_id):
                await job_store.update_job(job.id, {"status": JobStatus.CANCELLED, "progress": 0})
                return await super().poll_status(remote_job_id)

        gateway = CancellingGateway(completed())

        result = await reconciler_for(job_store, gateway, settings, job=job).reconcile(job)

        assert result.status == JobStatus.CANCELLED
        assert result.clips == []
        assert await job_store.list_clips("alice") == []

    @pytest.mark.asyncio
    async def test_concurrent_reconciles_complete_once(self, job_store, settings):
        job = await create_job(job_store)
        gateway = FakeGateway(completed())
        reconciler = reconciler_for(job_store, gateway, settings, job=job)

        first, second = await asyncio.gather(reconciler.reconcile(job), reconciler.reconcile(job))

        assert first.status == second.status == JobStatus.COMPLETED
        assert gateway.polls == [REMOTE_ID]
        assert len(await job_store.list_clips("alice")) == 1
        assert reconciler._locks == {}

    @pytest.mark.asyncio
    async def test_abandoned_job_leaves_no_lock(self, job_store, settings):
        """Jobs nobody polls any more do not keep a lock around."""
        job = await create_job(job_store)
        reconciler = reconciler_for(job_store, FakeGateway(accepted(progress=30)), settings, job=job)

        await asyncio.gather(reconciler.reconcile(job), reconciler.reconcile(job))
        result = await reconciler.reconcile(job)

        assert result.status == JobStatus.TRANSCRIBING
        assert reconciler._locks == {}
        assert reconciler._lock_users == {}


class TestCancel:
    """Tests for cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_running_job(self, job_store, settings):
        job = await create_job(job_store, status=JobStatus.TRANSCRIBING, progress=40)
        gateway = FakeGateway(accepted())

        result = await reconciler_for(job_store, gateway, settings, job=job).cancel(job)

        assert result.status == JobStatus.CANCELLED
        assert result.stage == "Cancelled by user"
        assert result.progress == 0
        assert gateway.cancels == [REMOTE_ID]

    @pytest.mark.asyncio
    async def test_remote_cancel_failure_does_not_matter(self, job_store, settings):
        job = await create_job(job_store)
        gateway = FakeGateway(accepted())
        gateway.cancel_error = RuntimeError("gateway exploded")

        result = await reconciler_for(job_store, gateway, settings, job=job).cancel(job)

        assert result.status == JobStatus.CANCELLED
        assert (await job_store.get_job(job.id, "alice")).status == JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_without_remote_id(self, job_store, settings):
        job = await create_job(job_store, remote_job_id=None)
        gateway = FakeGateway(accepted())

        result = await reconciler_for(job_store, gateway, settings, job=job).cancel(job)

        assert result.status == JobStatus.CANCELLED
        assert gateway.cancels == []

    @pytest.mark.asyncio
    async def test_cancel_completed_job_is_a_noop(self, job_store, settings):
        job = await create_job(job_store, status=JobStatus.COMPLETED, progress=100)
        gateway = FakeGateway(accepted())

        result = await reconciler_for(job_store, gateway, settings, job=job).cancel(job)

        assert result.status == JobStatus.COMPLETED
        assert result.progress == 100
        assert gateway.cancels == []

    @pytest.mark.asyncio
    async def test_cancel_twice(self, job_store, settings):
        job = await create_job(job_store)
        gateway = FakeGateway(accepted())
        reconciler = reconciler_for(job_store, gateway, settings, job=job)

        first = await reconciler.cancel(job)
        second = await reconciler.cancel(first)

        assert first.status == second.status == JobStatus.CANCELLED
        assert gateway.cancels == [REMOTE_ID]

    @pytest.mark.asyncio
    async def test_reconcile_after_cancel_does_not_poll(self, job_store, settings):
        job = await create_job(job_store)
        gateway = FakeGateway(completed())
        reconciler = reconciler_for(job_store, gateway, settings, job=job)

        cancelled = await reconciler.cancel(job)
        result = await reconciler.reconcile(cancelled)

        assert result.status == JobStatus.CANCELLED
        assert gateway.polls == []


class TestMaterializeClips:
    """Tests for turning artifacts into clips."""

    def make_job(self, **options):
        return Job(
            id="job-1",
            owner_id="alice",
            source_url="https://youtu.be/abc123",
            video_id="abc123",
            options=JobOptions(**{"max_clips": 2, "min_duration": 15, "max_duration": 45, **options}),
            metadata=VideoMetadata(video_id="abc123", title="Test video", duration_seconds=300),
        )

    def test_segments_are_fitted_and_limited(self):
        artifacts = GatewayArtifacts(
            segments=(
                SegmentArtifact(video_url="/a.mp4", start_time=10, end_time=12, score=85),
                SegmentArtifact(video_url="/b.mp4", start_time=290, end_time=400, title="Ending"),
                SegmentArtifact(video_url="/c.mp4", start_time=100, end_time=120),
            )
        )

        clips = materialize_clips(self.make_job(), artifacts)

        assert len(clips) == 2
        assert (clips[0].start_time, clips[0].end_time) == (10.0, 25.0)
        assert clips[0].predicted_engagement == 0.85
        assert clips[0].title == "Test video #1"
        assert (clips[1].start_time, clips[1].end_time) == (255.0, 300.0)
        assert clips[1].title == "Ending"

    def test_screenshots_only(self):
        artifacts = GatewayArtifacts(
            screenshots=(Screenshot(url="/s1.jpg", timestamp=30), Screenshot(url="/s2.jpg"))
        )

        clips = materialize_clips(self.make_job(), artifacts)

        assert [c.video_url for c in clips] == [None, None]
        assert clips[0].thumbnail_urls == ["/s1.jpg"]
        assert (clips[0].start_time, clips[0].end_time) == (30.0, 75.0)

    def test_every_clip_is_within_bounds(self):
        artifacts = GatewayArtifacts(
            segments=tuple(
                SegmentArtifact(video_url=f"/{i}.mp4", start_time=start, end_time=end)
                for i, (start, end) in enumerate([(0, 5), (50, 200), (295, 299)])
            )
        )

        clips = materialize_clips(self.make_job(max_clips=3), artifacts)

        for clip in clips:
            assert 0 <= clip.start_time < clip.end_time <= 300
            assert 15 <= clip.duration_seconds <= 45

    def test_short_source_yields_whole_video(self):
        job = self.make_job()
        assert fit_span(0, None, job.options, source_duration=10) == (0.0, 10.0)

    def test_unknown_source_duration_uses_max_duration(self):
        job = self.make_job()
        assert fit_span(None, None, job.options, source_duration=None) == (0.0, 45.0)
