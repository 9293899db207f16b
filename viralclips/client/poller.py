"""
Job Poller - client-side loop that mirrors a job's state.

Calls the status endpoint on a fixed interval until the job reaches a
terminal state. Each poll loop is owned by an explicit ``PollHandle``;
starting a poll for a job stops any previous loop for the same job.

Each tick awaits the full status round trip before sleeping, so ticks never
overlap.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from viralclips.client.jobs_client import ClipJobsApiError, ClipJobsClient

logger = logging.getLogger(__name__)


TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})
CANCELLED_MESSAGE = "You can start a new video now."
DEFAULT_INTERVAL_SECONDS = 2.0


class PollListener:
    """Receives poll events. Override what you need; defaults do nothing."""

    def on_update(self, status: dict[str, Any]) -> None:
        pass

    def on_completed(self, status: dict[str, Any], clips: list[dict[str, Any]]) -> None:
        pass

    def on_failed(self, status: dict[str, Any], error: str) -> None:
        pass

    def on_cancelled(self, status: dict[str, Any], message: str) -> None:
        pass

    def on_error(self, error: Exception) -> None:
        pass


@dataclass(eq=False)
class PollHandle:
    """One active poll loop for one job."""

    job_id: str
    task: Optional["asyncio.Task[None]"] = None
    last_status: Optional[dict[str, Any]] = None
    error: Optional[Exception] = None
    ticks: int = 0
    _stopped: bool = field(default=False, repr=False)

    @property
    def active(self) -> bool:
        return self.task is not None and not self.task.done()

    @property
    def stopped(self) -> bool:
        return self._stopped

    async def wait(self) -> Optional[dict[str, Any]]:
        """Wait for the loop to end and return the last status seen."""
        if self.task is not None:
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        return self.last_status


class JobPoller:
    """
    Polls job status until a terminal state.

    Fatal API errors (auth, not found) stop the loop. Transient failures
    (transport errors, 5xx) are logged and the loop keeps going.
    """

    def __init__(
        self,
        client: ClipJobsClient,
        listener: Optional[PollListener] = None,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    ):
        self.client = client
        self.listener = listener or PollListener()
        self.interval = interval_seconds
        self._handles: dict[str, PollHandle] = {}

    def active_handle(self, job_id: str) -> Optional[PollHandle]:
        handle = self._handles.get(job_id)
        return handle if handle is not None and handle.active else None

    def start(self, job_id: str) -> PollHandle:
        """Start polling ``job_id``. Any previous loop for the job is stopped first."""
        previous = self._handles.get(job_id)
        if previous is not None:
            self.stop(previous)

        handle = PollHandle(job_id=job_id)
        handle.task = asyncio.create_task(self._run(handle))
        self._handles[job_id] = handle
        logger.debug(f"Polling job {job_id} every {self.interval}s")
        return handle

    def stop(self, handle: PollHandle) -> None:
        """Stop a poll loop. Safe to call more than once."""
        handle._stopped = True
        if handle.task is not None and not handle.task.done():
            handle.task.cancel()
        if self._handles.get(handle.job_id) is handle:
            del self._handles[handle.job_id]

    async def stop_all(self) -> None:
        handles = list(self._handles.values())
        for handle in handles:
            self.stop(handle)
        for handle in handles:
            await handle.wait()

    def follow(self, created_job: dict[str, Any]) -> Optional[PollHandle]:
        """
        Continue from a create response.

        Following a new job stops the loops of every other job, so only the
        latest job reports to the listener. A job that is already terminal
        (completed synchronously, or failed on submit) is reported right away
        and no loop is started.
        """
        job_id = created_job["jobId"]
        for handle in list(self._handles.values()):
            if handle.job_id != job_id:
                logger.debug(f"Stopped polling job {handle.job_id}: following {job_id}")
                self.stop(handle)
        if created_job.get("status") in TERMINAL_STATUSES:
            self._dispatch_terminal(created_job)
            return None
        return self.start(job_id)

    async def cancel_job(self, handle: PollHandle) -> dict[str, Any]:
        """Stop polling and cancel the job on the server."""
        self.stop(handle)
        result = await self.client.cancel_job(handle.job_id)
        status = {**(handle.last_status or {}), **result}
        handle.last_status = status
        if result.get("status") == "cancelled":
            self.listener.on_cancelled(status, CANCELLED_MESSAGE)
        else:
            self._dispatch_terminal(status)
        return result

    def _dispatch_terminal(self, status: dict[str, Any]) -> None:
        state = status.get("status")
        if state == "completed":
            self.listener.on_completed(status, status.get("clips") or [])
        elif state == "failed":
            self.listener.on_failed(status, status.get("error") or "Processing failed.")
        elif state == "cancelled":
            self.listener.on_cancelled(status, CANCELLED_MESSAGE)

    async def _run(self, handle: PollHandle) -> None:
        job_id = handle.job_id
        try:
            while not handle.stopped:
                handle.ticks += 1
                try:
                    status = await self.client.get_status(job_id)
                except ClipJobsApiError as e:
                    if e.is_fatal:
                        logger.error(f"Stopped polling job {job_id}: {e}")
                        handle.error = e
                        self.listener.on_error(e)
                        return
                    logger.warning(f"Status check for job {job_id} failed, retrying: {e}")
                except httpx.HTTPError as e:
                    logger.warning(f"Status check for job {job_id} failed, retrying: {e}")
                else:
                    handle.last_status = status
                    self.listener.on_update(status)
                    if status.get("status") in TERMINAL_STATUSES:
                        self._dispatch_terminal(status)
                        return

                await asyncio.sleep(self.interval)
        finally:
            if self._handles.get(job_id) is handle:
                del self._handles[job_id]
