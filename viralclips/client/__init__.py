"""
Client-side helpers for the clip job API.
"""

from viralclips.client.jobs_client import ClipJobsApiError, ClipJobsClient
from viralclips.client.poller import JobPoller, PollHandle, PollListener

__all__ = ["ClipJobsApiError", "ClipJobsClient", "JobPoller", "PollHandle", "PollListener"]
