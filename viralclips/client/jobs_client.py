"""
Clip Jobs Client - async HTTP client for the clip job API.

Used by the job poller and the ``submit_job.py`` command line driver.
"""

import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


class ClipJobsApiError(Exception):
    """The API answered with an error status."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        job_id: Optional[str] = None,
    ):
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message
        self.job_id = job_id

    @property
    def is_fatal(self) -> bool:
        """Auth and not-found errors will not fix themselves by retrying."""
        return self.status_code in (400, 401, 403, 404)


class ClipJobsClient:
    """
    Thin client over the clip job HTTP API.

    Responses are returned as the decoded camelCase JSON the API produces.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: API base URL (e.g. http://localhost:8000)
            token: Bearer token identifying the caller
            timeout_seconds: HTTP request timeout
            transport: Optional httpx transport (tests)
        """
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> "ClipJobsClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._client.request(method, path, **kwargs)
        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            body = body if isinstance(body, dict) else {}
            raise ClipJobsApiError(
                status_code=response.status_code,
                code=body.get("error", "http_error"),
                message=body.get("message") or response.text[:200],
                job_id=body.get("jobId"),
            )
        return body

    async def create_job(self, source_url: str, options: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Submit a video. ``options`` uses the API's camelCase names."""
        payload: dict[str, Any] = {"sourceUrl": source_url}
        if options:
            payload["options"] = options
        return await self._request("POST", "/jobs", json=payload)

    async def get_status(self, job_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/jobs/{job_id}/status")

    async def cancel_job(self, job_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/jobs/{job_id}/cancel")

    async def list_jobs(self, status: Optional[str] = None, limit: Optional[int] = None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {}
        if status:
            params["status"] = status
        if limit is not None:
            params["limit"] = limit
        return await self._request("GET", "/jobs", params=params)

    async def list_clips(self, job_id: Optional[str] = None) -> list[dict[str, Any]]:
        params = {"jobId": job_id} if job_id else {}
        return await self._request("GET", "/clips", params=params)

    async def preview_metadata(self, url: str) -> dict[str, Any]:
        return await self._request("POST", "/metadata", json={"url": url})
