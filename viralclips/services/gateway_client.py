"""
Processing Gateway Client - HTTP client for the remote FFmpeg processing service.

The processing service is not consistent about its response shapes. It may:
- answer synchronously with ``{"code": 0, "data": {"conversion": {...}, "screenshots": [...]}}``
- answer asynchronously (usually HTTP 202) with ``{"jobId"|"job_id": ..., "status"|"state": ...}``
- answer HTTP 202 with a body that is in fact already complete

Every response is normalized here into exactly one of ``Completed``,
``Accepted`` or ``Malformed``. Nothing past this module looks at raw response
fields.

Transport failures (connection errors, timeouts, 502/503/504) are retried with
exponential backoff. Malformed responses are never retried.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union
from urllib.parse import urljoin, urlparse

import httpx

from viralclips.config import get_settings
from viralclips.errors import (
    GatewayUnavailableError,
    ProtocolMismatchError,
    UpstreamCredentialsError,
)

logger = logging.getLogger(__name__)


SUCCESS_TOKENS = frozenset({"completed", "complete", "done", "finished", "success", "succeeded"})
FAILURE_TOKENS = frozenset({"failed", "failure", "error", "errored", "cancelled", "canceled"})
PENDING_TOKENS = frozenset(
    {"queued", "pending", "waiting", "accepted", "processing", "running", "in_progress", "started"}
)

RETRYABLE_STATUS_CODES = frozenset({502, 503, 504})

# Keys under which the service nests its payload
_CONTAINER_KEYS = ("data", "result", "output")


# ============================================================================
# Normalized result types
# ============================================================================


@dataclass(frozen=True)
class Screenshot:
    url: str
    timestamp: Optional[float] = None


@dataclass(frozen=True)
class SegmentArtifact:
    """One rendered highlight segment reported by the processing service."""

    video_url: Optional[str]
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    title: Optional[str] = None
    score: Optional[float] = None
    thumbnail_urls: tuple[str, ...] = ()
    subtitle_urls: tuple[str, ...] = ()
    size_bytes: Optional[int] = None


@dataclass(frozen=True)
class GatewayArtifacts:
    """Everything a finished remote job produced."""

    video_url: Optional[str] = None
    video_size: Optional[int] = None
    screenshots: tuple[Screenshot, ...] = ()
    segments: tuple[SegmentArtifact, ...] = ()

    def is_empty(self) -> bool:
        return not (self.video_url or self.screenshots or self.segments)


@dataclass(frozen=True)
class Completed:
    artifacts: GatewayArtifacts


@dataclass(frozen=True)
class Accepted:
    remote_job_id: str
    remote_status: str
    progress: Optional[int] = None
    stage: Optional[str] = None
    message: Optional[str] = None

    @property
    def is_failure(self) -> bool:
        return self.remote_status in FAILURE_TOKENS


@dataclass(frozen=True)
class Malformed:
    reason: str
    status_code: Optional[int] = None
    body: Any = None


GatewayResult = Union[Completed, Accepted, Malformed]


# ============================================================================
# Normalization
# ============================================================================


def _containers(body: dict[str, Any]) -> list[dict[str, Any]]:
    """The body itself plus any nested payload objects."""
    found = [body]
    for key in _CONTAINER_KEYS:
        value = body.get(key)
        if isinstance(value, dict):
            found.append(value)
    return found


def _first(body: dict[str, Any], *keys: str) -> Any:
    for container in _containers(body):
        for key in keys:
            value = container.get(key)
            if value is not None and value != "":
                return value
    return None


def _absolute_url(url: Any, base_url: Optional[str]) -> Optional[str]:
    if not isinstance(url, str) or not url.strip():
        return None
    url = url.strip()
    if base_url and not urlparse(url).scheme:
        return urljoin(base_url.rstrip("/") + "/", url)
    return url


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _url_list(value: Any, base_url: Optional[str]) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    urls = []
    for item in value:
        raw = item.get("url") if isinstance(item, dict) else item
        url = _absolute_url(raw, base_url)
        if url:
            urls.append(url)
    return tuple(urls)


def _status_token(body: dict[str, Any]) -> Optional[str]:
    token = _first(body, "status", "state")
    if isinstance(token, str):
        return token.strip().lower().replace("-", "_").replace(" ", "_")
    return None


def _progress(body: dict[str, Any]) -> Optional[int]:
    value = _as_float(_first(body, "progress", "progress_percent", "progressPercent", "percent"))
    if value is None:
        return None
    return max(0, min(100, int(round(value))))


def extract_artifacts(body: dict[str, Any], base_url: Optional[str] = None) -> GatewayArtifacts:
    """Collect converted video, screenshots and segments from any payload level."""
    video_url: Optional[str] = None
    video_size: Optional[int] = None
    screenshots: list[Screenshot] = []
    segments: list[SegmentArtifact] = []
    seen_screenshots: set[str] = set()

    for container in _containers(body):
        conversion = container.get("conversion")
        if video_url is None and isinstance(conversion, dict):
            video_url = _absolute_url(conversion.get("url"), base_url)
            size = _as_float(conversion.get("size"))
            video_size = int(size) if size is not None else None
        if video_url is None:
            video_url = _absolute_url(
                container.get("converted_url")
                or container.get("convertedUrl")
                or container.get("video_url")
                or container.get("videoUrl"),
                base_url,
            )

        raw_screenshots = container.get("screenshots")
        if isinstance(raw_screenshots, list):
            for index, item in enumerate(raw_screenshots):
                raw_url = item.get("url") if isinstance(item, dict) else item
                url = _absolute_url(raw_url, base_url)
                if not url or url in seen_screenshots:
                    continue
                seen_screenshots.add(url)
                timestamp = _as_float(item.get("timestamp")) if isinstance(item, dict) else None
                screenshots.append(Screenshot(url=url, timestamp=timestamp))

        raw_segments = container.get("segments") or container.get("clips")
        if isinstance(raw_segments, list):
            for item in raw_segments:
                if not isinstance(item, dict):
                    continue
                size = _as_float(item.get("size") or item.get("file_size_bytes"))
                segments.append(
                    SegmentArtifact(
                        video_url=_absolute_url(
                            item.get("url") or item.get("video_url") or item.get("videoUrl"),
                            base_url,
                        ),
                        start_time=_as_float(
                            item.get("start_time", item.get("startTime", item.get("start")))
                        ),
                        end_time=_as_float(
                            item.get("end_time", item.get("endTime", item.get("end")))
                        ),
                        title=item.get("title") or item.get("name"),
                        score=_as_float(
                            item.get("score")
                            or item.get("predicted_engagement")
                            or item.get("predictedEngagement")
                        ),
                        thumbnail_urls=_url_list(
                            item.get("thumbnail_urls") or item.get("thumbnailUrls") or item.get("thumbnails"),
                            base_url,
                        ),
                        subtitle_urls=_url_list(
                            item.get("subtitle_urls") or item.get("subtitleUrls") or item.get("subtitles"),
                            base_url,
                        ),
                        size_bytes=int(size) if size is not None else None,
                    )
                )

    return GatewayArtifacts(
        video_url=video_url,
        video_size=video_size,
        screenshots=tuple(screenshots),
        segments=tuple(s for s in segments if s.video_url),
    )


def is_final_completion(body: Any) -> bool:
    """
    Decide whether a processing-service response means "the job is done".

    The HTTP status code is not trusted (a 202 can carry a completed body).
    The response is final when ANY of the following holds:

    1. It carries an artifact: a converted-video URL, a non-empty screenshot
       list or a non-empty segment list.
    2. Its status token is an explicit success token (``completed``, ``done``,
       ``finished``, ``success``, ...).
    3. It is the synchronous success envelope ``{"code": 0, "data": {...}}``
       and ``data`` does not itself report a pending status.

    This is a heuristic: a service that streams partial artifacts before it
    finishes will be read as complete early.
    """
    if not isinstance(body, dict):
        return False
    if not extract_artifacts(body).is_empty():
        return True
    if _status_token(body) in SUCCESS_TOKENS:
        return True
    data = body.get("data")
    if body.get("code") == 0 and isinstance(data, dict):
        return _status_token(data) not in PENDING_TOKENS
    return False


def normalize_response(
    status_code: int,
    body: Any,
    remote_job_id: Optional[str] = None,
    base_url: Optional[str] = None,
) -> GatewayResult:
    """
    Normalize a processing-service response.

    Args:
        status_code: HTTP status of the response
        body: Decoded JSON body (or raw text if it was not JSON)
        remote_job_id: Job id already known to the caller (status polls)
        base_url: Base URL used to resolve relative artifact URLs

    Returns:
        Completed, Accepted or Malformed
    """
    if not isinstance(body, dict):
        return Malformed(reason="response body is not a JSON object", status_code=status_code, body=body)

    if is_final_completion(body):
        return Completed(artifacts=extract_artifacts(body, base_url))

    job_id = _first(body, "jobId", "job_id") or remote_job_id
    token = _status_token(body)

    if job_id and (token or status_code == 202):
        message = _first(body, "error", "error_message", "errorMessage", "message")
        stage = _first(body, "stage", "current_stage", "currentStage", "step")
        return Accepted(
            remote_job_id=str(job_id),
            remote_status=token or "queued",
            progress=_progress(body),
            stage=stage if isinstance(stage, str) else None,
            message=str(message) if message is not None else None,
        )

    return Malformed(reason="unrecognized response shape", status_code=status_code, body=body)


# ============================================================================
# Client
# ============================================================================


class ProcessingGatewayClient:
    """
    Client for the remote processing service.

    Features:
    - Bounded retries with exponential backoff on transport failure
    - Response normalization into Completed / Accepted
    - Best-effort cancellation that never raises
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_base_delay_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the gateway client.

        Args:
            base_url: Processing service URL
            api_key: Optional key sent as ``x-api-key``
            timeout_seconds: HTTP request timeout
            max_retries: Retries after the first attempt on transport failure
            retry_base_delay_seconds: First backoff delay, doubled per retry
            transport: Optional httpx transport (tests)
        """
        self.settings = get_settings()
        self.base_url = (base_url or self.settings.ffmpeg_service_url).rstrip("/")
        self.api_key = api_key if api_key is not None else self.settings.ffmpeg_api_key
        self.timeout = timeout_seconds or self.settings.gateway_timeout_seconds
        self.max_retries = (
            max_retries if max_retries is not None else self.settings.gateway_max_retries
        )
        self.retry_delay = (
            retry_base_delay_seconds
            if retry_base_delay_seconds is not None
            else self.settings.gateway_retry_base_delay_seconds
        )
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    async def _post_with_retries(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        url = f"{self.base_url}{path}"
        attempts = self.max_retries + 1
        last_error: Optional[str] = None

        for attempt in range(1, attempts + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    response = await client.post(url, json=payload, headers=self._headers())

                if response.status_code not in RETRYABLE_STATUS_CODES:
                    return response

                last_error = f"HTTP {response.status_code}"
                logger.warning(f"Gateway unavailable: {url} (attempt {attempt}, {last_error})")

            except httpx.TimeoutException:
                last_error = "Request timed out"
                logger.warning(f"Gateway timeout: {url} (attempt {attempt})")

            except httpx.RequestError as e:
                last_error = f"Request error: {str(e)}"
                logger.warning(f"Gateway error: {url} (attempt {attempt}, {last_error})")

            # Wait before retry (exponential backoff)
            if attempt < attempts:
                delay = self.retry_delay * (2 ** (attempt - 1))
                await asyncio.sleep(delay)

        logger.error(f"Gateway failed after {attempts} attempts: {url} ({last_error})")
        raise GatewayUnavailableError()

    def _interpret(
        self,
        response: httpx.Response,
        remote_job_id: Optional[str] = None,
    ) -> Union[Completed, Accepted]:
        if response.status_code in (401, 403):
            logger.error(
                f"Gateway rejected credentials (HTTP {response.status_code}); "
                f"api key {'set' if self.api_key else 'missing'}"
            )
            raise UpstreamCredentialsError()

        try:
            body: Any = response.json()
        except ValueError:
            body = response.text

        result = normalize_response(response.status_code, body, remote_job_id, self.base_url)
        if isinstance(result, Malformed):
            logger.error(
                f"Unexpected gateway response ({result.reason}): "
                f"status={response.status_code} body={body!r}"
            )
            raise ProtocolMismatchError(status_code=response.status_code, body=body)
        return result

    async def submit(self, source_url: str, options: dict[str, Any]) -> Union[Completed, Accepted]:
        """
        Submit a video for processing.

        Args:
            source_url: Video URL the processing service downloads
            options: Processing options passed through untouched

        Returns:
            Completed when the service finished synchronously, else Accepted

        Raises:
            GatewayUnavailableError: Transport failure after all retries
            UpstreamCredentialsError: The service rejected our API key
            ProtocolMismatchError: Unrecognized response shape
        """
        payload = {
            "media_url": source_url,
            "options": options,
            "extract_info": True,
            "take_screenshots": True,
            "screenshot_count": self.settings.screenshot_count,
            "convert_format": self.settings.output_format,
        }
        logger.info(f"Submitting to gateway: {self.base_url}/process")
        response = await self._post_with_retries("/process", payload)
        logger.info(f"Gateway /process answered HTTP {response.status_code}")
        return self._interpret(response)

    async def poll_status(self, remote_job_id: str) -> Union[Completed, Accepted]:
        """Fetch the status of a remote job. Raises like ``submit``."""
        response = await self._post_with_retries("/info", {"job_id": remote_job_id})
        logger.debug(f"Gateway /info for {remote_job_id} answered HTTP {response.status_code}")
        return self._interpret(response, remote_job_id=remote_job_id)

    async def cancel(self, remote_job_id: str) -> bool:
        """
        Best-effort remote cancel.

        Returns True only if the service acknowledged the cancel. Never raises:
        a missing endpoint, an error status or a transport failure all return
        False.
        """
        url = f"{self.base_url}/cancel"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    url, json={"job_id": remote_job_id}, headers=self._headers()
                )
        except httpx.HTTPError as e:
            logger.warning(f"Remote cancel failed for {remote_job_id}: {e}")
            return False

        if response.status_code in (404, 405, 501):
            logger.info(f"Gateway has no cancel endpoint (HTTP {response.status_code})")
            return False
        if response.status_code >= 300:
            logger.warning(
                f"Remote cancel rejected for {remote_job_id}: HTTP {response.status_code}"
            )
            return False

        logger.info(f"Remote job {remote_job_id} cancelled")
        return True
