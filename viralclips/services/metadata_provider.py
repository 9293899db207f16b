"""
Source Metadata Provider - validates YouTube URLs and fetches video metadata.

Metadata comes from the YouTube Data API v3 (snippet, contentDetails and
statistics parts). It is informational only: it is fetched once when a job is
created and stored on the job row.
"""

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Optional
from urllib.parse import parse_qs, urlparse

import httpx

from viralclips.config import get_settings
from viralclips.errors import (
    InvalidSourceUrlError,
    SourceNotFoundError,
    UpstreamCredentialsError,
    UpstreamUnavailableError,
)

logger = logging.getLogger(__name__)


_YOUTUBE_URL_PATTERN = re.compile(
    r"^(https?://)?(www\.|m\.)?(youtube\.com|youtu\.be)/.+", re.IGNORECASE
)
_VIDEO_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{3,64}$")
_ISO_DURATION_PATTERN = re.compile(
    r"^P(?:(\d+)D)?(?:T(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?)?$"
)

# Path prefixes that carry the video id as the next segment
_PATH_ID_PREFIXES = ("shorts", "embed", "live", "v")


@dataclass
class VideoMetadata:
    """Descriptive metadata for a source video."""

    video_id: str
    title: str
    duration_seconds: int
    description: str = ""
    thumbnails: dict[str, Any] = field(default_factory=dict)
    statistics: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> Optional["VideoMetadata"]:
        if not data:
            return None
        return cls(
            video_id=data.get("video_id", ""),
            title=data.get("title", ""),
            duration_seconds=int(data.get("duration_seconds") or 0),
            description=data.get("description") or "",
            thumbnails=data.get("thumbnails") or {},
            statistics=data.get("statistics") or {},
        )


def extract_video_id(source_url: str) -> str:
    """
    Validate a YouTube URL and extract its video id.

    Accepts ``youtu.be/<id>``, ``youtube.com/watch?v=<id>`` and the
    ``/shorts/``, ``/embed/`` and ``/live/`` path forms, with or without a
    scheme.

    Raises:
        InvalidSourceUrlError: If the URL is not a YouTube URL or carries no id
    """
    url = (source_url or "").strip()
    if not _YOUTUBE_URL_PATTERN.match(url):
        raise InvalidSourceUrlError()

    parsed = urlparse(url if url.lower().startswith("http") else f"https://{url}")
    host = (parsed.hostname or "").lower()
    candidate = ""

    if host == "youtu.be":
        candidate = parsed.path.lstrip("/").split("/")[0]
    elif host.endswith("youtube.com"):
        candidate = parse_qs(parsed.query).get("v", [""])[0]
        if not candidate:
            parts = [p for p in parsed.path.split("/") if p]
            if len(parts) >= 2 and parts[0] in _PATH_ID_PREFIXES:
                candidate = parts[1]

    if not _VIDEO_ID_PATTERN.match(candidate):
        raise InvalidSourceUrlError()
    return candidate


def parse_iso8601_duration(value: Optional[str], default: int = 300) -> int:
    """
    Convert a YouTube ``PT#H#M#S`` duration to seconds.

    Live streams report ``P0D``; zero and unparseable values fall back to
    ``default``.
    """
    if not value:
        return default
    match = _ISO_DURATION_PATTERN.match(value.strip().upper())
    if not match:
        return default
    days, hours, minutes, seconds = (int(g or 0) for g in match.groups())
    return days * 86400 + hours * 3600 + minutes * 60 + seconds or default


class YouTubeMetadataService:
    """
    Service for looking up YouTube video metadata.

    Failure mapping:
    - no API key configured, or the key is rejected -> UpstreamCredentialsError
    - video missing, private or deleted -> SourceNotFoundError
    - API unreachable or answering 5xx -> UpstreamUnavailableError
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = get_settings()
        self.api_key = api_key if api_key is not None else self.settings.youtube_api_key
        self.base_url = (base_url or self.settings.youtube_api_base_url).rstrip("/")
        self.timeout = timeout_seconds or self.settings.metadata_timeout_seconds
        self._transport = transport

    async def lookup(self, source_url: str) -> VideoMetadata:
        """Validate ``source_url`` and fetch its metadata."""
        video_id = extract_video_id(source_url)
        return await self.fetch_metadata(video_id)

    async def fetch_metadata(self, video_id: str) -> VideoMetadata:
        """
        Fetch metadata for a video id.

        Args:
            video_id: YouTube video id

        Returns:
            VideoMetadata for the video
        """
        if not self.api_key:
            logger.error("YOUTUBE_API_KEY not configured, cannot fetch video metadata")
            raise UpstreamCredentialsError()

        params = {
            "id": video_id,
            "part": "snippet,contentDetails,statistics",
            "key": self.api_key,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(f"{self.base_url}/videos", params=params)
        except httpx.TimeoutException:
            logger.warning(f"YouTube metadata request timed out for video {video_id}")
            raise UpstreamUnavailableError()
        except httpx.RequestError as e:
            logger.warning(f"YouTube metadata request failed for video {video_id}: {e}")
            raise UpstreamUnavailableError()

        if response.status_code in (401, 403) or (
            response.status_code == 400 and "keyInvalid" in response.text
        ):
            logger.error(f"YouTube API rejected the configured key (HTTP {response.status_code})")
            raise UpstreamCredentialsError()
        if response.status_code == 404:
            raise SourceNotFoundError()
        if response.status_code >= 400:
            logger.warning(
                f"YouTube API error for video {video_id}: HTTP {response.status_code} "
                f"{response.text[:200]}"
            )
            raise UpstreamUnavailableError()

        try:
            data = response.json()
        except ValueError:
            logger.warning(f"YouTube API returned non-JSON body for video {video_id}")
            raise UpstreamUnavailableError()
        if not isinstance(data, dict):
            logger.warning(f"YouTube API returned unexpected body for video {video_id}: {data!r:.200}")
            raise UpstreamUnavailableError()

        items = data.get("items") or []
        if not items:
            raise SourceNotFoundError()

        video = items[0]
        snippet = video.get("snippet") or {}
        content_details = video.get("contentDetails") or {}

        metadata = VideoMetadata(
            video_id=video_id,
            title=snippet.get("title") or "",
            description=snippet.get("description") or "",
            duration_seconds=parse_iso8601_duration(
                content_details.get("duration"),
                default=self.settings.default_video_duration_seconds,
            ),
            thumbnails=snippet.get("thumbnails") or {},
            statistics=video.get("statistics") or {},
        )
        logger.info(f"YouTube metadata fetched: {metadata.title} ({metadata.duration_seconds}s)")
        return metadata
