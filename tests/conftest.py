"""
Pytest configuration and fixtures.
"""

import time
from typing import Any

import httpx
import jwt
import pytest

from viralclips.config import get_settings
from viralclips.services.gateway_client import ProcessingGatewayClient
from viralclips.services.job_service import JobService
from viralclips.services.job_store import InMemoryJobStore
from viralclips.services.metadata_provider import YouTubeMetadataService
from viralclips.services.reconciler import JobReconciler

TEST_JWT_SECRET = "test-secret-for-viralclips"
GATEWAY_URL = "http://gateway.test"
PRIVATE_VIDEO_ID = "private1"


def make_token(owner_id: str, secret: str = TEST_JWT_SECRET, expires_in: int = 3600) -> str:
    """Build a Supabase-style HS256 token for ``owner_id``."""
    now = int(time.time())
    payload = {"sub": owner_id, "iat": now, "exp": now + expires_in}
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_headers(owner_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(owner_id)}"}


@pytest.fixture(autouse=True)
def test_env(monkeypatch):
    """Deterministic settings for every test."""
    monkeypatch.setenv("AUTH_JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setenv("YOUTUBE_API_KEY", "yt-test-key")
    monkeypatch.setenv("FFMPEG_SERVICE_URL", GATEWAY_URL)
    monkeypatch.delenv("AUTH_JWT_AUDIENCE", raising=False)
    monkeypatch.delenv("FFMPEG_API_KEY", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings():
    return get_settings()


class GatewayStub:
    """
    Scripted processing service for httpx.MockTransport.

    Each path has a queue of responses. The last response of a queue is
    repeated once the others are used up. Exceptions in a queue are raised.
    """

    def __init__(self):
        self.responses: dict[str, list[Any]] = {"/process": [], "/info": [], "/cancel": []}
        self.requests: list[httpx.Request] = []

    def script(self, path: str, *responses: Any) -> None:
        self.responses[path].extend(responses)

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.responses.get(request.url.path) or []
        if not queue:
            return httpx.Response(404, json={"error": "not found"})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        status_code, body = item
        return httpx.Response(status_code, json=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def youtube_handler(request: httpx.Request) -> httpx.Response:
    """YouTube Data API fake: every id exists except ``private1``."""
    video_id = request.url.params["id"]
    if video_id == PRIVATE_VIDEO_ID:
        return httpx.Response(200, json={"kind": "youtube#videoListResponse", "items": []})
    return httpx.Response(
        200,
        json={
            "items": [
                {
                    "id": video_id,
                    "snippet": {
                        "title": f"Video {video_id}",
                        "description": "A test video",
                        "thumbnails": {"default": {"url": f"https://i.ytimg.com/vi/{video_id}/default.jpg"}},
                    },
                    "contentDetails": {"duration": "PT5M"},
                    "statistics": {"viewCount": "1000", "likeCount": "50"},
                }
            ]
        },
    )


@pytest.fixture
def gateway_stub():
    return GatewayStub()


@pytest.fixture
def gateway(gateway_stub):
    return ProcessingGatewayClient(
        base_url=GATEWAY_URL,
        transport=gateway_stub.transport,
        retry_base_delay_seconds=0,
    )


@pytest.fixture
def metadata_service():
    return YouTubeMetadataService(transport=httpx.MockTransport(youtube_handler))


@pytest.fixture
def job_store(settings):
    return InMemoryJobStore(settings)


@pytest.fixture
def reconciler(job_store, gateway, settings):
    return JobReconciler(job_store, gateway, settings)


@pytest.fixture
def job_service(job_store, gateway, metadata_service, reconciler):
    return JobService(job_store, gateway, metadata_service, reconciler)
