"""
Configuration module using Pydantic Settings for environment variable management.

Credentials, service URLs and the job deadline policy are read from the
environment. Everything else is hardcoded for consistency and simplicity.
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings.

    Only essential configuration is loaded from environment variables.
    Processing defaults that the frontend never changes are hardcoded.
    """

    # ============================================================
    # ENVIRONMENT VARIABLES
    # ============================================================

    # Application
    app_name: str = "viral-clips"
    debug: bool = False
    log_level: str = "INFO"

    # Security - caller authentication (Supabase-style HS256 JWTs)
    auth_jwt_secret: Optional[str] = None
    auth_jwt_audience: Optional[str] = None

    # Source metadata (YouTube Data API v3)
    youtube_api_key: Optional[str] = None

    # Remote FFmpeg processing service
    ffmpeg_service_url: str = "http://localhost:8080"
    ffmpeg_api_key: Optional[str] = None
    gateway_timeout_seconds: float = 30.0
    gateway_max_retries: int = 2
    gateway_retry_base_delay_seconds: float = 0.2

    # Persistence (empty = in-memory store)
    database_url: Optional[str] = None

    # Job deadline policy
    queued_timeout_seconds: int = 180  # 3 minutes
    start_timeout_seconds: int = 600  # 10 minutes
    job_expiration_hours: int = 24

    # Remote progress percentage -> stage buckets
    # (<25 downloading, <50 transcribing, <75 detecting, <85 creating clips, else uploading)
    stage_progress_thresholds: list[int] = [25, 50, 75, 85]

    # ============================================================
    # HARDCODED SETTINGS (not configurable via env vars)
    # ============================================================

    @property
    def youtube_api_base_url(self) -> str:
        return "https://www.googleapis.com/youtube/v3"

    @property
    def metadata_timeout_seconds(self) -> float:
        return 10.0

    @property
    def screenshot_count(self) -> int:
        return 3

    @property
    def output_format(self) -> str:
        return "mp4"

    @property
    def default_video_duration_seconds(self) -> int:
        return 300  # used when the platform duration cannot be parsed

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
