"""
Request schemas for the clip job API.

Field names are camelCase on the wire; snake_case is accepted too.
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic.alias_generators import to_camel

from viralclips.services.job_store import JobOptions

CaptionStyleInput = Literal["modern", "bold", "neon", "classic"]


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


class JobOptionsInput(CamelModel):
    """Processing options for a new job."""

    caption_style: CaptionStyleInput = Field("modern", description="Caption style preset")
    music_enabled: bool = Field(True, description="Add background music")
    sfx_enabled: bool = Field(True, description="Add sound effects")
    max_clips: int = Field(3, ge=1, le=10, description="Maximum number of clips to generate")
    min_duration: int = Field(15, ge=5, le=300, description="Minimum clip duration in seconds")
    max_duration: int = Field(60, ge=5, le=300, description="Maximum clip duration in seconds")

    @model_validator(mode="after")
    def validate_duration_range(self) -> "JobOptionsInput":
        if self.min_duration > self.max_duration:
            raise ValueError("minDuration cannot exceed maxDuration")
        return self

    def to_options(self) -> JobOptions:
        return JobOptions(
            caption_style=self.caption_style,
            music_enabled=self.music_enabled,
            sfx_enabled=self.sfx_enabled,
            max_clips=self.max_clips,
            min_duration=self.min_duration,
            max_duration=self.max_duration,
        )


class CreateJobRequest(CamelModel):
    """Request body for POST /jobs."""

    source_url: str = Field(..., min_length=1, description="YouTube video URL")
    options: JobOptionsInput = Field(default_factory=JobOptionsInput)

    class Config:
        json_schema_extra = {
            "example": {
                "sourceUrl": "https://youtu.be/dQw4w9WgXcQ",
                "options": {
                    "captionStyle": "modern",
                    "musicEnabled": True,
                    "sfxEnabled": True,
                    "maxClips": 3,
                    "minDuration": 15,
                    "maxDuration": 45,
                },
            }
        }


class MetadataRequest(CamelModel):
    """Request body for POST /metadata."""

    url: Optional[str] = Field(None, description="YouTube video URL")
    source_url: Optional[str] = Field(None, description="Alias of url")

    @property
    def target_url(self) -> str:
        return (self.url or self.source_url or "").strip()
