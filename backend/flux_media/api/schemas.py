"""Request bodies accepted by the API."""
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from flux_media import config
from flux_media.conversion.models import IMAGE_FORMATS, VIDEO_FORMATS, MediaFormat, SuccessPolicy

VideoPreset = Literal["slow", "medium", "fast"]


class OptionsUpdate(BaseModel):
    """Partial settings update; omitted fields keep their stored value."""

    image_formats: Optional[list[MediaFormat]] = Field(None, description="Image formats to produce (webp, avif)")
    video_formats: Optional[list[MediaFormat]] = Field(None, description="Video formats to produce (av1, webm)")
    hybrid_approach: Optional[bool] = Field(None, description="Produce every enabled format instead of only the first supported one")
    webp_quality: Optional[int] = Field(None, ge=0, le=100)
    webp_lossless: Optional[bool] = None
    avif_quality: Optional[int] = Field(None, ge=0, le=100)
    avif_speed: Optional[int] = Field(None, ge=0, le=10)
    video_av1_crf: Optional[int] = Field(None, ge=0, le=63)
    video_av1_cpu_used: Optional[int] = Field(None, ge=0, le=8)
    video_av1_preset: Optional[VideoPreset] = None
    video_webm_crf: Optional[int] = Field(None, ge=0, le=63)
    video_webm_speed: Optional[int] = Field(None, ge=0, le=9)
    video_webm_preset: Optional[VideoPreset] = None
    video_threads: Optional[int] = Field(None, ge=0, le=64)

    @field_validator("image_formats")
    @classmethod
    def _image_formats_only(cls, v):
        if v is not None and any(f not in IMAGE_FORMATS for f in v):
            raise ValueError("image_formats accepts only webp and avif")
        return v

    @field_validator("video_formats")
    @classmethod
    def _video_formats_only(cls, v):
        if v is not None and any(f not in VIDEO_FORMATS for f in v):
            raise ValueError("video_formats accepts only av1 and webm")
        return v


class StartConversionRequest(BaseModel):
    attachment_id: str = Field(..., min_length=1)
    source_path: str = Field(..., min_length=1)
    formats: Optional[list[MediaFormat]] = Field(None, description="Defaults to the enabled formats for the media type")
    policy: SuccessPolicy = SuccessPolicy.ANY


class BulkItem(BaseModel):
    attachment_id: str = Field(..., min_length=1)
    source_path: str = Field(..., min_length=1)


class BulkRequest(BaseModel):
    """Explicit items, or none to scan the media directory."""

    items: Optional[list[BulkItem]] = None
    batch_size: int = Field(config.DEFAULT_BATCH_SIZE, ge=1, le=100)
    skip_converted: bool = True


class CleanupRecordsRequest(BaseModel):
    retention_days: int = Field(config.RECORD_RETENTION_DAYS, ge=0)
