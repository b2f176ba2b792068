"""Conversion request/response models."""
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any, Mapping, Optional, Union

from flux_media import config


class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class MediaFormat(str, Enum):
    WEBP = "webp"
    AVIF = "avif"
    AV1 = "av1"
    WEBM = "webm"

    @property
    def media_type(self) -> MediaType:
        return MediaType.IMAGE if self in IMAGE_FORMATS else MediaType.VIDEO


IMAGE_FORMATS = (MediaFormat.WEBP, MediaFormat.AVIF)
VIDEO_FORMATS = (MediaFormat.AV1, MediaFormat.WEBM)


class ProcessorKind(str, Enum):
    IMAGICK = "imagick"
    GD = "gd"
    FFMPEG = "ffmpeg"
    NONE = "none"


class SuccessPolicy(str, Enum):
    """How process_media decides overall success for a multi-format request."""

    ANY = "any"  # at least one format converted
    ALL = "all"  # every requested format converted


class ErrorKind(str, Enum):
    NO_PROCESSOR_AVAILABLE = "no_processor_available"
    UNSUPPORTED_FORMAT = "unsupported_format"
    CONVERSION_FAILED = "conversion_failed"
    SOURCE_NOT_FOUND = "source_not_found"
    TIMEOUT = "timeout"
    STORAGE_FAILURE = "storage_failure"


@dataclass(frozen=True)
class ProcessorInfo:
    """Capability snapshot of one backend."""

    available: bool
    kind: ProcessorKind
    version: str = "Not available"
    webp: bool = False
    avif: bool = False
    av1: bool = False
    webm: bool = False
    encoders: tuple[str, ...] = ()

    @classmethod
    def unavailable(cls) -> "ProcessorInfo":
        return cls(available=False, kind=ProcessorKind.NONE)

    def supports(self, fmt: MediaFormat) -> bool:
        return self.available and bool(getattr(self, MediaFormat(fmt).value))

    def to_dict(self) -> dict:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["encoders"] = list(self.encoders)
        return data


def _known_fields(cls, values: Mapping[str, Any]) -> dict:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in values.items() if k in names}


@dataclass
class ImageOptions:
    quality: Optional[int] = None  # 0-100
    lossless: Optional[bool] = None
    speed: Optional[int] = None  # AVIF, 0-10

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]]) -> "ImageOptions":
        return cls(**_known_fields(cls, values or {}))

    def merged_over(self, defaults: "ImageOptions") -> "ImageOptions":
        overrides = {k: v for k, v in asdict(self).items() if v is not None}
        return replace(defaults, **overrides)


@dataclass
class VideoOptions:
    crf: Optional[int] = None
    preset: Optional[str] = None  # slow | medium | fast
    cpu_used: Optional[int] = None  # AV1, 0-8
    speed: Optional[int] = None  # VP9, 0-9
    threads: Optional[int] = None  # 0 = all cores

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]]) -> "VideoOptions":
        return cls(**_known_fields(cls, values or {}))

    def merged_over(self, defaults: "VideoOptions") -> "VideoOptions":
        overrides = {k: v for k, v in asdict(self).items() if v is not None}
        return replace(defaults, **overrides)


ConversionOptions = Union[ImageOptions, VideoOptions]

DEFAULT_OPTIONS: dict[MediaFormat, ConversionOptions] = {
    MediaFormat.WEBP: ImageOptions(quality=config.DEFAULT_WEBP_QUALITY, lossless=False),
    MediaFormat.AVIF: ImageOptions(quality=config.DEFAULT_AVIF_QUALITY, lossless=False, speed=config.DEFAULT_AVIF_SPEED),
    MediaFormat.AV1: VideoOptions(
        crf=config.DEFAULT_AV1_CRF,
        preset=config.DEFAULT_VIDEO_PRESET,
        cpu_used=config.DEFAULT_AV1_CPU_USED,
        threads=0,
    ),
    MediaFormat.WEBM: VideoOptions(
        crf=config.DEFAULT_WEBM_CRF,
        preset=config.DEFAULT_VIDEO_PRESET,
        speed=config.DEFAULT_WEBM_SPEED,
        threads=0,
    ),
}


@dataclass
class ConversionSettings:
    """Settings passed explicitly into every conversion; validated by the API before they get here."""

    image_formats: list[MediaFormat] = field(default_factory=lambda: list(IMAGE_FORMATS))
    video_formats: list[MediaFormat] = field(default_factory=lambda: list(VIDEO_FORMATS))
    hybrid_approach: bool = True
    webp_quality: int = config.DEFAULT_WEBP_QUALITY
    webp_lossless: bool = False
    avif_quality: int = config.DEFAULT_AVIF_QUALITY
    avif_speed: int = config.DEFAULT_AVIF_SPEED
    video_av1_crf: int = config.DEFAULT_AV1_CRF
    video_av1_cpu_used: int = config.DEFAULT_AV1_CPU_USED
    video_av1_preset: str = config.DEFAULT_VIDEO_PRESET
    video_webm_crf: int = config.DEFAULT_WEBM_CRF
    video_webm_speed: int = config.DEFAULT_WEBM_SPEED
    video_webm_preset: str = config.DEFAULT_VIDEO_PRESET
    video_threads: int = 0

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]]) -> "ConversionSettings":
        known = _known_fields(cls, values or {})
        for key in ("image_formats", "video_formats"):
            if key in known:
                known[key] = [MediaFormat(f) for f in known[key]]
        return cls(**known)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["image_formats"] = [f.value for f in self.image_formats]
        data["video_formats"] = [f.value for f in self.video_formats]
        return data

    def formats_for(self, media_type: MediaType) -> list[MediaFormat]:
        return list(self.image_formats if media_type == MediaType.IMAGE else self.video_formats)

    def options_for(self, fmt: MediaFormat) -> ConversionOptions:
        fmt = MediaFormat(fmt)
        if fmt == MediaFormat.WEBP:
            return ImageOptions(quality=self.webp_quality, lossless=self.webp_lossless)
        if fmt == MediaFormat.AVIF:
            return ImageOptions(quality=self.avif_quality, speed=self.avif_speed)
        if fmt == MediaFormat.AV1:
            return VideoOptions(
                crf=self.video_av1_crf,
                cpu_used=self.video_av1_cpu_used,
                preset=self.video_av1_preset,
                threads=self.video_threads,
            )
        return VideoOptions(
            crf=self.video_webm_crf,
            speed=self.video_webm_speed,
            preset=self.video_webm_preset,
            threads=self.video_threads,
        )


@dataclass
class ConversionResult:
    """Outcome of one source -> {format -> destination} job."""

    success: bool = False
    converted_formats: list[MediaFormat] = field(default_factory=list)
    converted_files: dict[MediaFormat, str] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    failures: dict[MediaFormat, str] = field(default_factory=dict)
    durations: dict[MediaFormat, float] = field(default_factory=dict)

    def add_success(self, fmt: MediaFormat, path: str) -> None:
        if fmt not in self.converted_formats:
            self.converted_formats.append(fmt)
        self.converted_files[fmt] = path

    def add_failure(self, fmt: Optional[MediaFormat], message: str) -> None:
        self.errors.append(message)
        if fmt is not None:
            self.failures[fmt] = message

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "converted_formats": [f.value for f in self.converted_formats],
            "converted_files": {f.value: p for f, p in self.converted_files.items()},
            "errors": list(self.errors),
        }


@dataclass
class VideoMetadata:
    duration_seconds: float = 0.0
    bitrate_bps: int = 0
    size_bytes: int = 0
    width: int = 0
    height: int = 0
    codec_name: str = "unknown"
    fps: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)
