"""Backend adapters: one source file -> one target format."""
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

from PIL import Image

from flux_media import config
from flux_media.conversion import probe
from flux_media.conversion.commands import run_command
from flux_media.conversion.models import (
    DEFAULT_OPTIONS,
    ErrorKind,
    ImageOptions,
    MediaFormat,
    ProcessorInfo,
    ProcessorKind,
    VideoMetadata,
    VideoOptions,
)

logger = logging.getLogger("flux_media.processors")

PathLike = Union[str, Path]

# Used only when a caller clears cpu_used/speed and relies on the preset name
PRESET_CPU_USED = {"slow": 2, "medium": 4, "fast": 6}
PRESET_VP9_SPEED = {"slow": 1, "medium": 4, "fast": 6}


def _discard(path: Path) -> None:
    """Remove a partial output left behind by a failed encode."""
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove partial output %s: %s", path, e)


def _output_written(path: Path) -> bool:
    return path.is_file() and path.stat().st_size > 0


class ImageProcessor(ABC):
    """Common surface of the image backends."""

    def __init__(self, info: Optional[ProcessorInfo] = None):
        self._info = info
        self.last_failure: Optional[ErrorKind] = None

    @abstractmethod
    def _probe(self) -> ProcessorInfo:
        ...

    def info(self) -> ProcessorInfo:
        if self._info is None:
            self._info = self._probe()
        return self._info

    def supports(self, fmt: MediaFormat) -> bool:
        return self.info().supports(fmt)

    def supports_webp(self) -> bool:
        return self.supports(MediaFormat.WEBP)

    def supports_avif(self) -> bool:
        return self.supports(MediaFormat.AVIF)

    def convert(self, fmt: MediaFormat, source: PathLike, destination: PathLike, options: Optional[ImageOptions] = None) -> bool:
        fmt = MediaFormat(fmt)
        self.last_failure = None
        if fmt not in (MediaFormat.WEBP, MediaFormat.AVIF) or not self.supports(fmt):
            logger.error("%s does not support %s output", self.info().kind.value, fmt.value)
            self.last_failure = ErrorKind.UNSUPPORTED_FORMAT
            return False
        options = (options or ImageOptions()).merged_over(DEFAULT_OPTIONS[fmt])
        src, dst = Path(source), Path(destination)
        try:
            self._write(fmt, src, dst, options)
        except Exception as e:
            logger.error("%s %s conversion failed for %s: %s", self.info().kind.value, fmt.value, src, e)
            _discard(dst)
            self.last_failure = ErrorKind.CONVERSION_FAILED
            return False
        if not _output_written(dst):
            logger.error("%s file was not created at: %s", fmt.value.upper(), dst)
            _discard(dst)
            self.last_failure = ErrorKind.CONVERSION_FAILED
            return False
        return True

    def convert_to_webp(self, source: PathLike, destination: PathLike, options: Optional[ImageOptions] = None) -> bool:
        return self.convert(MediaFormat.WEBP, source, destination, options)

    def convert_to_avif(self, source: PathLike, destination: PathLike, options: Optional[ImageOptions] = None) -> bool:
        return self.convert(MediaFormat.AVIF, source, destination, options)

    @abstractmethod
    def _write(self, fmt: MediaFormat, src: Path, dst: Path, options: ImageOptions) -> None:
        """Encode src into dst. May raise; convert() turns that into False."""


class WandProcessor(ImageProcessor):
    """ImageMagick via Wand: metadata stripped, animation kept."""

    def _probe(self) -> ProcessorInfo:
        return probe.imagick_info()

    def _write(self, fmt: MediaFormat, src: Path, dst: Path, options: ImageOptions) -> None:
        from wand.image import Image as WandImage

        with WandImage(filename=str(src)) as img:
            img.format = fmt.value
            img.compression_quality = options.quality
            if fmt == MediaFormat.WEBP:
                if options.lossless:
                    img.options["webp:lossless"] = "true"
                else:
                    img.options["webp:method"] = "4"
                    img.options["webp:pass"] = "6"
                    img.options["webp:preprocessing"] = "1"
            else:
                img.options["avif:speed"] = str(options.speed)
            img.strip()
            img.save(filename=str(dst))


class PillowProcessor(ImageProcessor):
    """Pillow encoder. Plays the role GD has in PHP hosts."""

    def _probe(self) -> ProcessorInfo:
        return probe.pillow_info()

    def _write(self, fmt: MediaFormat, src: Path, dst: Path, options: ImageOptions) -> None:
        with Image.open(src) as img:
            animated = bool(getattr(img, "is_animated", False))
            if animated:
                work = img
            elif img.mode in ("RGB", "RGBA"):
                work = img
            elif img.mode in ("P", "LA") or "transparency" in img.info:
                work = img.convert("RGBA")
            else:
                work = img.convert("RGB")

            if fmt == MediaFormat.WEBP:
                save_kw = {"format": "WEBP", "quality": options.quality, "method": 4}
                if options.lossless:
                    save_kw["lossless"] = True
            else:
                save_kw = {"format": "AVIF", "quality": options.quality, "speed": options.speed}
            if animated:
                save_kw["save_all"] = True
            work.save(str(dst), **save_kw)


def _safe_float(value: object) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return 0.0
    return 0.0


def _safe_int(value: object) -> int:
    return int(_safe_float(value))


def _safe_fraction(value: object) -> float:
    if not isinstance(value, str) or "/" not in value:
        return _safe_float(value)
    num_str, den_str = value.split("/", 1)
    num, den = _safe_float(num_str), _safe_float(den_str)
    return num / den if den else 0.0


def parse_probe_output(raw: str) -> Optional[VideoMetadata]:
    """Build VideoMetadata from `ffprobe -print_format json` output; None if not JSON."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error("Unable to parse ffprobe output: %s", e)
        return None
    if not isinstance(data, dict):
        return None
    fmt = data.get("format") or {}
    video = next((s for s in data.get("streams") or [] if s.get("codec_type") == "video"), {})
    codec = video.get("codec_name")
    return VideoMetadata(
        duration_seconds=_safe_float(fmt.get("duration")),
        bitrate_bps=_safe_int(fmt.get("bit_rate")),
        size_bytes=_safe_int(fmt.get("size")),
        width=_safe_int(video.get("width")),
        height=_safe_int(video.get("height")),
        codec_name=codec if isinstance(codec, str) and codec else "unknown",
        fps=_safe_fraction(video.get("r_frame_rate")),
    )


class FFmpegProcessor:
    """FFmpeg command line encoder for AV1 (mp4 container) and VP9 (webm)."""

    def __init__(
        self,
        info: Optional[ProcessorInfo] = None,
        ffmpeg_binary: Optional[str] = None,
        ffprobe_binary: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self._info = info
        self.ffmpeg_binary = ffmpeg_binary or config.FFMPEG_BINARY
        self.ffprobe_binary = ffprobe_binary or config.FFPROBE_BINARY
        self.timeout = timeout if timeout is not None else config.VIDEO_CONVERSION_TIMEOUT
        self.last_failure: Optional[ErrorKind] = None

    def info(self) -> ProcessorInfo:
        if self._info is None:
            self._info = probe.ffmpeg_info()
        return self._info

    def supports(self, fmt: MediaFormat) -> bool:
        return self.info().supports(fmt)

    def supports_av1(self) -> bool:
        return self.supports(MediaFormat.AV1)

    def supports_webm(self) -> bool:
        return self.supports(MediaFormat.WEBM)

    def _audio_args(self) -> list[str]:
        encoders = self.info().encoders
        if "libopus" in encoders:
            return ["-c:a", "libopus", "-b:a", "128k"]
        if "libvorbis" in encoders:
            return ["-c:a", "libvorbis", "-b:a", "128k"]
        return ["-an"]

    def build_av1_command(self, source: Path, destination: Path, options: VideoOptions) -> list[str]:
        encoder = probe.select_av1_encoder(self.info().encoders) or "libaom-av1"
        cpu_used = options.cpu_used if options.cpu_used is not None else PRESET_CPU_USED.get(options.preset or "", 4)
        if encoder == "librav1e":
            # rav1e takes a 0-255 quantizer and a 0-10 speed instead of crf and cpu-used
            video_args = [
                "-c:v", encoder,
                "-qp", str(round(options.crf * 255 / 63)),
                "-speed", str(round(cpu_used * 10 / 8)),
            ]
        elif encoder == "libsvtav1":
            # SVT-AV1 presets run 0-12; scale the libaom cpu-used range onto it
            video_args = ["-c:v", encoder, "-crf", str(options.crf), "-b:v", "0", "-preset", str(round(cpu_used * 12 / 8))]
        else:
            video_args = ["-c:v", encoder, "-crf", str(options.crf), "-b:v", "0", "-cpu-used", str(cpu_used), "-row-mt", "1"]
        return [
            self.ffmpeg_binary, "-hide_banner", "-nostdin", "-y",
            "-i", str(source),
            *video_args,
            "-threads", str(options.threads or 0),
            *self._audio_args(),
            "-movflags", "+faststart",
            "-f", "mp4",
            str(destination),
        ]

    def build_webm_command(self, source: Path, destination: Path, options: VideoOptions) -> list[str]:
        encoder = probe.select_vp9_encoder(self.info().encoders) or "libvpx-vp9"
        speed = options.speed if options.speed is not None else PRESET_VP9_SPEED.get(options.preset or "", 4)
        return [
            self.ffmpeg_binary, "-hide_banner", "-nostdin", "-y",
            "-i", str(source),
            "-c:v", encoder, "-crf", str(options.crf), "-b:v", "0",
            "-speed", str(speed), "-row-mt", "1",
            "-threads", str(options.threads or 0),
            *self._audio_args(),
            "-f", "webm",
            str(destination),
        ]

    def convert(self, fmt: MediaFormat, source: PathLike, destination: PathLike, options: Optional[VideoOptions] = None) -> bool:
        fmt = MediaFormat(fmt)
        self.last_failure = None
        if fmt not in (MediaFormat.AV1, MediaFormat.WEBM) or not self.supports(fmt):
            logger.error("FFmpeg does not support %s encoding", fmt.value)
            self.last_failure = ErrorKind.UNSUPPORTED_FORMAT
            return False
        options = (options or VideoOptions()).merged_over(DEFAULT_OPTIONS[fmt])
        src, dst = Path(source), Path(destination)
        if fmt == MediaFormat.AV1:
            cmd = self.build_av1_command(src, dst, options)
        else:
            cmd = self.build_webm_command(src, dst, options)

        result = run_command(cmd, timeout=self.timeout)
        if result.timed_out:
            logger.error("%s conversion of %s exceeded %ss and was stopped", fmt.value.upper(), src, self.timeout)
            _discard(dst)
            self.last_failure = ErrorKind.TIMEOUT
            return False
        if result.exit_code != 0:
            tail = (result.stderr or result.stdout or "ffmpeg failed").strip()[-500:]
            logger.error("%s conversion failed (exit %s): %s", fmt.value.upper(), result.exit_code, tail)
            _discard(dst)
            self.last_failure = ErrorKind.CONVERSION_FAILED
            return False
        if not _output_written(dst):
            logger.error("%s file was not created at: %s", fmt.value.upper(), dst)
            _discard(dst)
            self.last_failure = ErrorKind.CONVERSION_FAILED
            return False
        return True

    def convert_to_av1(self, source: PathLike, destination: PathLike, options: Optional[VideoOptions] = None) -> bool:
        return self.convert(MediaFormat.AV1, source, destination, options)

    def convert_to_webm(self, source: PathLike, destination: PathLike, options: Optional[VideoOptions] = None) -> bool:
        return self.convert(MediaFormat.WEBM, source, destination, options)

    def metadata(self, source: PathLike) -> Optional[VideoMetadata]:
        cmd = [
            self.ffprobe_binary, "-v", "error",
            "-print_format", "json",
            "-show_format", "-show_streams",
            str(source),
        ]
        result = run_command(cmd, timeout=config.PROBE_TIMEOUT)
        if not result.ok:
            logger.error("Failed to get video metadata for %s: %s", source, result.stderr.strip()[:200])
            return None
        return parse_probe_output(result.stdout)


IMAGE_PROCESSORS: dict[ProcessorKind, type[ImageProcessor]] = {
    ProcessorKind.IMAGICK: WandProcessor,
    ProcessorKind.GD: PillowProcessor,
}


def build_image_processor(info: ProcessorInfo) -> Optional[ImageProcessor]:
    cls = IMAGE_PROCESSORS.get(info.kind)
    return cls(info) if info.available and cls is not None else None


def build_video_processor(info: ProcessorInfo) -> Optional[FFmpegProcessor]:
    if info.available and info.kind == ProcessorKind.FFMPEG and (info.av1 or info.webm):
        return FFmpegProcessor(info)
    return None
