"""Image and video converter services: backend selection, option merging, hybrid conversion."""
import logging
import os
import time
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from flux_media import config
from flux_media.conversion import probe
from flux_media.conversion.models import (
    DEFAULT_OPTIONS,
    IMAGE_FORMATS,
    VIDEO_FORMATS,
    ConversionOptions,
    ConversionResult,
    ConversionSettings,
    ErrorKind,
    ImageOptions,
    MediaFormat,
    MediaType,
    ProcessorInfo,
    SuccessPolicy,
    VideoMetadata,
    VideoOptions,
)
from flux_media.conversion.processors import (
    FFmpegProcessor,
    ImageProcessor,
    build_image_processor,
    build_video_processor,
)

logger = logging.getLogger("flux_media.service")

PathLike = Union[str, Path]
OptionsArg = Union[ConversionOptions, Mapping[str, Any], None]

ERROR_MESSAGES = {
    ErrorKind.NO_PROCESSOR_AVAILABLE: "no processor available",
    ErrorKind.UNSUPPORTED_FORMAT: "format not supported by the selected processor",
    ErrorKind.CONVERSION_FAILED: "conversion failed",
    ErrorKind.SOURCE_NOT_FOUND: "source file not found",
    ErrorKind.TIMEOUT: "conversion timed out",
    ErrorKind.STORAGE_FAILURE: "could not write destination",
}


def get_size_reduction(original_path: PathLike, converted_path: PathLike) -> float:
    """Percentage saved by converted over original; 0.0 when either file is missing or the original is empty."""
    if not os.path.isfile(original_path) or not os.path.isfile(converted_path):
        return 0.0
    original_size = os.path.getsize(original_path)
    if original_size == 0:
        return 0.0
    converted_size = os.path.getsize(converted_path)
    return (original_size - converted_size) / original_size * 100


class MediaConverter:
    """Shared behaviour of the image and video converters."""

    media_type: MediaType
    target_formats: tuple[MediaFormat, ...] = ()
    source_extensions: frozenset[str] = frozenset()

    def __init__(self, processor=None):
        self._processor = processor if processor is not None else self._select_processor()
        self.last_error: Optional[ErrorKind] = None
        if self._processor is None:
            logger.warning("%s conversion unavailable: no usable processor", self.media_type.value.capitalize())
        else:
            info = self._processor.info()
            logger.info(
                "%s processor selected: %s %s (%s)",
                self.media_type.value.capitalize(),
                info.kind.value,
                info.version,
                ", ".join(f.value for f in self.target_formats if info.supports(f)) or "no formats",
            )

    def _select_processor(self):
        raise NotImplementedError

    def _options_type(self):
        raise NotImplementedError

    def is_available(self) -> bool:
        return self._processor is not None

    def processor_info(self) -> ProcessorInfo:
        if self._processor is None:
            return ProcessorInfo.unavailable()
        return self._processor.info()

    def get_type(self) -> MediaType:
        return self.media_type

    def get_supported_formats(self) -> list[MediaFormat]:
        return list(self.target_formats)

    def is_format_supported(self, fmt: Union[str, MediaFormat]) -> bool:
        try:
            return MediaFormat(fmt) in self.target_formats
        except ValueError:
            return False

    def is_supported_media(self, path: PathLike) -> bool:
        return Path(path).suffix.lower() in self.source_extensions

    @staticmethod
    def get_size_reduction(original_path: PathLike, converted_path: PathLike) -> float:
        return get_size_reduction(original_path, converted_path)

    def _fail(self, kind: ErrorKind, message: str, *args) -> bool:
        self.last_error = kind
        logger.error(message, *args)
        return False

    def _merge_options(self, fmt: MediaFormat, options: OptionsArg) -> ConversionOptions:
        options_type = self._options_type()
        if options is None:
            options = options_type()
        elif not isinstance(options, options_type):
            options = options_type.from_mapping(options)
        return options.merged_over(DEFAULT_OPTIONS[fmt])

    def convert(self, fmt: Union[str, MediaFormat], source: PathLike, destination: PathLike, options: OptionsArg = None) -> bool:
        """Convert source into one format. Returns False (never raises) on any failure; see last_error."""
        self.last_error = None
        try:
            fmt = MediaFormat(fmt)
        except ValueError:
            return self._fail(ErrorKind.UNSUPPORTED_FORMAT, "Unknown target format: %s", fmt)
        if fmt not in self.target_formats:
            return self._fail(ErrorKind.UNSUPPORTED_FORMAT, "%s is not a %s format", fmt.value, self.media_type.value)
        if self._processor is None:
            return self._fail(ErrorKind.NO_PROCESSOR_AVAILABLE, "No %s processor available for %s conversion", self.media_type.value, fmt.value.upper())
        if not Path(source).is_file():
            return self._fail(ErrorKind.SOURCE_NOT_FOUND, "Source file not found: %s", source)
        if not self._processor.supports(fmt):
            return self._fail(ErrorKind.UNSUPPORTED_FORMAT, "%s processor cannot write %s", self._processor.info().kind.value, fmt.value.upper())

        merged = self._merge_options(fmt, options)
        try:
            ok = self._processor.convert(fmt, source, destination, merged)
        except Exception as e:
            return self._fail(ErrorKind.CONVERSION_FAILED, "%s conversion error for %s: %s", fmt.value.upper(), source, e)
        if not ok:
            kind = getattr(self._processor, "last_failure", None) or ErrorKind.CONVERSION_FAILED
            return self._fail(kind, "%s conversion failed for: %s", fmt.value.upper(), source)
        logger.info("Converted %s -> %s", Path(source).name, Path(destination).name)
        return True

    def process_media(
        self,
        source: PathLike,
        destinations: Mapping[Union[str, MediaFormat], PathLike],
        settings: Optional[ConversionSettings] = None,
        *,
        policy: SuccessPolicy = SuccessPolicy.ANY,
    ) -> ConversionResult:
        """
        Convert one source into every format in destinations (format -> path).

        With SuccessPolicy.ANY the result succeeds when at least one format
        converted, so callers can serve whichever variants exist. With
        SuccessPolicy.ALL every requested format must convert.
        """
        result = ConversionResult()
        src = Path(source)
        if not src.is_file():
            self.last_error = ErrorKind.SOURCE_NOT_FOUND
            result.add_failure(None, "Source file not found")
            logger.error("Source file not found: %s", src)
            return result
        if not self.is_supported_media(src):
            self.last_error = ErrorKind.UNSUPPORTED_FORMAT
            result.add_failure(None, f"Unsupported {self.media_type.value} format: {src.suffix or src.name}")
            logger.error("Unsupported %s format: %s", self.media_type.value, src)
            return result
        if not destinations:
            result.add_failure(None, "No target formats requested")
            return result

        settings = settings or ConversionSettings()
        for key, destination in destinations.items():
            try:
                fmt = MediaFormat(key)
            except ValueError:
                result.add_failure(None, f"{key}: {ERROR_MESSAGES[ErrorKind.UNSUPPORTED_FORMAT]}")
                continue
            dest = Path(destination)
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.error("Destination directory is not writable: %s (%s)", dest.parent, e)
                result.add_failure(fmt, f"{fmt.value}: {ERROR_MESSAGES[ErrorKind.STORAGE_FAILURE]}")
                continue
            started = time.monotonic()
            converted = self.convert(fmt, src, dest, settings.options_for(fmt))
            result.durations[fmt] = time.monotonic() - started
            if converted:
                result.add_success(fmt, str(dest))
            else:
                kind = self.last_error or ErrorKind.CONVERSION_FAILED
                result.add_failure(fmt, f"{fmt.value}: {ERROR_MESSAGES[kind]}")

        if policy == SuccessPolicy.ALL:
            result.success = bool(result.converted_formats) and not result.errors
        else:
            result.success = bool(result.converted_formats)

        if not result.converted_formats:
            logger.error("Conversion failed for all requested formats: %s", src)
        elif result.errors:
            logger.warning("Partial conversion success for %s: %s", src, "; ".join(result.errors))
        return result

    def cleanup_temp_files(self, directory: PathLike) -> bool:
        """Delete regular files directly inside directory. True when nothing was left behind."""
        temp_dir = Path(directory)
        if not temp_dir.is_dir():
            return True
        success = True
        for entry in temp_dir.iterdir():
            if not entry.is_file():
                continue
            try:
                entry.unlink()
            except OSError as e:
                logger.warning("Failed to delete temporary file %s: %s", entry, e)
                success = False
        return success


class ImageConverter(MediaConverter):
    """WebP/AVIF conversion through ImageMagick (preferred) or Pillow."""

    media_type = MediaType.IMAGE
    target_formats = IMAGE_FORMATS
    source_extensions = frozenset(config.IMAGE_EXTENSIONS)

    def __init__(self, processor: Optional[ImageProcessor] = None):
        super().__init__(processor)

    def _select_processor(self) -> Optional[ImageProcessor]:
        return build_image_processor(probe.probe_image())

    def _options_type(self):
        return ImageOptions

    def convert_to_webp(self, source: PathLike, destination: PathLike, options: OptionsArg = None) -> bool:
        return self.convert(MediaFormat.WEBP, source, destination, options)

    def convert_to_avif(self, source: PathLike, destination: PathLike, options: OptionsArg = None) -> bool:
        return self.convert(MediaFormat.AVIF, source, destination, options)


class VideoConverter(MediaConverter):
    """AV1/WebM conversion through the FFmpeg command line."""

    media_type = MediaType.VIDEO
    target_formats = VIDEO_FORMATS
    source_extensions = frozenset(config.VIDEO_EXTENSIONS)

    def __init__(self, processor: Optional[FFmpegProcessor] = None):
        super().__init__(processor)

    def _select_processor(self) -> Optional[FFmpegProcessor]:
        return build_video_processor(probe.probe_video())

    def _options_type(self):
        return VideoOptions

    def convert_to_av1(self, source: PathLike, destination: PathLike, options: OptionsArg = None) -> bool:
        return self.convert(MediaFormat.AV1, source, destination, options)

    def convert_to_webm(self, source: PathLike, destination: PathLike, options: OptionsArg = None) -> bool:
        return self.convert(MediaFormat.WEBM, source, destination, options)

    def metadata(self, source: PathLike) -> Optional[VideoMetadata]:
        if self._processor is None:
            return None
        return self._processor.metadata(source)
