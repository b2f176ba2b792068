"""Attachment-level conversion: pick formats, derive destinations, convert, and record the outcome."""
import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, Sequence, Union

from flux_media import config
from flux_media.conversion.models import ConversionResult, ConversionSettings, MediaFormat, MediaType, SuccessPolicy
from flux_media.conversion.service import ImageConverter, MediaConverter, VideoConverter, get_size_reduction
from flux_media.tracker import ConversionTracker

logger = logging.getLogger("flux_media.pipeline")

PathLike = Union[str, Path]


@dataclass
class MediaItem:
    attachment_id: str
    source_path: str


@dataclass
class BulkSummary:
    processed: int = 0
    converted: int = 0
    errors: int = 0
    skipped: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def _as_item(item) -> MediaItem:
    if isinstance(item, MediaItem):
        return item
    if isinstance(item, dict):
        return MediaItem(str(item["attachment_id"]), str(item["source_path"]))
    attachment_id, source_path = item
    return MediaItem(str(attachment_id), str(source_path))


def _batched(items: Sequence[MediaItem], size: int) -> Iterator[list[MediaItem]]:
    size = max(1, size)
    for i in range(0, len(items), size):
        yield list(items[i:i + size])


class ConversionPipeline:
    def __init__(
        self,
        image_converter: ImageConverter,
        video_converter: VideoConverter,
        tracker: ConversionTracker,
        settings_provider: Callable[[], ConversionSettings] = ConversionSettings,
        output_dir: Optional[PathLike] = None,
        media_root: Optional[PathLike] = None,
    ):
        self.image_converter = image_converter
        self.video_converter = video_converter
        self.tracker = tracker
        self.settings_provider = settings_provider
        self.output_dir = Path(output_dir) if output_dir else None
        self.media_root = Path(media_root) if media_root else None

    def converter_for(self, media_type: MediaType) -> MediaConverter:
        return self.image_converter if media_type == MediaType.IMAGE else self.video_converter

    def media_type_for(self, path: PathLike) -> Optional[MediaType]:
        if self.image_converter.is_supported_media(path):
            return MediaType.IMAGE
        if self.video_converter.is_supported_media(path):
            return MediaType.VIDEO
        return None

    def destinations_for(self, path: PathLike, formats: Iterable[MediaFormat]) -> dict[MediaFormat, Path]:
        """
        <source dir>/<stem>.<format>, or the same layout under output_dir.

        Sources below media_root keep their relative directory under output_dir,
        so same-named files from different folders never share a destination.
        AV1 lands in an MP4 container as <stem>.av1.mp4.
        """
        src = Path(path)
        directory = self._output_directory(src)
        destinations = {}
        for fmt in formats:
            fmt = MediaFormat(fmt)
            suffix = ".av1.mp4" if fmt == MediaFormat.AV1 else f".{fmt.value}"
            destinations[fmt] = directory / f"{src.stem}{suffix}"
        return destinations

    def _output_directory(self, src: Path) -> Path:
        if self.output_dir is None:
            return src.parent
        if self.media_root is not None:
            try:
                return self.output_dir / src.parent.relative_to(self.media_root)
            except ValueError:
                pass
        return self.output_dir

    @staticmethod
    def formats_for(media_type: MediaType, settings: ConversionSettings, converter: MediaConverter) -> list[MediaFormat]:
        """All enabled formats in hybrid mode, otherwise only the first one the backend can write."""
        enabled = settings.formats_for(media_type)
        if settings.hybrid_approach:
            return enabled
        info = converter.processor_info()
        for fmt in enabled:
            if info.supports(fmt):
                return [fmt]
        return enabled[:1]

    def convert_attachment(
        self,
        attachment_id,
        source_path: PathLike,
        formats: Optional[Sequence[Union[str, MediaFormat]]] = None,
        *,
        policy: SuccessPolicy = SuccessPolicy.ANY,
    ) -> ConversionResult:
        attachment_id = str(attachment_id)
        src = Path(source_path)
        media_type = self.media_type_for(src)
        if media_type is None:
            result = ConversionResult()
            result.add_failure(None, f"Unsupported media format: {src.suffix or src.name}")
            logger.warning("Skipping attachment %s: unsupported media %s", attachment_id, src)
            return result

        settings = self.settings_provider()
        converter = self.converter_for(media_type)
        if formats:
            requested = [MediaFormat(f) for f in formats]
        else:
            requested = self.formats_for(media_type, settings, converter)

        destinations = self.destinations_for(src, requested)
        for fmt, dest in list(destinations.items()):
            if dest == src:
                logger.info("Attachment %s is already %s, skipping that format", attachment_id, fmt.value)
                del destinations[fmt]

        started = time.monotonic()
        result = converter.process_media(src, destinations, settings, policy=policy)
        elapsed = time.monotonic() - started

        for fmt in destinations:
            if fmt in result.converted_files:
                converted = result.converted_files[fmt]
                recorded = self.tracker.record_success(
                    attachment_id, str(src), converted, fmt.value, get_size_reduction(src, converted),
                    result.durations.get(fmt, elapsed),
                )
            else:
                message = result.failures.get(fmt) or (result.errors[0] if result.errors else "conversion failed")
                recorded = self.tracker.record_failure(attachment_id, str(src), fmt.value, message)
            if not recorded:
                logger.warning("Conversion of attachment %s to %s was not recorded", attachment_id, fmt.value)

        logger.info(
            "Attachment %s: converted %s in %.2fs",
            attachment_id,
            ", ".join(f.value for f in result.converted_formats) or "nothing",
            elapsed,
        )
        return result

    def convert_many(
        self,
        items: Iterable,
        batch_size: int = config.DEFAULT_BATCH_SIZE,
        *,
        skip_converted: bool = True,
        policy: SuccessPolicy = SuccessPolicy.ANY,
    ) -> BulkSummary:
        """Convert items batch by batch. One item failing never stops the run."""
        summary = BulkSummary()
        pending = [_as_item(i) for i in items]
        for number, batch in enumerate(_batched(pending, batch_size), start=1):
            logger.info("Bulk conversion batch %s: %s items", number, len(batch))
            for item in batch:
                summary.processed += 1
                if not Path(item.source_path).is_file():
                    summary.errors += 1
                    logger.error("Bulk conversion: source missing for attachment %s: %s", item.attachment_id, item.source_path)
                    continue
                if self.media_type_for(item.source_path) is None:
                    summary.skipped += 1
                    continue
                if skip_converted and self.tracker.has_conversion(item.attachment_id):
                    summary.skipped += 1
                    continue
                try:
                    result = self.convert_attachment(item.attachment_id, item.source_path, policy=policy)
                except Exception as e:
                    summary.errors += 1
                    logger.exception("Bulk conversion exception for attachment %s: %s", item.attachment_id, e)
                    continue
                if result.success:
                    summary.converted += 1
                else:
                    summary.errors += 1
                    logger.error("Bulk conversion failed for attachment %s: %s", item.attachment_id, ", ".join(result.errors))
        logger.info(
            "Bulk conversion finished: %s processed, %s converted, %s errors, %s skipped",
            summary.processed,
            summary.converted,
            summary.errors,
            summary.skipped,
        )
        return summary

    def discover_media(self, root: PathLike) -> list[MediaItem]:
        """Supported media under root, excluding files that are outputs of other sources there."""
        base = Path(root)
        if not base.is_dir():
            return []
        candidates = sorted(p for p in base.rglob("*") if p.is_file() and self.media_type_for(p) is not None)
        outputs = set()
        for path in candidates:
            media_type = self.media_type_for(path)
            outputs.update(d for d in self.destinations_for(path, self.converter_for(media_type).get_supported_formats()).values() if d != path)
        return [MediaItem(p.relative_to(base).as_posix(), str(p)) for p in candidates if p not in outputs]

    def clear_all(self) -> tuple[int, int]:
        """Delete every converted file the tracker knows about, then every record."""
        files_deleted = 0
        for converted in self.tracker.converted_paths():
            path = Path(converted)
            if not path.is_file():
                continue
            try:
                path.unlink()
                files_deleted += 1
            except OSError as e:
                logger.warning("Failed to delete converted file %s: %s", path, e)
        records_deleted = self.tracker.purge()
        logger.info("Cleared %s records and %s converted files", records_deleted, files_deleted)
        return records_deleted, files_deleted
