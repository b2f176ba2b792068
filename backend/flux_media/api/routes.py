"""API routes for status, options, conversions, logs and cleanup."""
import logging
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException, Query

from flux_media import config
from flux_media.api.schemas import BulkRequest, CleanupRecordsRequest, OptionsUpdate, StartConversionRequest
from flux_media.conversion import probe
from flux_media.conversion.models import MediaFormat
from flux_media.conversion.service import ImageConverter, VideoConverter
from flux_media.db import db_kind
from flux_media.logs import log_levels, read_logs
from flux_media.options import OptionsStore
from flux_media.pipeline import ConversionPipeline, MediaItem
from flux_media.tracker import ConversionTracker

logger = logging.getLogger("flux_media.api")
router = APIRouter(prefix="/api", tags=["flux-media"])

_image_converter: Optional[ImageConverter] = None
_video_converter: Optional[VideoConverter] = None
_tracker: Optional[ConversionTracker] = None
_options_store: Optional[OptionsStore] = None


def get_image_converter() -> ImageConverter:
    global _image_converter
    if _image_converter is None:
        _image_converter = ImageConverter()
    return _image_converter


def get_video_converter() -> VideoConverter:
    global _video_converter
    if _video_converter is None:
        _video_converter = VideoConverter()
    return _video_converter


def reset_converters() -> None:
    """Drop the cached converters so the next request selects backends from a fresh probe."""
    global _image_converter, _video_converter
    _image_converter = None
    _video_converter = None


def get_tracker() -> ConversionTracker:
    global _tracker
    if _tracker is None:
        _tracker = ConversionTracker()
    return _tracker


def get_options_store() -> OptionsStore:
    global _options_store
    if _options_store is None:
        _options_store = OptionsStore()
    return _options_store


def get_pipeline(
    image_converter: ImageConverter = Depends(get_image_converter),
    video_converter: VideoConverter = Depends(get_video_converter),
    tracker: ConversionTracker = Depends(get_tracker),
    store: OptionsStore = Depends(get_options_store),
) -> ConversionPipeline:
    return ConversionPipeline(
        image_converter, video_converter, tracker, store.get, output_dir=config.OUTPUT_DIR, media_root=config.MEDIA_DIR
    )


def envelope(data: Any = None, message: str = "", success: bool = True) -> dict:
    return {
        "success": success,
        "data": data,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/status")
def get_status(
    image_converter: ImageConverter = Depends(get_image_converter),
    video_converter: VideoConverter = Depends(get_video_converter),
    tracker: ConversionTracker = Depends(get_tracker),
):
    image_info = image_converter.processor_info()
    video_info = video_converter.processor_info()
    return envelope({
        "image_processor": image_info.to_dict(),
        "video_processor": video_info.to_dict(),
        "supported_formats": {
            "image": [f.value for f in image_converter.get_supported_formats() if image_info.supports(f)],
            "video": [f.value for f in video_converter.get_supported_formats() if video_info.supports(f)],
        },
        "database": db_kind(tracker.engine),
        "version": config.VERSION,
    })


@router.get("/options")
def get_options(store: OptionsStore = Depends(get_options_store)):
    return envelope(store.get().to_dict())


@router.post("/options")
def update_options(body: OptionsUpdate, store: OptionsStore = Depends(get_options_store)):
    values = body.model_dump(exclude_unset=True, exclude_none=True)
    settings = store.update(values)
    probe.capabilities.refresh()
    reset_converters()
    return envelope(settings.to_dict(), "Options saved")


@router.get("/conversions/stats")
def conversion_stats(
    format: Optional[MediaFormat] = Query(None),
    status: Optional[Literal["success", "failed"]] = Query(None),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    tracker: ConversionTracker = Depends(get_tracker),
):
    filters = {"format": format, "status": status, "date_from": date_from, "date_to": date_to}
    return envelope(tracker.get_statistics(filters).to_dict())


@router.get("/conversions/recent")
def recent_conversions(
    limit: int = Query(10, ge=1, le=100),
    tracker: ConversionTracker = Depends(get_tracker),
):
    return envelope([r.to_dict() for r in tracker.get_recent_conversions(limit)])


@router.post("/conversions/start")
def start_conversion(body: StartConversionRequest, pipeline: ConversionPipeline = Depends(get_pipeline)):
    if not Path(body.source_path).is_file():
        raise HTTPException(404, f"Source file not found: {body.source_path}")
    result = pipeline.convert_attachment(body.attachment_id, body.source_path, body.formats, policy=body.policy)
    if result.success:
        message = "Converted to " + ", ".join(f.value for f in result.converted_formats)
    else:
        message = "Conversion failed"
    return envelope(result.to_dict(), message, success=result.success)


@router.post("/conversions/bulk", status_code=202)
def bulk_conversion(
    background_tasks: BackgroundTasks,
    body: Optional[BulkRequest] = Body(None),
    pipeline: ConversionPipeline = Depends(get_pipeline),
):
    body = body or BulkRequest()
    if body.items:
        items = [MediaItem(i.attachment_id, i.source_path) for i in body.items]
    else:
        items = pipeline.discover_media(config.MEDIA_DIR)
    background_tasks.add_task(pipeline.convert_many, items, body.batch_size, skip_converted=body.skip_converted)
    logger.info("Bulk conversion queued: %s items (batch size %s)", len(items), body.batch_size)
    return envelope({"queued": len(items), "batch_size": body.batch_size}, "Bulk conversion queued")


@router.delete("/files/delete/{attachment_id}/{format}")
def delete_converted_file(attachment_id: str, format: str, tracker: ConversionTracker = Depends(get_tracker)):
    try:
        fmt = MediaFormat(format.lower())
    except ValueError:
        raise HTTPException(400, f"Unsupported format: {format}")
    paths = {
        r.converted_path
        for r in tracker.get_attachment_conversions(attachment_id)
        if r.format == fmt.value and r.converted_path
    }
    files_deleted = 0
    for converted in paths:
        path = Path(converted)
        if not path.is_file():
            continue
        try:
            path.unlink()
            files_deleted += 1
        except OSError as e:
            logger.warning("Failed to delete converted file %s: %s", path, e)
    records_deleted = tracker.delete_attachment_records(attachment_id, [fmt])
    logger.info("Deleted %s for attachment %s: %s files, %s records", fmt.value, attachment_id, files_deleted, records_deleted)
    return envelope({"files_deleted": files_deleted, "records_deleted": records_deleted}, f"Deleted {fmt.value} output")


@router.get("/logs")
def get_logs(
    level: Optional[Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    search: Optional[str] = Query(None),
):
    entries = read_logs(config.LOG_FILE, level=level, search=search, limit=limit)
    return envelope({"logs": [e.to_dict() for e in entries], "levels": log_levels(entries), "total": len(entries)})


@router.post("/cleanup/temp-files")
def cleanup_temp_files(image_converter: ImageConverter = Depends(get_image_converter)):
    ok = image_converter.cleanup_temp_files(config.TEMP_DIR)
    return envelope({"cleaned": ok}, "Temporary files removed" if ok else "Some temporary files could not be removed", success=ok)


@router.post("/cleanup/old-records")
def cleanup_old_records(
    body: Optional[CleanupRecordsRequest] = Body(None),
    tracker: ConversionTracker = Depends(get_tracker),
):
    body = body or CleanupRecordsRequest()
    deleted = tracker.cleanup_old_records(body.retention_days)
    return envelope({"deleted": deleted, "retention_days": body.retention_days}, f"Removed {deleted} old records")
