"""Conversion tracking: one append-only row per (attachment, format) attempt, plus statistics over them."""
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from flux_media.db import dialect_of, get_engine, session

logger = logging.getLogger("flux_media.tracker")

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

DateBound = Union[datetime, date, str, None]


class RecordStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """UTC text timestamp whose lexical order is chronological order."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment.strftime(TIMESTAMP_FORMAT)


def _date_bound(value: DateBound, end_of_day: bool) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        date_only = len(value.strip()) == 10
        try:
            value = datetime.fromisoformat(value.strip())
        except ValueError:
            logger.warning("Ignoring invalid date filter: %r", value)
            return None
        if date_only:
            value = value.date()
    if isinstance(value, datetime):
        return format_timestamp(value)
    return format_timestamp(datetime.combine(value, time.max if end_of_day else time.min))


@dataclass
class ConversionRecord:
    id: int
    attachment_id: str
    original_path: str
    converted_path: str
    format: str
    status: str
    size_reduction_percent: float
    processing_time_seconds: int
    original_size: int
    converted_size: int
    error_message: Optional[str]
    created_at: str

    @classmethod
    def from_row(cls, row) -> "ConversionRecord":
        m = row._mapping
        return cls(
            id=int(m["id"]),
            attachment_id=str(m["attachment_id"]),
            original_path=m["original_path"],
            converted_path=m["converted_path"] or "",
            format=m["format"],
            status=m["status"],
            size_reduction_percent=float(m["size_reduction_percent"] or 0.0),
            processing_time_seconds=int(m["processing_time_seconds"] or 0),
            original_size=int(m["original_size"] or 0),
            converted_size=int(m["converted_size"] or 0),
            error_message=m["error_message"],
            created_at=m["created_at"],
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Statistics:
    total_conversions: int = 0
    successful_conversions: int = 0
    failed_conversions: int = 0
    success_rate: float = 0.0
    average_size_reduction: float = 0.0
    total_space_saved: int = 0
    conversions_by_format: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


_RECORD_COLUMNS = (
    "id, attachment_id, original_path, converted_path, format, status, size_reduction_percent, "
    "processing_time_seconds, original_size, converted_size, error_message, created_at"
)


class ConversionTracker:
    """Owns the conversion_records table. Writes are best effort: storage errors are logged and reported as False."""

    def __init__(self, engine: Optional[Engine] = None, clock: Callable[[], datetime] = _utcnow):
        self._engine = engine
        self._clock = clock

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    def _insert(self, params: dict) -> bool:
        params["created_at"] = format_timestamp(self._clock())
        try:
            with session(self.engine) as conn:
                conn.execute(
                    text("""
                        INSERT INTO conversion_records (attachment_id, original_path, converted_path, format, status, size_reduction_percent, processing_time_seconds, original_size, converted_size, error_message, created_at)
                        VALUES (:attachment_id, :original_path, :converted_path, :format, :status, :size_reduction_percent, :processing_time_seconds, :original_size, :converted_size, :error_message, :created_at)
                    """),
                    params,
                )
        except SQLAlchemyError as e:
            logger.error("Failed to record %s conversion for attachment %s: %s", params["format"], params["attachment_id"], e)
            return False
        return True

    def record_success(
        self,
        attachment_id: Any,
        original_path: str,
        converted_path: str,
        format: str,
        size_reduction: float,
        processing_time: float,
    ) -> bool:
        return self._insert({
            "attachment_id": str(attachment_id),
            "original_path": str(original_path),
            "converted_path": str(converted_path),
            "format": str(getattr(format, "value", format)),
            "status": RecordStatus.SUCCESS.value,
            "size_reduction_percent": float(size_reduction),
            "processing_time_seconds": int(round(processing_time)),
            "original_size": os.path.getsize(original_path) if os.path.isfile(original_path) else 0,
            "converted_size": os.path.getsize(converted_path) if os.path.isfile(converted_path) else 0,
            "error_message": None,
        })

    def record_failure(self, attachment_id: Any, original_path: str, format: str, error_message: str) -> bool:
        return self._insert({
            "attachment_id": str(attachment_id),
            "original_path": str(original_path),
            "converted_path": "",
            "format": str(getattr(format, "value", format)),
            "status": RecordStatus.FAILED.value,
            "size_reduction_percent": 0.0,
            "processing_time_seconds": 0,
            "original_size": os.path.getsize(original_path) if os.path.isfile(original_path) else 0,
            "converted_size": 0,
            "error_message": error_message,
        })

    @staticmethod
    def _where(filters: Optional[Mapping[str, Any]]) -> tuple[str, dict]:
        filters = filters or {}
        clauses: list[str] = []
        params: dict = {}
        if filters.get("format"):
            clauses.append("format = :format")
            params["format"] = str(getattr(filters["format"], "value", filters["format"]))
        if filters.get("status"):
            clauses.append("status = :status")
            params["status"] = str(getattr(filters["status"], "value", filters["status"]))
        date_from = _date_bound(filters.get("date_from"), end_of_day=False)
        if date_from:
            clauses.append("created_at >= :date_from")
            params["date_from"] = date_from
        date_to = _date_bound(filters.get("date_to"), end_of_day=True)
        if date_to:
            clauses.append("created_at <= :date_to")
            params["date_to"] = date_to
        return (" WHERE " + " AND ".join(clauses)) if clauses else "", params

    def get_statistics(self, filters: Optional[Mapping[str, Any]] = None) -> Statistics:
        """Aggregate statistics over the records matching filters (format, status, date_from, date_to)."""
        where, params = self._where(filters)
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    text(f"""
                        SELECT
                            COUNT(*) AS total,
                            COALESCE(SUM(CASE WHEN status = 'success' THEN 1 ELSE 0 END), 0) AS successful,
                            COALESCE(AVG(CASE WHEN status = 'success' THEN size_reduction_percent END), 0) AS avg_reduction,
                            COALESCE(SUM(CASE WHEN status = 'success' AND original_size > converted_size
                                              THEN original_size - converted_size ELSE 0 END), 0) AS space_saved
                        FROM conversion_records{where}
                    """),
                    params,
                ).fetchone()
                by_format = conn.execute(
                    text(f"SELECT format, COUNT(*) FROM conversion_records{where} GROUP BY format"),
                    params,
                ).fetchall()
        except SQLAlchemyError as e:
            logger.error("Failed to compute conversion statistics: %s", e)
            return Statistics()

        total = int(row[0] or 0) if row else 0
        if total == 0:
            return Statistics()
        successful = int(row[1])
        return Statistics(
            total_conversions=total,
            successful_conversions=successful,
            failed_conversions=total - successful,
            success_rate=round(successful / total * 100, 2),
            average_size_reduction=round(float(row[2]), 2),
            total_space_saved=int(row[3]),
            conversions_by_format={r[0]: int(r[1]) for r in by_format},
        )

    def get_recent_conversions(self, limit: int = 10) -> list[ConversionRecord]:
        """Newest first."""
        limit = max(0, int(limit))
        if dialect_of(self.engine) == "mssql":
            query = f"SELECT TOP (:lim) {_RECORD_COLUMNS} FROM conversion_records ORDER BY created_at DESC, id DESC"
        else:
            query = f"SELECT {_RECORD_COLUMNS} FROM conversion_records ORDER BY created_at DESC, id DESC LIMIT :lim"
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(text(query), {"lim": limit}).fetchall()
        except SQLAlchemyError as e:
            logger.error("Failed to load recent conversions: %s", e)
            return []
        return [ConversionRecord.from_row(r) for r in rows]

    def get_attachment_conversions(self, attachment_id: Any) -> list[ConversionRecord]:
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    text(f"SELECT {_RECORD_COLUMNS} FROM conversion_records WHERE attachment_id = :aid ORDER BY created_at DESC, id DESC"),
                    {"aid": str(attachment_id)},
                ).fetchall()
        except SQLAlchemyError as e:
            logger.error("Failed to load conversions for attachment %s: %s", attachment_id, e)
            return []
        return [ConversionRecord.from_row(r) for r in rows]

    def has_conversion(self, attachment_id: Any, format: Optional[str] = None) -> bool:
        """True if the attachment has at least one successful conversion (to format, when given)."""
        query = "SELECT COUNT(*) FROM conversion_records WHERE attachment_id = :aid AND status = 'success'"
        params = {"aid": str(attachment_id)}
        if format:
            query += " AND format = :format"
            params["format"] = str(getattr(format, "value", format))
        try:
            with self.engine.connect() as conn:
                count = conn.execute(text(query), params).scalar()
        except SQLAlchemyError as e:
            logger.error("Failed to look up conversions for attachment %s: %s", attachment_id, e)
            return False
        return int(count or 0) > 0

    def converted_paths(self) -> list[str]:
        """Distinct output paths of every successful conversion."""
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    text("SELECT DISTINCT converted_path FROM conversion_records WHERE status = 'success' AND converted_path <> ''")
                ).fetchall()
        except SQLAlchemyError as e:
            logger.error("Failed to load converted paths: %s", e)
            return []
        return [r[0] for r in rows]

    def delete_attachment_records(self, attachment_id: Any, formats: Optional[Sequence[str]] = None) -> int:
        params: dict = {"aid": str(attachment_id)}
        query = "DELETE FROM conversion_records WHERE attachment_id = :aid"
        if formats:
            names = []
            for i, fmt in enumerate(formats):
                params[f"f{i}"] = str(getattr(fmt, "value", fmt))
                names.append(f":f{i}")
            query += f" AND format IN ({', '.join(names)})"
        try:
            with session(self.engine) as conn:
                deleted = conn.execute(text(query), params).rowcount
        except SQLAlchemyError as e:
            logger.error("Failed to delete records for attachment %s: %s", attachment_id, e)
            return 0
        return int(deleted or 0)

    def cleanup_old_records(self, retention_days: int) -> int:
        """Delete records created before now - retention_days. Returns the number removed."""
        cutoff = format_timestamp(self._clock() - timedelta(days=retention_days))
        try:
            with session(self.engine) as conn:
                deleted = conn.execute(
                    text("DELETE FROM conversion_records WHERE created_at < :cutoff"),
                    {"cutoff": cutoff},
                ).rowcount
        except SQLAlchemyError as e:
            logger.error("Failed to clean up conversion records older than %s days: %s", retention_days, e)
            return 0
        deleted = int(deleted or 0)
        if deleted:
            logger.info("Removed %s conversion records older than %s days", deleted, retention_days)
        return deleted

    def purge(self) -> int:
        """Delete every conversion record."""
        try:
            with session(self.engine) as conn:
                deleted = conn.execute(text("DELETE FROM conversion_records")).rowcount
        except SQLAlchemyError as e:
            logger.error("Failed to purge conversion records: %s", e)
            return 0
        logger.info("Purged %s conversion records", deleted)
        return int(deleted or 0)
