"""Persisted conversion settings, one JSON value per option name."""
import json
import logging
from dataclasses import fields
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine

from flux_media.conversion.models import ConversionSettings
from flux_media.db import dialect_of, get_engine, session

logger = logging.getLogger("flux_media.options")

OPTION_NAMES = tuple(f.name for f in fields(ConversionSettings))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class OptionsStore:
    """Reads and writes ConversionSettings; stored values override the configured defaults."""

    def __init__(self, engine: Optional[Engine] = None):
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    def _stored(self) -> dict:
        with self.engine.connect() as conn:
            rows = conn.execute(text("SELECT name, value_json FROM options")).fetchall()
        values = {}
        for name, value_json in rows:
            if name not in OPTION_NAMES:
                continue
            try:
                values[name] = json.loads(value_json)
            except ValueError:
                logger.warning("Ignoring unreadable stored option %s", name)
        return values

    def get(self) -> ConversionSettings:
        return ConversionSettings.from_mapping(self._stored())

    def _upsert(self, conn, params: dict) -> None:
        dialect = dialect_of(self.engine)
        if dialect == "sqlite":
            conn.execute(
                text("INSERT OR REPLACE INTO options (name, value_json, updated_at) VALUES (:name, :value_json, :now)"),
                params,
            )
        elif dialect == "mysql":
            conn.execute(
                text("""
                    INSERT INTO options (name, value_json, updated_at) VALUES (:name, :value_json, :now)
                    ON DUPLICATE KEY UPDATE value_json = :value_json, updated_at = :now
                """),
                params,
            )
        else:
            conn.execute(
                text("""
                    MERGE options AS t USING (SELECT :name AS name) AS s ON t.name = s.name
                    WHEN MATCHED THEN UPDATE SET value_json = :value_json, updated_at = :now
                    WHEN NOT MATCHED THEN INSERT (name, value_json, updated_at) VALUES (:name, :value_json, :now);
                """),
                params,
            )

    def update(self, values: Mapping[str, Any]) -> ConversionSettings:
        """Save the given options (unknown names are ignored) and return the resulting settings."""
        merged = self.get().to_dict()
        merged.update({k: v for k, v in values.items() if k in OPTION_NAMES})
        # Round-trip through the dataclass so formats are normalised before storage
        settings = ConversionSettings.from_mapping(merged)
        stored = settings.to_dict()
        now = _now_iso()
        with session(self.engine) as conn:
            for name in OPTION_NAMES:
                if name in values:
                    self._upsert(conn, {"name": name, "value_json": json.dumps(stored[name]), "now": now})
        logger.info("Options updated: %s", ", ".join(sorted(k for k in values if k in OPTION_NAMES)) or "none")
        return settings
