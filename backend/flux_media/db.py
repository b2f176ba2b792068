"""Database layer. SQLite by default; set DATABASE_URL for MySQL (e.g. localhost:3306) or SQL Server.
Startup ensures required tables exist; on connection failure logs verbosely and falls back to SQLite or in-memory so the service can start."""
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError

from flux_media import config as app_config

logger = logging.getLogger("flux_media.db")

_engine: Optional[Engine] = None

# Tables required for the service (created at startup if missing)
REQUIRED_TABLES = ("conversion_records", "options")

RECORD_INDEXES = {
    "idx_conversion_records_attachment": "attachment_id",
    "idx_conversion_records_format": "format",
    "idx_conversion_records_status": "status",
    "idx_conversion_records_created": "created_at",
}


def dialect_of(engine: Engine) -> str:
    return engine.dialect.name


def db_kind(engine: Engine) -> str:
    name = dialect_of(engine)
    if name == "mysql":
        return "MySQL"
    if name == "sqlite":
        return "SQLite"
    if name == "mssql":
        return "SQL Server"
    return name


def make_engine(url: str) -> Engine:
    kwargs = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **kwargs)


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = make_engine(app_config.DATABASE_URL)
        logger.info("Database engine created (%s)", db_kind(_engine))
    return _engine


def _create_sqlite_tables(conn: Connection) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS conversion_records (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            attachment_id TEXT NOT NULL,
            original_path TEXT NOT NULL,
            converted_path TEXT NOT NULL DEFAULT '',
            format TEXT NOT NULL,
            status TEXT NOT NULL,
            size_reduction_percent REAL NOT NULL DEFAULT 0,
            processing_time_seconds INTEGER NOT NULL DEFAULT 0,
            original_size INTEGER NOT NULL DEFAULT 0,
            converted_size INTEGER NOT NULL DEFAULT 0,
            error_message TEXT,
            created_at TEXT NOT NULL
        )
    """))
    for name, column in RECORD_INDEXES.items():
        conn.execute(text(f"CREATE INDEX IF NOT EXISTS {name} ON conversion_records ({column})"))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS options (
            name TEXT PRIMARY KEY,
            value_json TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """))
    conn.commit()


def _create_mysql_tables(conn: Connection) -> None:
    indexes = ",\n".join(f"INDEX {name} ({column})" for name, column in RECORD_INDEXES.items())
    conn.execute(text(f"""
        CREATE TABLE IF NOT EXISTS conversion_records (
            id BIGINT AUTO_INCREMENT PRIMARY KEY,
            attachment_id VARCHAR(255) NOT NULL,
            original_path VARCHAR(1024) NOT NULL,
            converted_path VARCHAR(1024) NOT NULL DEFAULT '',
            format VARCHAR(20) NOT NULL,
            status VARCHAR(20) NOT NULL,
            size_reduction_percent DOUBLE NOT NULL DEFAULT 0,
            processing_time_seconds INT NOT NULL DEFAULT 0,
            original_size BIGINT NOT NULL DEFAULT 0,
            converted_size BIGINT NOT NULL DEFAULT 0,
            error_message TEXT,
            created_at VARCHAR(32) NOT NULL,
            {indexes}
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS options (
            name VARCHAR(191) PRIMARY KEY,
            value_json TEXT NOT NULL,
            updated_at VARCHAR(32) NOT NULL
        )
    """))
    conn.commit()


def _create_sqlserver_tables(conn: Connection) -> None:
    conn.execute(text("""
        IF NOT EXISTS (SELECT * FROM sys.tables WHERE name = 'conversion_records')
        CREATE TABLE conversion_records (
            id BIGINT IDENTITY(1,1) PRIMARY KEY,
            attachment_id NVARCHAR(255) NOT NULL,
            original_path NVARCHAR(1024) NOT NULL,
            converted_path NVARCHAR(1024) NOT NULL DEFAULT '',
            format NVARCHAR(20) NOT NULL,
            status NVARCHAR(20) NOT NULL,
            size_reduction_percent FLOAT NOT NULL DEFAULT 0,
            processing_time_seconds INT NOT NULL DEFAULT 0,
            original_size BIGINT NOT NULL DEFAULT 0,
            converted_size BIGINT NOT NULL DEFAULT 0,
            error_message NVARCHAR(MAX),
            created_at NVARCHAR(32) NOT NULL
        )
    """))
    for name, column in RECORD_INDEXES.items():
        conn.execute(text(f"""
            IF NOT EXISTS (SELECT * FROM sys.indexes WHERE name = '{name}')
            CREATE INDEX {name} ON conversion_records ({column})
        """))
    conn.execute(text("""
        IF NOT EXISTS (SELECT * FROM sys.tables WHERE name = 'options')
        CREATE TABLE options (
            name NVARCHAR(191) PRIMARY KEY,
            value_json NVARCHAR(MAX) NOT NULL,
            updated_at NVARCHAR(32) NOT NULL
        )
    """))
    conn.commit()


def ensure_tables(engine: Engine) -> None:
    """Create required tables if they do not exist."""
    dialect = dialect_of(engine)
    with engine.connect() as conn:
        if dialect == "sqlite":
            _create_sqlite_tables(conn)
        elif dialect == "mysql":
            _create_mysql_tables(conn)
        else:
            _create_sqlserver_tables(conn)
    logger.info("Required tables ensured: %s", ", ".join(REQUIRED_TABLES))


def init_db() -> None:
    """Prepare database at startup: ensure required tables exist. On failure, fall back to SQLite file or in-memory so the service can start."""
    global _engine
    engine = get_engine()
    kind = db_kind(engine)
    logger.info("Database init: preparing %s (tables: %s)", kind, ", ".join(REQUIRED_TABLES))

    try:
        ensure_tables(engine)
        logger.info("Database ready: %s", kind)
        return
    except OperationalError as e:
        logger.warning(
            "Database connection failed (%s): %s. Will try fallback.",
            kind,
            e.orig,
            exc_info=True,
        )
        if dialect_of(engine) != "sqlite":
            try:
                sqlite_path = app_config.FLUX_MEDIA_HOME / "flux_media.db"
                sqlite_path.parent.mkdir(parents=True, exist_ok=True)
                app_config.DATABASE_URL = f"sqlite:///{sqlite_path}"
                _engine = None
                ensure_tables(get_engine())
                logger.warning(
                    "%s unavailable. Using SQLite at %s. Fix DATABASE_URL or MYSQL_* in .env.",
                    kind,
                    sqlite_path,
                )
                return
            except Exception as fallback_err:
                logger.exception(
                    "SQLite file fallback failed: %s. Trying in-memory SQLite.",
                    fallback_err,
                )
    except Exception as e:
        logger.exception("Database init failed: %s. Trying in-memory SQLite.", e)

    # Last resort: in-memory SQLite so the service can run (records will not persist across restarts)
    in_memory_url = "sqlite:///:memory:"
    app_config.DATABASE_URL = in_memory_url
    _engine = make_engine(in_memory_url)
    ensure_tables(_engine)
    logger.warning("Database unavailable. Using in-memory SQLite. Conversion records will not persist across restarts.")


@contextmanager
def session(engine: Optional[Engine] = None) -> Iterator[Connection]:
    with (engine or get_engine()).connect() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
