"""Read back the service log file for the logs endpoint."""
import re
from collections import deque
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional, Union

from flux_media import config

# Matches config.LOG_FORMAT with config.LOG_DATEFMT
LOG_LINE = re.compile(r"^(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}) \[([A-Z]+)\] ([\w.\-]+): (.*)$")

TAIL_LINES = 5000


@dataclass
class LogEntry:
    created_at: str
    level: str
    logger: str
    message: str

    def to_dict(self) -> dict:
        return asdict(self)


def parse_lines(lines) -> list[LogEntry]:
    """Lines that do not start a record (tracebacks) are folded into the previous message."""
    entries: list[LogEntry] = []
    for line in lines:
        line = line.rstrip("\n")
        m = LOG_LINE.match(line)
        if m:
            entries.append(LogEntry(*m.groups()))
        elif entries and line:
            entries[-1].message += "\n" + line
    return entries


def read_logs(
    path: Union[str, Path, None] = None,
    level: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = 100,
) -> list[LogEntry]:
    """Newest entries first, filtered by exact level and case-insensitive search over logger and message."""
    log_path = Path(path or config.LOG_FILE)
    if not log_path.is_file():
        return []
    with log_path.open("r", encoding="utf-8", errors="replace") as f:
        tail = deque(f, maxlen=TAIL_LINES)
    entries = parse_lines(tail)
    if level:
        entries = [e for e in entries if e.level == level.upper()]
    if search:
        needle = search.lower()
        entries = [e for e in entries if needle in e.message.lower() or needle in e.logger.lower()]
    entries.reverse()
    return entries[: max(0, limit)]


def log_levels(entries: list[LogEntry]) -> list[str]:
    return sorted({e.level for e in entries})
