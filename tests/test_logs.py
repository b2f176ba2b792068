import pytest

from flux_media.logs import log_levels, parse_lines, read_logs

LOG_TEXT = """2025-06-15 10:00:00 [INFO] flux_media.service: Converted photo.jpg -> photo.webp
2025-06-15 10:00:01 [ERROR] flux_media.processors: AVIF conversion failed for photo.jpg
Traceback (most recent call last):
  File "x.py", line 1, in <module>
RuntimeError: no encoder
2025-06-15 10:00:02 [WARNING] flux_media.service: Partial conversion success for photo.jpg
2025-06-15 10:00:03 [INFO] flux_media.pipeline: Attachment 7: converted webp in 0.10s
"""


@pytest.fixture
def log_file(tmp_path):
    path = tmp_path / "flux_media.log"
    path.write_text(LOG_TEXT, encoding="utf-8")
    return path


def test_traceback_lines_join_previous_entry():
    entries = parse_lines(LOG_TEXT.splitlines(keepends=True))

    assert len(entries) == 4
    assert entries[1].level == "ERROR"
    assert entries[1].logger == "flux_media.processors"
    assert entries[1].message.endswith("RuntimeError: no encoder")


def test_newest_first(log_file):
    entries = read_logs(log_file)

    assert entries[0].logger == "flux_media.pipeline"
    assert entries[-1].created_at == "2025-06-15 10:00:00"


def test_filter_by_level(log_file):
    entries = read_logs(log_file, level="error")

    assert [e.level for e in entries] == ["ERROR"]


def test_search_is_case_insensitive(log_file):
    entries = read_logs(log_file, search="PHOTO.JPG")

    assert len(entries) == 3
    assert log_levels(entries) == ["ERROR", "INFO", "WARNING"]


def test_limit(log_file):
    assert len(read_logs(log_file, limit=2)) == 2


def test_missing_file(tmp_path):
    assert read_logs(tmp_path / "nope.log") == []
