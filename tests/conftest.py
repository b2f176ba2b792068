import os
import tempfile

# Configuration is read at import time; point it at a throwaway home first.
_TEST_HOME = tempfile.mkdtemp(prefix="flux-media-tests-")
os.environ["FLUX_MEDIA_HOME"] = _TEST_HOME
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_HOME}/flux_media.db"
os.environ.pop("OUTPUT_DIR", None)

import pytest  # noqa: E402
from PIL import Image  # noqa: E402

from flux_media.conversion.models import MediaFormat  # noqa: E402
from flux_media.db import ensure_tables, make_engine  # noqa: E402
from tests.shared_fixtures import FakeProcessor  # noqa: E402


def pytest_configure(config):
    """Add custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow")


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'records.db'}")
    ensure_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def sample_png(tmp_path):
    path = tmp_path / "media" / "photo.png"
    path.parent.mkdir(parents=True, exist_ok=True)
    image = Image.new("RGB", (64, 64))
    for x in range(64):
        for y in range(64):
            image.putpixel((x, y), ((x * 4) % 256, (y * 4) % 256, ((x + y) * 2) % 256))
    image.save(path, format="PNG")
    return path


@pytest.fixture
def sample_video(tmp_path):
    path = tmp_path / "media" / "clip.mp4"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 4000)
    return path


@pytest.fixture
def image_processor():
    return FakeProcessor(formats=(MediaFormat.WEBP, MediaFormat.AVIF))


@pytest.fixture
def video_processor():
    return FakeProcessor(formats=(MediaFormat.AV1, MediaFormat.WEBM))
