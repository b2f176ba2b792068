"""Detect which image/video backends the host offers and what they can encode."""
import logging
import shutil
import threading
import time
from typing import Callable, Optional

from flux_media import config
from flux_media.conversion.commands import run_command
from flux_media.conversion.models import ProcessorInfo, ProcessorKind

logger = logging.getLogger("flux_media.probe")

# Preference order when several AV1 encoders are compiled in
AV1_ENCODERS = ("libsvtav1", "libaom-av1", "librav1e")


def probe_imagick() -> ProcessorInfo:
    """ImageMagick through Wand. Missing MagickWand is a normal 'unavailable' outcome."""
    try:
        from wand.version import MAGICK_VERSION, formats
    except ImportError as e:
        logger.debug("Wand/ImageMagick not available: %s", e)
        return ProcessorInfo.unavailable()
    try:
        supported = {name.upper() for name in formats()}
    except Exception as e:
        logger.warning("ImageMagick format query failed: %s", e)
        return ProcessorInfo.unavailable()
    return ProcessorInfo(
        available=True,
        kind=ProcessorKind.IMAGICK,
        version=MAGICK_VERSION or "Unknown",
        webp="WEBP" in supported,
        avif="AVIF" in supported,
    )


def probe_pillow() -> ProcessorInfo:
    try:
        import PIL
        from PIL import features
    except ImportError as e:
        logger.debug("Pillow not available: %s", e)
        return ProcessorInfo.unavailable()
    return ProcessorInfo(
        available=True,
        kind=ProcessorKind.GD,
        version=f"Pillow {PIL.__version__}",
        webp=bool(features.check("webp")),
        avif=bool(features.check("avif")),
    )


def _resolve_binary(name: str) -> Optional[str]:
    return shutil.which(name)


def parse_encoders(output: str) -> tuple[str, ...]:
    """Video and audio encoder names from `ffmpeg -encoders` output."""
    encoders: list[str] = []
    in_table = False
    for line in output.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.startswith("------"):
            in_table = True
            continue
        if not in_table or stripped[0] not in ("V", "A"):
            continue
        parts = stripped.split()
        if len(parts) >= 2:
            encoders.append(parts[1])
    return tuple(encoders)


def select_av1_encoder(encoders: tuple[str, ...]) -> Optional[str]:
    for name in AV1_ENCODERS:
        if name in encoders:
            return name
    return None


def select_vp9_encoder(encoders: tuple[str, ...]) -> Optional[str]:
    for name in encoders:
        if "vp9" in name:
            return name
    return None


def probe_ffmpeg(binary: Optional[str] = None) -> ProcessorInfo:
    binary = _resolve_binary(binary or config.FFMPEG_BINARY)
    if binary is None:
        logger.info("FFmpeg binary not found; video conversion unavailable")
        return ProcessorInfo.unavailable()

    version_run = run_command([binary, "-version"], timeout=config.PROBE_TIMEOUT)
    if not version_run.ok:
        logger.warning("FFmpeg is present but not runnable: %s", version_run.stderr.strip()[:200])
        return ProcessorInfo.unavailable()
    first_line = version_run.stdout.splitlines()[0] if version_run.stdout else ""
    parts = first_line.split()
    version = parts[2] if len(parts) >= 3 and parts[1] == "version" else "Unknown"

    encoders_run = run_command([binary, "-hide_banner", "-encoders"], timeout=config.PROBE_TIMEOUT)
    encoders = parse_encoders(encoders_run.stdout) if encoders_run.ok else ()
    if not encoders_run.ok:
        logger.warning("Unable to query ffmpeg encoders: %s", encoders_run.stderr.strip()[:200])

    return ProcessorInfo(
        available=True,
        kind=ProcessorKind.FFMPEG,
        version=version,
        av1=select_av1_encoder(encoders) is not None,
        webm=select_vp9_encoder(encoders) is not None,
        encoders=encoders,
    )


class CapabilityCache:
    """Process-wide probe results with a TTL and explicit refresh."""

    def __init__(self, ttl: float = config.PROBE_CACHE_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[float, ProcessorInfo]] = {}

    def get(self, key: str, probe: Callable[[], ProcessorInfo]) -> ProcessorInfo:
        with self._lock:
            entry = self._entries.get(key)
            now = self._clock()
            if entry is not None and now - entry[0] < self.ttl:
                return entry[1]
            info = probe()
            self._entries[key] = (now, info)
            return info

    def refresh(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)
        logger.info("Capability cache invalidated (%s)", key or "all")


capabilities = CapabilityCache()


def imagick_info() -> ProcessorInfo:
    return capabilities.get("imagick", probe_imagick)


def pillow_info() -> ProcessorInfo:
    return capabilities.get("pillow", probe_pillow)


def ffmpeg_info() -> ProcessorInfo:
    return capabilities.get("ffmpeg", probe_ffmpeg)


def probe_image() -> ProcessorInfo:
    """
    Pick the image backend: ImageMagick when it can write both WebP and AVIF,
    else Pillow when it can write WebP, else unavailable.
    """
    imagick = imagick_info()
    if imagick.available and imagick.webp and imagick.avif:
        return imagick
    pillow = pillow_info()
    if pillow.available and pillow.webp:
        return pillow
    logger.warning("No suitable image processor found. ImageMagick (WebP+AVIF) or Pillow (WebP) required.")
    return ProcessorInfo.unavailable()


def probe_video() -> ProcessorInfo:
    info = ffmpeg_info()
    if info.available and not (info.av1 or info.webm):
        logger.warning("FFmpeg found but it has neither an AV1 nor a VP9 encoder")
    return info
