from pathlib import Path
from typing import Iterable, Optional

from flux_media.conversion.models import (
    IMAGE_FORMATS,
    ErrorKind,
    MediaFormat,
    ProcessorInfo,
    ProcessorKind,
    VideoMetadata,
)


class FakeProcessor:
    """Stands in for a backend adapter: writes a fixed payload, or fails for the formats in `fail`."""

    def __init__(
        self,
        formats: Iterable[MediaFormat] = (),
        fail: Iterable[MediaFormat] = (),
        failure_kind: ErrorKind = ErrorKind.CONVERSION_FAILED,
        payload: bytes = b"converted",
    ):
        formats = set(formats)
        is_image = any(f in IMAGE_FORMATS for f in formats)
        self._info = ProcessorInfo(
            available=True,
            kind=ProcessorKind.GD if is_image else ProcessorKind.FFMPEG,
            version="fake 1.0",
            webp=MediaFormat.WEBP in formats,
            avif=MediaFormat.AVIF in formats,
            av1=MediaFormat.AV1 in formats,
            webm=MediaFormat.WEBM in formats,
        )
        self.fail = set(fail)
        self.failure_kind = failure_kind
        self.payload = payload
        self.calls = []
        self.last_failure: Optional[ErrorKind] = None

    def info(self) -> ProcessorInfo:
        return self._info

    def supports(self, fmt) -> bool:
        return self._info.supports(fmt)

    def convert(self, fmt, source, destination, options=None) -> bool:
        self.calls.append((MediaFormat(fmt), Path(source), Path(destination), options))
        if fmt in self.fail:
            self.last_failure = self.failure_kind
            return False
        Path(destination).write_bytes(self.payload)
        self.last_failure = None
        return True

    def metadata(self, source) -> Optional[VideoMetadata]:
        return VideoMetadata(duration_seconds=1.5, width=320, height=240, codec_name="h264")


ENCODERS_OUTPUT = """Encoders:
 V..... = Video
 A..... = Audio
 S..... = Subtitle
 .F.... = Frame-level multithreading
 ------
 V....D libaom-av1           libaom AV1 (codec av1)
 V....D libsvtav1            SVT-AV1(Scalable Video Technology for AV1) encoder (codec av1)
 V....D libvpx-vp9           libvpx VP9 (codec vp9)
 V....D libx264              libx264 H.264 / AVC / MPEG-4 AVC / MPEG-4 part 10 (codec h264)
 A....D libopus              libopus Opus (codec opus)
 A....D aac                  AAC (Advanced Audio Coding)
 S..... srt                  SubRip subtitle
"""

VERSION_OUTPUT = "ffmpeg version 6.1.1 Copyright (c) 2000-2023 the FFmpeg developers\nbuilt with gcc 13\n"
