from unittest.mock import patch

from flux_media.conversion import VideoConverter
from flux_media.conversion.models import (
    ConversionSettings,
    ErrorKind,
    MediaFormat,
    MediaType,
    ProcessorInfo,
    ProcessorKind,
    VideoOptions,
)
from tests.shared_fixtures import FakeProcessor


class TestVideoConverter:
    def test_hybrid_conversion(self, sample_video, tmp_path, video_processor):
        converter = VideoConverter(video_processor)
        destinations = {"av1": tmp_path / "clip.av1.mp4", "webm": tmp_path / "clip.webm"}

        result = converter.process_media(sample_video, destinations)

        assert result.success
        assert result.converted_formats == [MediaFormat.AV1, MediaFormat.WEBM]
        assert result.to_dict()["converted_files"] == {
            "av1": str(tmp_path / "clip.av1.mp4"),
            "webm": str(tmp_path / "clip.webm"),
        }

    def test_timeout_is_reported_per_format(self, sample_video, tmp_path):
        processor = FakeProcessor(
            formats=(MediaFormat.AV1, MediaFormat.WEBM),
            fail=(MediaFormat.AV1,),
            failure_kind=ErrorKind.TIMEOUT,
        )

        result = VideoConverter(processor).process_media(
            sample_video, {"av1": tmp_path / "clip.av1.mp4", "webm": tmp_path / "clip.webm"}
        )

        assert result.success is True
        assert result.converted_formats == [MediaFormat.WEBM]
        assert result.failures == {MediaFormat.AV1: "av1: conversion timed out"}

    def test_settings_map_to_video_options(self, sample_video, tmp_path, video_processor):
        settings = ConversionSettings(video_av1_crf=35, video_av1_cpu_used=6, video_webm_crf=33, video_webm_speed=2, video_threads=4)

        VideoConverter(video_processor).process_media(
            sample_video, {"av1": tmp_path / "a.mp4", "webm": tmp_path / "a.webm"}, settings
        )

        options = {fmt: opts for fmt, _, _, opts in video_processor.calls}
        assert options[MediaFormat.AV1] == VideoOptions(crf=35, preset="medium", cpu_used=6, speed=None, threads=4)
        assert options[MediaFormat.WEBM] == VideoOptions(crf=33, preset="medium", cpu_used=None, speed=2, threads=4)

    def test_image_source_is_rejected(self, sample_png, tmp_path, video_processor):
        result = VideoConverter(video_processor).process_media(sample_png, {"webm": tmp_path / "x.webm"})

        assert result.success is False
        assert result.errors[0].startswith("Unsupported video format")

    def test_image_format_is_rejected(self, sample_video, tmp_path, video_processor):
        converter = VideoConverter(video_processor)

        assert converter.convert("webp", sample_video, tmp_path / "clip.webp") is False
        assert converter.last_error == ErrorKind.UNSUPPORTED_FORMAT

    def test_no_ffmpeg(self, sample_video, tmp_path):
        with patch("flux_media.conversion.probe.probe_video", return_value=ProcessorInfo.unavailable()):
            converter = VideoConverter()

        assert converter.is_available() is False
        assert converter.metadata(sample_video) is None
        result = converter.process_media(sample_video, {"av1": tmp_path / "a.mp4", "webm": tmp_path / "a.webm"})
        assert result.success is False
        assert result.errors == ["av1: no processor available", "webm: no processor available"]

    def test_ffmpeg_without_encoders_is_unavailable(self):
        bare = ProcessorInfo(available=True, kind=ProcessorKind.FFMPEG, version="4.4")
        with patch("flux_media.conversion.probe.probe_video", return_value=bare):
            converter = VideoConverter()

        assert converter.is_available() is False

    def test_webm_only_build(self, sample_video, tmp_path):
        converter = VideoConverter(FakeProcessor(formats=(MediaFormat.WEBM,)))

        assert converter.convert_to_webm(sample_video, tmp_path / "a.webm") is True
        assert converter.convert_to_av1(sample_video, tmp_path / "a.mp4") is False
        assert converter.last_error == ErrorKind.UNSUPPORTED_FORMAT

    def test_metadata_delegates(self, sample_video, video_processor):
        meta = VideoConverter(video_processor).metadata(sample_video)

        assert meta.codec_name == "h264"
        assert meta.to_dict()["width"] == 320

    def test_type_and_formats(self, video_processor):
        converter = VideoConverter(video_processor)

        assert converter.get_type() == MediaType.VIDEO
        assert converter.get_supported_formats() == [MediaFormat.AV1, MediaFormat.WEBM]
        assert converter.is_supported_media("movie.MKV")
        assert not converter.is_supported_media("photo.png")
