from pathlib import Path

import pytest

from flux_media.conversion import ImageConverter, VideoConverter
from flux_media.conversion.models import ConversionSettings, MediaFormat, MediaType, SuccessPolicy
from flux_media.pipeline import BulkSummary, ConversionPipeline, MediaItem
from flux_media.tracker import ConversionTracker
from tests.shared_fixtures import FakeProcessor


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def monotonic(self):
        return self.now


class SlowProcessor(FakeProcessor):
    """Advances a fake clock by a fixed number of seconds per format."""

    def __init__(self, clock, seconds):
        super().__init__(formats=tuple(seconds))
        self.clock = clock
        self.seconds = seconds

    def convert(self, fmt, source, destination, options=None):
        self.clock.now += self.seconds[MediaFormat(fmt)]
        return super().convert(fmt, source, destination, options)


@pytest.fixture
def tracker(engine):
    return ConversionTracker(engine)


@pytest.fixture
def settings():
    return ConversionSettings()


@pytest.fixture
def pipeline(image_processor, video_processor, tracker, settings):
    return ConversionPipeline(
        ImageConverter(image_processor),
        VideoConverter(video_processor),
        tracker,
        lambda: settings,
    )


class TestDestinations:
    def test_next_to_source(self, pipeline):
        dests = pipeline.destinations_for("/media/2025/photo.jpg", [MediaFormat.WEBP, MediaFormat.AVIF])

        assert dests == {
            MediaFormat.WEBP: Path("/media/2025/photo.webp"),
            MediaFormat.AVIF: Path("/media/2025/photo.avif"),
        }

    def test_av1_uses_mp4_container(self, pipeline):
        dests = pipeline.destinations_for("/media/clip.mov", ["av1", "webm"])

        assert dests[MediaFormat.AV1] == Path("/media/clip.av1.mp4")
        assert dests[MediaFormat.WEBM] == Path("/media/clip.webm")

    def test_output_dir(self, image_processor, video_processor, tracker, tmp_path):
        pipeline = ConversionPipeline(
            ImageConverter(image_processor), VideoConverter(video_processor), tracker, output_dir=tmp_path / "out"
        )

        assert pipeline.destinations_for("/media/photo.jpg", ["webp"]) == {MediaFormat.WEBP: tmp_path / "out" / "photo.webp"}

    def test_output_dir_keeps_media_subfolders(self, image_processor, video_processor, tracker, tmp_path):
        media = tmp_path / "media"
        pipeline = ConversionPipeline(
            ImageConverter(image_processor), VideoConverter(video_processor), tracker,
            output_dir=tmp_path / "out", media_root=media,
        )

        assert pipeline.destinations_for(media / "a" / "photo.png", ["webp"]) == {MediaFormat.WEBP: tmp_path / "out" / "a" / "photo.webp"}
        assert pipeline.destinations_for("/elsewhere/photo.png", ["webp"]) == {MediaFormat.WEBP: tmp_path / "out" / "photo.webp"}

    def test_same_named_sources_do_not_share_outputs(self, image_processor, video_processor, tracker, sample_png, tmp_path):
        media = tmp_path / "library"
        for folder in ("a", "b"):
            (media / folder).mkdir(parents=True)
            (media / folder / "photo.png").write_bytes(sample_png.read_bytes())
        pipeline = ConversionPipeline(
            ImageConverter(image_processor), VideoConverter(video_processor), tracker,
            output_dir=tmp_path / "out", media_root=media,
        )

        summary = pipeline.convert_many(pipeline.discover_media(media))

        assert summary.converted == 2
        paths = [r.converted_path for aid in ("a/photo.png", "b/photo.png") for r in tracker.get_attachment_conversions(aid) if r.format == "webp"]
        assert sorted(paths) == [str(tmp_path / "out" / "a" / "photo.webp"), str(tmp_path / "out" / "b" / "photo.webp")]


class TestFormatSelection:
    def test_hybrid_uses_every_enabled_format(self, pipeline, settings):
        assert pipeline.formats_for(MediaType.IMAGE, settings, pipeline.image_converter) == [MediaFormat.WEBP, MediaFormat.AVIF]

    def test_single_format_picks_first_supported(self, tracker):
        converter = ImageConverter(FakeProcessor(formats=(MediaFormat.WEBP,)))
        settings = ConversionSettings(image_formats=[MediaFormat.AVIF, MediaFormat.WEBP], hybrid_approach=False)

        assert ConversionPipeline.formats_for(MediaType.IMAGE, settings, converter) == [MediaFormat.WEBP]

    def test_single_format_nothing_supported(self):
        converter = ImageConverter(FakeProcessor(formats=()))
        settings = ConversionSettings(hybrid_approach=False)

        assert ConversionPipeline.formats_for(MediaType.IMAGE, settings, converter) == [MediaFormat.WEBP]

    def test_media_type_for(self, pipeline):
        assert pipeline.media_type_for("a.png") == MediaType.IMAGE
        assert pipeline.media_type_for("a.mkv") == MediaType.VIDEO
        assert pipeline.media_type_for("a.pdf") is None


class TestConvertAttachment:
    def test_records_each_format(self, pipeline, tracker, sample_png):
        result = pipeline.convert_attachment(5, sample_png)

        assert result.success
        assert (sample_png.parent / "photo.webp").exists()
        assert (sample_png.parent / "photo.avif").exists()
        records = tracker.get_attachment_conversions(5)
        assert {(r.format, r.status) for r in records} == {("webp", "success"), ("avif", "success")}

    def test_partial_failure_is_recorded(self, video_processor, tracker, sample_video, settings):
        failing = FakeProcessor(formats=(MediaFormat.WEBP, MediaFormat.AVIF), fail=(MediaFormat.AVIF,))
        pipeline = ConversionPipeline(ImageConverter(failing), VideoConverter(video_processor), tracker, lambda: settings)
        source = sample_video.parent / "photo.jpg"
        source.write_bytes(b"\xff\xd8" + b"\x00" * 500)

        result = pipeline.convert_attachment("9", source)

        assert result.success
        stats = tracker.get_statistics()
        assert stats.successful_conversions == 1
        assert stats.failed_conversions == 1
        [failed] = [r for r in tracker.get_attachment_conversions("9") if r.status == "failed"]
        assert failed.error_message == "avif: conversion failed"

    def test_video_goes_to_video_converter(self, pipeline, tracker, sample_video, video_processor):
        result = pipeline.convert_attachment("v1", sample_video)

        assert result.converted_formats == [MediaFormat.AV1, MediaFormat.WEBM]
        assert [call[2].name for call in video_processor.calls] == ["clip.av1.mp4", "clip.webm"]

    def test_explicit_formats(self, pipeline, sample_png, image_processor):
        result = pipeline.convert_attachment(1, sample_png, ["avif"])

        assert result.converted_formats == [MediaFormat.AVIF]
        assert [call[0] for call in image_processor.calls] == [MediaFormat.AVIF]

    def test_each_format_records_its_own_time(self, video_processor, tracker, sample_png, settings, monkeypatch):
        clock = FakeClock()
        monkeypatch.setattr("flux_media.conversion.service.time", clock)
        slow = SlowProcessor(clock, {MediaFormat.WEBP: 5, MediaFormat.AVIF: 40})
        pipeline = ConversionPipeline(ImageConverter(slow), VideoConverter(video_processor), tracker, lambda: settings)

        pipeline.convert_attachment(1, sample_png)

        times = {r.format: r.processing_time_seconds for r in tracker.get_attachment_conversions(1)}
        assert times == {"webp": 5, "avif": 40}

    def test_strict_policy(self, video_processor, tracker, sample_png, settings):
        failing = FakeProcessor(formats=(MediaFormat.WEBP, MediaFormat.AVIF), fail=(MediaFormat.AVIF,))
        pipeline = ConversionPipeline(ImageConverter(failing), VideoConverter(video_processor), tracker, lambda: settings)

        assert pipeline.convert_attachment(1, sample_png, policy=SuccessPolicy.ALL).success is False

    def test_source_already_in_target_format(self, pipeline, tmp_path, image_processor):
        source = tmp_path / "already.webp"
        source.write_bytes(b"RIFF0000WEBP")

        result = pipeline.convert_attachment(3, source)

        assert result.converted_formats == [MediaFormat.AVIF]
        assert source.read_bytes() == b"RIFF0000WEBP"

    def test_unsupported_media(self, pipeline, tracker, tmp_path):
        doc = tmp_path / "notes.pdf"
        doc.write_bytes(b"%PDF")

        result = pipeline.convert_attachment(4, doc)

        assert result.success is False
        assert tracker.get_statistics().total_conversions == 0

    def test_missing_source_records_failures(self, pipeline, tracker, tmp_path):
        result = pipeline.convert_attachment(8, tmp_path / "gone.png")

        assert result.success is False
        records = tracker.get_attachment_conversions(8)
        assert {r.format for r in records} == {"webp", "avif"}
        assert all(r.error_message == "Source file not found" for r in records)


class TestBulk:
    def test_summary_counts(self, pipeline, tracker, sample_png, sample_video, tmp_path):
        notes = tmp_path / "notes.txt"
        notes.write_text("skip me")
        done = tmp_path / "done.png"
        done.write_bytes(sample_png.read_bytes())
        tracker.record_success("done", str(done), str(tmp_path / "done.webp"), "webp", 50.0, 1)
        items = [
            MediaItem("1", str(sample_png)),
            ("2", str(sample_video)),
            {"attachment_id": "3", "source_path": str(tmp_path / "missing.jpg")},
            MediaItem("4", str(notes)),
            MediaItem("done", str(done)),
        ]

        summary = pipeline.convert_many(items, batch_size=2)

        assert summary == BulkSummary(processed=5, converted=2, errors=1, skipped=2)

    def test_force_reconverts(self, pipeline, tracker, sample_png):
        tracker.record_success("1", str(sample_png), "x.webp", "webp", 50.0, 1)

        summary = pipeline.convert_many([MediaItem("1", str(sample_png))], skip_converted=False)

        assert summary.converted == 1
        assert summary.skipped == 0

    def test_one_bad_item_does_not_stop_the_run(self, pipeline, sample_png, monkeypatch):
        calls = []
        real = pipeline.convert_attachment

        def flaky(attachment_id, source_path, formats=None, *, policy=SuccessPolicy.ANY):
            calls.append(attachment_id)
            if attachment_id == "a":
                raise RuntimeError("unexpected")
            return real(attachment_id, source_path, formats, policy=policy)

        monkeypatch.setattr(pipeline, "convert_attachment", flaky)

        summary = pipeline.convert_many([MediaItem("a", str(sample_png)), MediaItem("b", str(sample_png))])

        assert calls == ["a", "b"]
        assert summary.errors == 1
        assert summary.converted == 1


class TestDiscoveryAndClear:
    def test_discover_skips_converted_outputs(self, pipeline, tmp_path):
        root = tmp_path / "library"
        (root / "2025").mkdir(parents=True)
        for name in ("photo.jpg", "photo.webp", "photo.avif", "lonely.webp", "notes.txt"):
            (root / name).write_bytes(b"x")
        for name in ("clip.mp4", "clip.av1.mp4", "clip.webm"):
            (root / "2025" / name).write_bytes(b"x")

        items = pipeline.discover_media(root)

        assert [i.attachment_id for i in items] == ["2025/clip.mp4", "lonely.webp", "photo.jpg"]
        assert items[2].source_path == str(root / "photo.jpg")

    def test_discover_missing_root(self, pipeline, tmp_path):
        assert pipeline.discover_media(tmp_path / "nope") == []

    def test_clear_all(self, pipeline, tracker, sample_png):
        pipeline.convert_attachment(1, sample_png)
        tracker.record_failure(2, str(sample_png), "webp", "failed")

        records, files = pipeline.clear_all()

        assert (records, files) == (3, 2)
        assert not (sample_png.parent / "photo.webp").exists()
        assert sample_png.exists()
        assert tracker.get_statistics().total_conversions == 0
