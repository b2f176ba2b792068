"""flux-media command line: bulk conversion, cleanup and statistics."""
import logging
from pathlib import Path
from typing import Optional

import click

from flux_media import config
from flux_media.conversion.models import MediaFormat
from flux_media.conversion.service import ImageConverter, VideoConverter
from flux_media.db import init_db
from flux_media.options import OptionsStore
from flux_media.pipeline import ConversionPipeline
from flux_media.tracker import ConversionTracker

logger = logging.getLogger("flux_media.cli")


def build_pipeline(media_root: Optional[Path] = None) -> ConversionPipeline:
    init_db()
    store = OptionsStore()
    return ConversionPipeline(
        ImageConverter(),
        VideoConverter(),
        ConversionTracker(),
        store.get,
        output_dir=config.OUTPUT_DIR,
        media_root=media_root or config.MEDIA_DIR,
    )


@click.group()
@click.version_option(config.VERSION, prog_name="flux-media")
def main():
    """Flux Media: convert images to WebP/AVIF and videos to AV1/WebM."""


@main.command("convert-all")
@click.option("--batch-size", default=config.DEFAULT_BATCH_SIZE, show_default=True, type=click.IntRange(1, 100), help="Files per batch.")
@click.option(
    "--media-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Directory to scan (defaults to MEDIA_DIR).",
)
@click.option("--force", is_flag=True, help="Convert files that already have a successful conversion.")
def convert_all(batch_size, media_dir, force):
    """Convert every supported file under the media directory."""
    root = media_dir or config.MEDIA_DIR
    pipeline = build_pipeline(root)
    items = pipeline.discover_media(root)
    if not items:
        click.echo(f"No supported media found in {root}")
        return
    click.echo(f"Converting {len(items)} files from {root} (batch size {batch_size})")
    summary = pipeline.convert_many(items, batch_size, skip_converted=not force)
    click.echo(
        f"Processed: {summary.processed}  Converted: {summary.converted}  "
        f"Errors: {summary.errors}  Skipped: {summary.skipped}"
    )
    if summary.errors:
        raise SystemExit(1)


@main.command("clear-all")
@click.confirmation_option(prompt="Delete all converted files and conversion records?")
def clear_all():
    """Delete every converted file and conversion record."""
    pipeline = build_pipeline()
    records, files = pipeline.clear_all()
    click.echo(f"Cleared all Flux Media data: {records} records and {files} converted files deleted.")


@main.command("stats")
@click.option("--format", "fmt", type=click.Choice([f.value for f in MediaFormat]), default=None, help="Only count this format.")
def stats(fmt):
    """Show conversion statistics."""
    init_db()
    result = ConversionTracker().get_statistics({"format": fmt})
    click.echo(f"Total conversions:      {result.total_conversions}")
    click.echo(f"Successful:             {result.successful_conversions}")
    click.echo(f"Failed:                 {result.failed_conversions}")
    click.echo(f"Success rate:           {result.success_rate:.2f}%")
    click.echo(f"Average size reduction: {result.average_size_reduction:.2f}%")
    click.echo(f"Total space saved:      {result.total_space_saved} bytes")
    for name, count in sorted(result.conversions_by_format.items()):
        click.echo(f"  {name}: {count}")


if __name__ == "__main__":
    main()
