"""CLI for the messaging relay: batch ingest and API server."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
from pydantic import ValidationError as SettingsError

from relay.config import Settings, get_settings
from relay.errors import StorageError
from relay.logging_utils import setup_logging
from relay.service import RelayService
from relay.storage import create_store

logger = logging.getLogger(__name__)

PAYLOAD_SUFFIXES = (".json", ".txt")


def _load_settings() -> Settings:
    try:
        return get_settings()
    except SettingsError as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(1)


def _payload_files(payload_dir: Path) -> list[Path]:
    return sorted(
        path for path in payload_dir.iterdir()
        if path.is_file() and path.suffix in PAYLOAD_SUFFIXES
    )


@click.group()
@click.version_option(version="1.0.0")
def cli() -> None:
    """Messaging relay: ingest provider payloads and stream changes."""


@cli.command()
@click.argument("payload_dir", required=False, type=click.Path(path_type=Path))
def ingest(payload_dir: Path | None) -> None:
    """Process every .json/.txt payload file in PAYLOAD_DIR (default from settings)."""
    settings = _load_settings()
    setup_logging(settings.LOG_LEVEL)

    payload_dir = payload_dir or Path(settings.PAYLOAD_DIR)
    if not payload_dir.is_dir():
        click.echo(f"Payload directory not found: {payload_dir}", err=True)
        sys.exit(1)

    files = _payload_files(payload_dir)
    if not files:
        click.echo(f"No payload files found in {payload_dir}")
        return

    store = create_store(settings.DATABASE_URL)
    try:
        store.init_schema()
        service = RelayService(store, settings.BUSINESS_NUMBER)
        blobs = [path.read_bytes() for path in files]
        report = service.ingest_batch(blobs, source_names=[path.name for path in files])
    except StorageError as e:
        click.echo(f"Storage failure: {e}", err=True)
        sys.exit(1)
    finally:
        store.dispose()

    click.echo(
        f"Processed {len(files)} files: "
        f"{report.messages_upserted} messages upserted, "
        f"{report.messages_duplicate} duplicates, "
        f"{report.statuses_patched} statuses patched, "
        f"{report.statuses_unmatched} statuses unmatched, "
        f"{report.errors_skipped} errors skipped"
    )


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True, help="Bind address")
@click.option("--port", default=8000, show_default=True, type=int, help="Bind port")
def serve(host: str, port: int) -> None:
    """Run the HTTP/WebSocket API."""
    import uvicorn

    settings = _load_settings()
    uvicorn.run("relay.main:app", host=host, port=port, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    cli()
