"""CLI for briefings: serve the API, migrate the schema, run a sync by hand."""

from __future__ import annotations

import asyncio
import logging
import sys

import click
import httpx

from briefings import __version__
from briefings.config import load_settings
from briefings.core.logging import configure_logging
from briefings.db import Database
from briefings.errors import BriefingsError, ConfigurationError
from briefings.service import CalendarSyncService
from briefings.sync.progress import ProgressEventType, SyncState
from briefings.sync.window import WindowPolicy
from briefings.vault import generate_key

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", default="INFO", show_default=True, help="Root log level.")
@click.option(
    "--log-format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
)
def cli(log_level: str, log_format: str) -> None:
    """Briefings: calendar sync and analyst matching."""
    configure_logging(log_level, log_format)


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", type=int, default=8000, show_default=True)
def serve(host: str, port: int) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from briefings.api.app import create_app

    try:
        settings = load_settings()
    except ConfigurationError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)
    uvicorn.run(create_app(settings=settings), host=host, port=port, log_config=None)


@cli.command()
@click.option("--chain", default="core", show_default=True, help="Migration chain, or 'all'.")
def migrate(chain: str) -> None:
    """Upgrade the database schema to the latest revision."""
    from briefings.migrations import run_migrations

    db = Database.from_env()
    asyncio.run(run_migrations(db.url, chain=chain))
    click.echo(f"Migrated {db.db_name} ({chain}) to head")


@cli.command()
@click.argument("connection_id")
@click.option(
    "--window",
    type=click.Choice(["future", "all", "custom"]),
    default=None,
    help="Window policy (defaults to the configured policy).",
)
@click.option("--start", type=click.DateTime(formats=["%Y-%m-%d"]), default=None)
@click.option("--end", type=click.DateTime(formats=["%Y-%m-%d"]), default=None)
def sync(connection_id: str, window: str | None, start, end) -> None:
    """Run one sync for CONNECTION_ID and print its progress."""
    if window == "custom" or (window is None and (start or end)):
        if start is None or end is None:
            raise click.UsageError("--start and --end are required for a custom window")
        policy: WindowPolicy | None = WindowPolicy.custom(start.date(), end.date())
    else:
        policy = WindowPolicy.from_name(window) if window else None

    try:
        settings = load_settings()
    except ConfigurationError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)

    try:
        state = asyncio.run(_run_sync(settings, connection_id, policy))
    except BriefingsError as exc:
        click.echo(f"Sync could not start: {exc}", err=True)
        sys.exit(1)
    sys.exit(0 if state is SyncState.COMPLETED else 1)


async def _run_sync(settings, connection_id: str, policy: WindowPolicy | None) -> SyncState:
    db = Database.from_env()
    pool = await db.connect()
    try:
        async with httpx.AsyncClient(timeout=settings.sync.http_timeout_seconds) as http_client:
            service = CalendarSyncService.from_pool(settings, pool, http_client)
            handle = await service.start_sync(connection_id, policy)
            async for event in handle.stream():
                if event.type is ProgressEventType.PROGRESS:
                    continue
                click.echo(f"[{event.type.value}] {event.message}")
            outcome = await handle.wait()
    finally:
        await db.close()

    click.echo(
        f"{outcome.state.value}: {outcome.events_scanned} events scanned, "
        f"{outcome.meetings_matched} matched, {outcome.meetings_written} written, "
        f"{outcome.errors} errors"
    )
    if outcome.reason:
        click.echo(f"reason: {outcome.reason}")
    return outcome.state


@cli.command("generate-key")
def generate_key_command() -> None:
    """Print a fresh token-vault key for BRIEFINGS_ENCRYPTION_KEY."""
    click.echo(generate_key())
