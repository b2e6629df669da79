"""CLI for calsync: run syncs once or on a schedule, and inspect the Notion schema."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

import click

from calsync.config import ConfigError, SyncConfig, load_config, resolve_config_path
from calsync.core.logging import configure_logging
from calsync.core.scheduler import ScheduledJob, run_schedule
from calsync.core.telemetry import init_telemetry
from calsync.google_calendar import CalendarSourceError
from calsync.notion import NotionClient, NotionError
from calsync.reconciler import ReconcileError, SyncRunError, SyncRunResult
from calsync.sync import monthly_full_resync, rolling_sync

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to calsync.toml (defaults to $CALSYNC_CONFIG, then ./calsync.toml)",
)

# Failures that end a run without a traceback on the console.
_RUN_ERRORS = (NotionError, CalendarSourceError, ReconcileError)


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """calsync: mirror calendar events into a Notion database."""


def _load(config_path: Path | None) -> SyncConfig:
    path = resolve_config_path(config_path)
    try:
        config = load_config(path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)

    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_file=config.logging.file,
    )
    init_telemetry()
    return config


def _summary(result: SyncRunResult) -> str:
    return (
        f"{result.window.name}: {result.created} created, {result.updated} updated, "
        f"{len(result.archived)} archived, {result.failed} failed"
    )


def _run_once(
    entry_point: Callable[[SyncConfig], Awaitable[SyncRunResult]],
    config: SyncConfig,
) -> None:
    try:
        result = asyncio.run(entry_point(config))
    except SyncRunError as exc:
        click.echo(_summary(exc.result))
        for outcome in exc.result.outcomes:
            if outcome.action == "failed":
                click.echo(f"  failed: {outcome.title!r} ({outcome.identity}): {outcome.error}")
        sys.exit(1)
    except _RUN_ERRORS as exc:
        click.echo(f"Sync failed: {exc}", err=True)
        sys.exit(1)
    click.echo(_summary(result))


@cli.command("full-resync")
@_config_option
def full_resync(config_path: Path | None) -> None:
    """Reconcile the current calendar month."""
    _run_once(monthly_full_resync, _load(config_path))


@cli.command("rolling-sync")
@_config_option
def rolling_sync_cmd(config_path: Path | None) -> None:
    """Reconcile from the first of this month through the lookahead horizon."""
    _run_once(rolling_sync, _load(config_path))


@cli.command()
@_config_option
def schedule(config_path: Path | None) -> None:
    """Run both syncs on their cron schedules until interrupted."""
    config = _load(config_path)
    jobs = [
        ScheduledJob(
            name="full_resync",
            cron=config.schedule.full_resync,
            run=lambda: monthly_full_resync(config),
        ),
        ScheduledJob(
            name="rolling",
            cron=config.schedule.rolling,
            run=lambda: rolling_sync(config),
        ),
    ]
    click.echo(
        f"Scheduling full_resync ({config.schedule.full_resync}) "
        f"and rolling ({config.schedule.rolling}) in {config.sync.timezone}"
    )
    try:
        asyncio.run(run_schedule(jobs, timezone=config.sync.tzinfo))
    except KeyboardInterrupt:
        click.echo("Stopped")


async def _fetch_schema(config: SyncConfig) -> set[str]:
    async with NotionClient(
        token=config.notion.token,
        database_id=config.notion.database_id,
        properties=config.notion.properties,
        api_version=config.notion.api_version,
    ) as client:
        return await client.get_schema_field_names()


@cli.command()
@_config_option
def schema(config_path: Path | None) -> None:
    """Show the Notion database properties and which expected ones are missing."""
    config = _load(config_path)
    try:
        field_names = asyncio.run(_fetch_schema(config))
    except NotionError as exc:
        click.echo(f"Failed to fetch schema: {exc}", err=True)
        sys.exit(1)

    properties = config.notion.properties
    expected = set(properties.all())
    click.echo(f"{'Property':<30} {'Used by calsync'}")
    click.echo("-" * 50)
    for name in sorted(field_names):
        click.echo(f"{name:<30} {'yes' if name in expected else ''}")

    missing = sorted(expected - field_names)
    if missing:
        click.echo(f"Missing: {', '.join(missing)}")
    if properties.identity not in field_names or properties.date not in field_names:
        click.echo(
            f"The {properties.identity!r} and {properties.date!r} properties are required",
            err=True,
        )
        sys.exit(1)
