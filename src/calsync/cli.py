"""CLI for calsync: run syncs, manage calendar selection and serve the API."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import click

from calsync.config import CalsyncConfig, ConfigError, load_config
from calsync.core.logging import configure_logging
from calsync.core.telemetry import init_telemetry
from calsync.errors import CalendarSyncError
from calsync.models import SyncOptions
from calsync.service import CalsyncService, build_service

logger = logging.getLogger(__name__)

R = TypeVar("R")


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to calsync.toml (defaults to $CALSYNC_CONFIG or ./calsync.toml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """calsync: mirror Google Calendar events into a per-user store."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_file=Path(config.logging.log_file) if config.logging.log_file else None,
        component="cli",
    )
    init_telemetry()
    ctx.obj = config


def _run_with_service(
    config: CalsyncConfig, operation: Callable[[CalsyncService], Awaitable[R]]
) -> R:
    """Build the service, run ``operation`` and always close the service.

    Sync errors are printed and turn into exit code 1.
    """

    async def _main() -> R:
        service = await build_service(config)
        try:
            return await operation(service)
        finally:
            await service.aclose()

    try:
        return asyncio.run(_main())
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)
    except CalendarSyncError as exc:
        click.echo(f"Error [{exc.code}]: {exc}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("user_id")
@click.option("--full", is_flag=True, help="Drop every sync cursor and refetch the window")
@click.option(
    "--ignore-interval",
    is_flag=True,
    help="Skip the minimum interval between syncs",
)
@click.pass_obj
def sync(config: CalsyncConfig, user_id: str, full: bool, ignore_interval: bool) -> None:
    """Run one sync for USER_ID."""
    summary = _run_with_service(
        config,
        lambda service: service.orchestrator.run(
            user_id,
            SyncOptions(force_full_sync=full),
            enforce_min_interval=not ignore_interval,
        ),
    )
    click.echo(
        f"Synced {len(summary.synced_calendars)} calendar(s): "
        f"{len(summary.upserted_events)} upserted, {len(summary.removed_event_uids)} removed"
    )
    for calendar_id, message in sorted(summary.failed_calendars.items()):
        click.echo(f"  failed: {calendar_id}: {message}")


@cli.command()
@click.argument("user_id")
@click.pass_obj
def calendars(config: CalsyncConfig, user_id: str) -> None:
    """Refresh and list USER_ID's calendars."""
    entries = _run_with_service(
        config, lambda service: service.integration.refresh_calendar_list(user_id)
    )
    click.echo(f"{'Sel':<4} {'Calendar ID':<50} {'Summary'}")
    click.echo("-" * 80)
    for entry in entries:
        marker = "[x]" if entry.selected else "[ ]"
        primary = " (primary)" if entry.primary else ""
        click.echo(f"{marker:<4} {entry.id:<50} {entry.summary}{primary}")


@cli.command()
@click.argument("user_id")
@click.argument("calendar_ids", nargs=-1, required=True)
@click.pass_obj
def select(config: CalsyncConfig, user_id: str, calendar_ids: tuple[str, ...]) -> None:
    """Select exactly CALENDAR_IDS for USER_ID; events of other calendars are purged."""
    entries = _run_with_service(
        config, lambda service: service.integration.update_selection(user_id, calendar_ids)
    )
    selected = [entry.id for entry in entries if entry.selected]
    click.echo(f"Selected {len(selected)} calendar(s): {', '.join(selected) or '(none)'}")


@cli.command()
@click.argument("user_id")
@click.confirmation_option(prompt="Delete the integration and every stored event?")
@click.pass_obj
def disconnect(config: CalsyncConfig, user_id: str) -> None:
    """Disconnect USER_ID and purge their stored events."""
    removed = _run_with_service(
        config, lambda service: service.integration.disconnect(user_id)
    )
    click.echo(f"Disconnected {user_id}; removed {removed} event(s)")


@cli.command()
@click.argument("user_id")
@click.option("--month", help="Month key, YYYY-MM")
@click.option("--date", "date_key", help="Day key, YYYY-MM-DD or YYYYMMDD")
@click.pass_obj
def events(
    config: CalsyncConfig, user_id: str, month: str | None, date_key: str | None
) -> None:
    """List USER_ID's stored events for a month or a day."""
    if (month is None) == (date_key is None):
        raise click.UsageError("Provide exactly one of --month or --date")

    async def _list(service: CalsyncService):
        if month is not None:
            return await service.events.list_month(user_id, month)
        return await service.events.list_day(user_id, date_key or "")

    try:
        records = _run_with_service(config, _list)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc

    if not records:
        click.echo("No events")
        return
    for record in records:
        when = "all day" if record.all_day else record.start_raw.date_time or ""
        click.echo(f"{record.start_date_key}  {when:<26} {record.summary}  [{record.calendar_id}]")


@cli.command()
@click.argument("user_ids", nargs=-1)
@click.pass_obj
def watch(config: CalsyncConfig, user_ids: tuple[str, ...]) -> None:
    """Run auto-sync pollers until interrupted.

    USER_IDS default to ``[calsync.sync] watch_user_ids``.
    """
    targets = list(user_ids) or list(config.sync.watch_user_ids)
    if not targets:
        raise click.UsageError("No users to watch; pass USER_IDS or set watch_user_ids")

    async def _watch(service: CalsyncService) -> None:
        loop = asyncio.get_running_loop()
        shutdown_event = asyncio.Event()

        def _signal_handler() -> None:
            click.echo("\nShutting down...")
            shutdown_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _signal_handler)

        for user_id in targets:
            service.scheduler.watch(user_id)
        click.echo(
            f"Watching {len(targets)} user(s) every "
            f"{int(config.sync.auto_sync_interval_seconds)}s: {', '.join(targets)}"
        )
        await shutdown_event.wait()

    _run_with_service(config, _watch)


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Serve the HTTP API with uvicorn."""
    import uvicorn

    from calsync.api.app import create_app

    config_path = ctx.parent.params.get("config_path") if ctx.parent else None
    uvicorn.run(create_app(config_path=config_path), host=host, port=port, log_config=None)


@cli.command()
@click.option("--database-url", help="Overrides [calsync.store] database_url / DATABASE_URL")
@click.pass_obj
def migrate(config: CalsyncConfig, database_url: str | None) -> None:
    """Apply the database migrations."""
    from calsync.migrations import run_migrations

    url = database_url or config.store.database_url
    if not url:
        raise click.UsageError("No database URL; pass --database-url or set DATABASE_URL")
    run_migrations(url)
    click.echo("Migrations applied")
