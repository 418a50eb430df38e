"""CLI for Compass sync: run imports and manage watch channels by hand."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

import click

from compass.config import CompassConfig, ConfigError, load_config
from compass.core.logging import configure_logging
from compass.core.telemetry import init_telemetry
from compass.db import Database
from compass.events.store import PostgresEventStore
from compass.migrations import run_migrations
from compass.sync.client import CalendarClient, GoogleCalendarClient, GoogleOAuthCredentials
from compass.sync.errors import CompassSyncError
from compass.sync.importer import ImportEngine
from compass.sync.notifications import NotificationRouter
from compass.sync.store import PostgresSyncStore
from compass.sync.watch import WatchChannelManager

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(".")
SERVICE_NAME = "compass-sync"


@dataclass
class _Runtime:
    config: CompassConfig
    user_id: str
    importer: ImportEngine
    watches: WatchChannelManager
    router: NotificationRouter


def _database(config: CompassConfig) -> Database:
    db_cfg = config.database
    return Database(
        db_name=db_cfg.name,
        host=db_cfg.host,
        port=db_cfg.port,
        user=db_cfg.user,
        password=db_cfg.password,
        ssl=db_cfg.ssl,
        min_pool_size=db_cfg.min_pool_size,
        max_pool_size=db_cfg.max_pool_size,
    )


@asynccontextmanager
async def _runtime(config: CompassConfig, user_id: str) -> AsyncIterator[_Runtime]:
    """Open the pool and a single-account calendar client for the duration of a command."""
    if config.google is None:
        raise ConfigError("Missing [google] section in config")

    db = _database(config)
    client = GoogleCalendarClient(
        credentials=GoogleOAuthCredentials(
            client_id=config.google.client_id,
            client_secret=config.google.client_secret,
            refresh_token=config.google.refresh_token,
        ),
        webhook_address=config.sync.webhook_address,
        webhook_token=config.google.webhook_token,
        page_size=config.sync.page_size,
    )

    async def client_for(requested_user: str) -> CalendarClient:
        if requested_user != user_id:
            raise ConfigError(f"No calendar credentials configured for user {requested_user!r}")
        return client

    await db.connect()
    try:
        sync_store = PostgresSyncStore(db)
        importer = ImportEngine(
            store=sync_store,
            event_store=PostgresEventStore(db),
            client_for=client_for,
        )
        yield _Runtime(
            config=config,
            user_id=user_id,
            importer=importer,
            watches=WatchChannelManager(
                store=sync_store,
                client_for=client_for,
                channel_ttl=config.sync.channel_ttl,
                refresh_window=config.sync.refresh_window,
            ),
            router=NotificationRouter(store=sync_store, importer=importer),
        )
    finally:
        await client.shutdown()
        await db.close()


def _load(config_dir: Path, user: str | None) -> tuple[CompassConfig, str]:
    try:
        config = load_config(config_dir)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)

    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_file=Path(config.logging.log_file) if config.logging.log_file else None,
    )
    init_telemetry(SERVICE_NAME)

    user_id = user or config.user_id
    if not user_id:
        click.echo("No user given: pass --user or set user_id in compass.toml", err=True)
        sys.exit(1)
    return config, user_id


def _run(coro) -> None:  # noqa: ANN001
    try:
        asyncio.run(coro)
    except (CompassSyncError, ConfigError) as exc:
        click.echo(f"{type(exc).__name__}: {exc}", err=True)
        sys.exit(1)


_config_option = click.option(
    "--config",
    "config_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_DIR,
    help="Directory containing compass.toml",
)
_user_option = click.option("--user", "user", default=None, help="User id to operate on")


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """Compass: Google Calendar sync engine."""


@cli.command("import")
@_config_option
@_user_option
@click.option("--full", is_flag=True, help="Ignore stored sync tokens and re-import everything")
@click.option("--calendar", "calendars", multiple=True, help="Limit to these calendar ids")
def import_cmd(
    config_dir: Path, user: str | None, full: bool, calendars: tuple[str, ...]
) -> None:
    """Import remote events into the local mirror."""
    if not full and len(calendars) > 1:
        raise click.UsageError("Incremental import takes at most one --calendar")
    config, user_id = _load(config_dir, user)

    async def _go() -> None:
        async with _runtime(config, user_id) as rt:
            if full:
                summary = await rt.importer.import_full(user_id, list(calendars) or None)
            else:
                calendar_id = calendars[0] if calendars else None
                summary = await rt.importer.import_incremental(user_id, calendar_id)
        for result in summary.results:
            click.echo(
                f"{result.calendar_id}: {result.mode} imported={result.imported_count} "
                f"deleted={result.deleted_count} skipped={result.skipped_count}"
            )
        for failure in summary.failures:
            click.echo(f"{failure.calendar_id}: FAILED {failure.error_type}: {failure.error}")
        if summary.failures:
            sys.exit(1)

    _run(_go())


@cli.command()
@_config_option
def migrate(config_dir: Path) -> None:
    """Apply database migrations."""
    try:
        config = load_config(config_dir)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)
    configure_logging(level=config.logging.level, fmt=config.logging.format)
    run_migrations(_database(config).url)
    click.echo("Migrations applied")


@cli.group()
def watch() -> None:
    """Manage push-notification channels."""


@watch.command("start")
@_config_option
@_user_option
@click.option("--calendar", "calendar_id", default=None, help="Watch one calendar only")
def watch_start(config_dir: Path, user: str | None, calendar_id: str | None) -> None:
    """Open channels for one calendar or every subscribed calendar."""
    config, user_id = _load(config_dir, user)

    async def _go() -> None:
        async with _runtime(config, user_id) as rt:
            if calendar_id is not None:
                channel = await rt.watches.start_watching(user_id, calendar_id)
                click.echo(f"{channel.calendar_id}: watching ({channel.channel_id})")
                return
            summary = await rt.watches.start_watching_all(user_id)
        for channel in summary.started:
            click.echo(f"{channel.calendar_id}: watching ({channel.channel_id})")
        for skipped in summary.skipped_calendar_ids:
            click.echo(f"{skipped}: already watching")
        for failure in summary.failures:
            click.echo(f"{failure.calendar_id}: FAILED {failure.error_type}: {failure.error}")

    _run(_go())


@watch.command("stop-all")
@_config_option
@_user_option
def watch_stop_all(config_dir: Path, user: str | None) -> None:
    """Stop every open channel for the user."""
    config, user_id = _load(config_dir, user)

    async def _go() -> None:
        async with _runtime(config, user_id) as rt:
            summary = await rt.watches.stop_all_watching(user_id)
        click.echo(
            f"Stopped {summary.stopped_count} channel(s); "
            f"{summary.already_gone_count} already gone"
        )
        for failure in summary.failures:
            click.echo(f"{failure.channel_id}: FAILED {failure.error}")

    _run(_go())


@watch.command("refresh")
@_config_option
@_user_option
@click.option(
    "--within-hours",
    type=click.IntRange(min=1),
    default=None,
    help="Refresh channels expiring within this many hours (default from config)",
)
def watch_refresh(config_dir: Path, user: str | None, within_hours: int | None) -> None:
    """Refresh channels that are about to expire."""
    config, user_id = _load(config_dir, user)
    within = timedelta(hours=within_hours) if within_hours is not None else None

    async def _go() -> None:
        async with _runtime(config, user_id) as rt:
            refreshed = await rt.watches.refresh_expiring(user_id, within=within)
        click.echo(f"Refreshed {len(refreshed)} channel(s)")

    _run(_go())


@cli.command()
@_config_option
@click.option("--resource-id", required=True, help="X-Goog-Resource-ID of the notification")
@click.option("--channel-id", required=True, help="X-Goog-Channel-ID of the notification")
@click.option("--state", "resource_state", default="exists", show_default=True)
def notify(config_dir: Path, resource_id: str, channel_id: str, resource_state: str) -> None:
    """Replay a push notification through the router."""
    config, user_id = _load(config_dir, None)

    async def _go() -> None:
        async with _runtime(config, user_id) as rt:
            result = await rt.router.handle_notification(
                {
                    "resource_state": resource_state,
                    "resource_id": resource_id,
                    "channel_id": channel_id,
                }
            )
        if result is None:
            click.echo(f"Acknowledged {resource_state!r} notification")
        else:
            click.echo(
                f"{result.calendar_id}: {result.mode} imported={result.imported_count} "
                f"deleted={result.deleted_count}"
            )

    _run(_go())


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
