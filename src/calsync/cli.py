"""CLI for calsync: run calendar syncs against the PostgreSQL event cache."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import date, datetime
from pathlib import Path
from typing import TypeVar

import click
import httpx

from calsync.calendar.caldav import CalDavTransport
from calsync.calendar.errors import CalendarSyncError
from calsync.calendar.orchestrator import SyncOrchestrator, SyncPoller
from calsync.calendar.pg_store import PostgresEventStore, ensure_schema
from calsync.config import CalsyncConfig, ConfigError, load_config
from calsync.core.logging import configure_logging
from calsync.core.telemetry import init_telemetry
from calsync.credentials import load_cipher
from calsync.db import Database

logger = logging.getLogger(__name__)

T = TypeVar("T")


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to calsync.toml (or a directory containing it)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """calsync: pull external CalDAV calendars into the local event cache."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
    )
    init_telemetry("calsync")
    ctx.obj = config


@asynccontextmanager
async def _orchestrator(config: CalsyncConfig) -> AsyncIterator[SyncOrchestrator]:
    database = Database.from_config(config.database)
    pool = await database.connect()
    http_client = httpx.AsyncClient(
        timeout=config.http.timeout_seconds,
        headers={"User-Agent": config.http.user_agent},
    )
    try:
        yield SyncOrchestrator(
            store=PostgresEventStore(pool),
            transport=CalDavTransport(http_client, user_agent=config.http.user_agent),
            cipher=load_cipher(config.credentials.cipher),
            config=config.sync,
        )
    finally:
        await http_client.aclose()
        await database.close()


def _run(config: CalsyncConfig, action: Callable[[SyncOrchestrator], Awaitable[T]]) -> T:
    async def _main() -> T:
        async with _orchestrator(config) as orchestrator:
            return await action(orchestrator)

    try:
        return asyncio.run(_main())
    except CalendarSyncError as exc:
        click.echo(f"Error: {exc.user_message} ({exc.message})", err=True)
        sys.exit(1)


def _parse_date(value: str | None) -> date | None:
    if value is None:
        return None
    try:
        return datetime.fromisoformat(value).date()
    except ValueError as exc:
        raise click.BadParameter(f"{value!r} is not an ISO date (YYYY-MM-DD)") from exc


@cli.command()
@click.argument("source_id")
@click.option("--user", "user_id", required=True, help="Owner of the calendar source")
@click.option("--date", "target_date", default=None, help="Sync only this UTC day (YYYY-MM-DD)")
@click.option("--debug", is_flag=True, help="Print the structured sync log")
@click.pass_obj
def sync(
    config: CalsyncConfig,
    source_id: str,
    user_id: str,
    target_date: str | None,
    debug: bool,
) -> None:
    """Sync one calendar source."""
    day = _parse_date(target_date)
    result = _run(
        config,
        lambda orch: orch.sync_one(source_id, user_id, target_date=day, debug=debug),
    )
    click.echo(result.model_dump_json(indent=2, exclude_none=True))
    if result.partial:
        click.echo(f"Warning: {result.skipped} calendar entries could not be read", err=True)


@cli.command("sync-all")
@click.option("--user", "user_id", required=True, help="Sync every source owned by this user")
@click.option("--date", "target_date", default=None, help="Sync only this UTC day (YYYY-MM-DD)")
@click.pass_obj
def sync_all(config: CalsyncConfig, user_id: str, target_date: str | None) -> None:
    """Sync all calendar sources of a user."""
    day = _parse_date(target_date)
    summary = _run(config, lambda orch: orch.sync_all(user_id, target_date=day))
    click.echo(
        summary.model_dump_json(indent=2, include={"succeeded", "failed", "total", "failures"})
    )
    if summary.failed:
        sys.exit(2)


@cli.command("sources")
@click.option("--user", "user_id", required=True, help="List sources owned by this user")
@click.pass_obj
def sources_cmd(config: CalsyncConfig, user_id: str) -> None:
    """List the calendar sources of a user (passwords are never shown)."""
    views = _run(config, lambda orch: orch.list_sources(user_id))
    if not views:
        click.echo("No calendar sources.")
        return

    click.echo(f"{'ID':<38} {'Name':<24} {'Last synced':<26} {'URL'}")
    click.echo("-" * 100)
    for view in views:
        synced = view.last_synced_at.isoformat() if view.last_synced_at else "never"
        click.echo(f"{view.id:<38} {view.name:<24} {synced:<26} {view.url}")


@cli.command("init-db")
@click.pass_obj
def init_db(config: CalsyncConfig) -> None:
    """Create the calendar tables if they do not exist."""

    async def _main() -> None:
        database = Database.from_config(config.database)
        pool = await database.connect()
        try:
            await ensure_schema(pool)
        finally:
            await database.close()

    asyncio.run(_main())
    click.echo("Calendar tables are ready.")


@cli.command()
@click.pass_obj
def poll(config: CalsyncConfig) -> None:
    """Run the background poller until interrupted."""
    if not config.poller.users:
        click.echo("No users configured under [poller].users", err=True)
        sys.exit(1)

    async def _main() -> None:
        async with _orchestrator(config) as orchestrator:
            poller = SyncPoller(orchestrator, config.poller)
            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, stop.set)
            poller.start()
            try:
                await stop.wait()
            finally:
                await poller.stop()

    click.echo(f"Polling calendars for {len(config.poller.users)} user(s)")
    asyncio.run(_main())


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
