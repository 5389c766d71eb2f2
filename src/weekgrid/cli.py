"""CLI for weekgrid: run the API server and drive the planner from a shell."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from datetime import date
from pathlib import Path
from typing import TypeVar

import click

from weekgrid import __version__
from weekgrid.calendar.sync import SyncResult
from weekgrid.calendar.workspace import CalendarWorkspace, ViewMode
from weekgrid.config import DEFAULT_CONFIG_FILENAME, ConfigError, WeekgridConfig, load_config
from weekgrid.core.logging import configure_logging

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _load(config_path: Path, explicit: bool) -> WeekgridConfig:
    if not config_path.exists() and not explicit:
        return WeekgridConfig()
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help=f"Path to weekgrid config (default: ./{DEFAULT_CONFIG_FILENAME})",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """weekgrid: weekly calendar and study-block planner."""
    config = _load(config_path or Path(DEFAULT_CONFIG_FILENAME), explicit=config_path is not None)
    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(config.logging.level, config.logging.format, log_root, component="cli")
    ctx.obj = config


def _parse_anchor(raw: str | None) -> date:
    if raw is None:
        return date.today()
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise click.BadParameter(f"expected YYYY-MM-DD, got {raw!r}") from exc


_anchor_option = click.option("--anchor", default=None, help="Any day in the wanted range")
_view_option = click.option(
    "--view",
    type=click.Choice([mode.value for mode in ViewMode]),
    default=ViewMode.WEEK.value,
    show_default=True,
)


def _run_with_workspace(
    config: WeekgridConfig,
    view: str,
    anchor: date,
    action: Callable[[CalendarWorkspace], Awaitable[T]],
) -> T:
    """Start a runtime, run *action* against a workspace and shut down."""
    from weekgrid.daemon import WeekgridRuntime

    async def _main() -> T:
        runtime = WeekgridRuntime(config)
        await runtime.start()
        try:
            workspace = runtime.workspace(view=ViewMode(view))
            workspace.anchor_date = anchor
            await workspace.refresh()
            return await action(workspace)
        finally:
            await runtime.shutdown()

    return asyncio.run(_main())


@cli.command()
@click.option("--host", default=None, help="Bind host (overrides [server].host)")
@click.option("--port", type=int, default=None, help="Bind port (overrides [server].port)")
@click.pass_obj
def serve(config: WeekgridConfig, host: str | None, port: int | None) -> None:
    """Run the HTTP API with the background sync poller."""
    import uvicorn

    from weekgrid.api.app import create_app

    bind_host = host or config.server.host
    bind_port = port or config.server.port
    click.echo(f"Serving weekgrid on http://{bind_host}:{bind_port}")
    uvicorn.run(
        create_app(config),
        host=bind_host,
        port=bind_port,
        log_level=config.logging.level.lower(),
    )


@cli.command()
@click.pass_obj
def migrate(config: WeekgridConfig) -> None:
    """Create the database if needed and upgrade the schema to head."""
    from weekgrid.db import Database
    from weekgrid.migrations import run_migrations

    async def _main() -> None:
        db = Database.from_env(config.database.name)
        await db.provision()
        await run_migrations(db.url, chain="core")

    asyncio.run(_main())
    click.echo(f"Database {config.database.name} is up to date")


@cli.command()
@_anchor_option
@_view_option
@click.pass_obj
def show(config: WeekgridConfig, anchor: str | None, view: str) -> None:
    """Print the calendar items of the visible range."""

    async def _noop(workspace: CalendarWorkspace) -> CalendarWorkspace:
        return workspace

    workspace = _run_with_workspace(config, view, _parse_anchor(anchor), _noop)
    for day in workspace.days:
        key = day.isoformat()
        click.echo(f"{key} ({day.strftime('%a')})")
        items = workspace.aggregated.items_for_day(key)
        if not items:
            click.echo("  (free)")
        for item in items:
            when = "all day" if item.all_day else f"{item.start:%H:%M}-{item.end:%H:%M}"
            status = f" [{item.status}]" if item.status else ""
            click.echo(f"  {when:<12} {item.title}{status}  ({item.id})")


@cli.command()
@_anchor_option
@_view_option
@click.pass_obj
def generate(config: WeekgridConfig, anchor: str | None, view: str) -> None:
    """Replace the week's suggested blocks with fresh suggestions."""

    async def _generate(workspace: CalendarWorkspace) -> list:
        return await workspace.generate()

    created = _run_with_workspace(config, view, _parse_anchor(anchor), _generate)
    click.echo(f"Created {len(created)} suggested block(s)")
    for block in created:
        click.echo(f"  {block.start_at} - {block.end_at}  {block.title or block.block_type}")


@cli.command()
@click.pass_obj
def sync(config: WeekgridConfig) -> None:
    """Run one sync with the remote calendar, honouring backoff."""

    async def _sync(workspace: CalendarWorkspace):
        return await workspace.sync_now()

    outcome = _run_with_workspace(config, ViewMode.WEEK.value, date.today(), _sync)
    message = f"Sync {outcome.result}"
    if outcome.detail:
        message += f": {outcome.detail}"
    click.echo(message)
    if outcome.backoff is not None and outcome.backoff.retry_at is not None:
        click.echo(f"Next attempt allowed after {outcome.backoff.retry_at} (epoch ms)")
    if outcome.result is SyncResult.FAILED:
        sys.exit(1)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
