"""CLI for almanac: run sync passes, drain the outbound queue, settle conflicts."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import click

from almanac import __version__
from almanac.config import AlmanacConfig, ConfigError, load_config
from almanac.core.logging import configure_logging
from almanac.core.telemetry import init_telemetry
from almanac.engine import SyncEngine, start_engine
from almanac.models import ConflictStrategy
from almanac.store import EntityNotFoundError
from almanac.sync.conflicts import ConflictAlreadyResolvedError, ConflictNotFoundError

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


def _run(config: AlmanacConfig, action: Callable[[SyncEngine], Awaitable[_T]]) -> _T:
    async def _main() -> _T:
        engine = await start_engine(config)
        try:
            return await action(engine)
        finally:
            await engine.shutdown()

    return asyncio.run(_main())


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to almanac.toml (or its directory)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """Almanac: incremental calendar sync and conflict resolution."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=log_root,
        scope_id=config.scope_id,
    )
    init_telemetry()
    ctx.obj = config


@cli.command()
@click.option("--full", is_flag=True, help="Ignore stored sync tokens and fetch everything")
@click.pass_obj
def sync(config: AlmanacConfig, full: bool) -> None:
    """Run one sync pass for the configured scope."""
    result = _run(config, lambda engine: engine.coordinator.run_sync(config.scope_id, full))
    if result.skipped:
        click.echo("Another sync pass is already running; nothing to do.")
        return
    click.echo(
        f"added={result.added} updated={result.updated} removed={result.removed} "
        f"duplicates_dropped={result.duplicates_dropped}"
    )
    for error in result.errors:
        click.echo(f"  error: {error}")
    if result.errors:
        sys.exit(1)


@cli.command()
@click.pass_obj
def drain(config: AlmanacConfig) -> None:
    """Push queued local changes to the remote calendar."""
    result = _run(config, lambda engine: engine.queue.drain())
    click.echo(
        f"synced={result.synced} conflicts={result.conflicts} errors={result.errors} "
        f"blocked={result.blocked} dead_lettered={result.dead_lettered}"
    )


@cli.command()
@click.pass_obj
def status(config: AlmanacConfig) -> None:
    """Show the scope's sync state and queue counts."""
    report = _run(config, lambda engine: engine.coordinator.status(config.scope_id))
    state = report.state
    click.echo(f"{'Scope':<24} {state.scope_id}")
    click.echo(f"{'Status':<24} {state.status}")
    click.echo(f"{'Last sync':<24} {state.last_sync_time or '-'}")
    click.echo(f"{'Last full sync':<24} {state.full_sync_completed_at or '-'}")
    click.echo(f"{'Consecutive errors':<24} {state.consecutive_errors}")
    click.echo(f"{'Last error':<24} {state.last_error or '-'}")
    click.echo(f"{'Pending mutations':<24} {report.pending_mutations}")
    click.echo(f"{'Dead-lettered':<24} {report.dead_lettered_mutations}")
    click.echo(f"{'Unresolved conflicts':<24} {report.unresolved_conflicts}")


@cli.command()
@click.pass_obj
def reset(config: AlmanacConfig) -> None:
    """Forget sync tokens and error history; the next pass is a full sync."""
    _run(config, lambda engine: engine.coordinator.reset(config.scope_id))
    click.echo(f"Reset sync state for {config.scope_id}")


@cli.command()
@click.option("--refresh", is_flag=True, help="Re-read the calendar list from the remote service")
@click.option("--enable", "enable_ids", multiple=True, help="Include a calendar in sync passes")
@click.option("--disable", "disable_ids", multiple=True, help="Exclude a calendar from sync passes")
@click.pass_obj
def calendars(
    config: AlmanacConfig,
    refresh: bool,
    enable_ids: tuple[str, ...],
    disable_ids: tuple[str, ...],
) -> None:
    """List known calendars, optionally refreshing or toggling them."""

    async def _action(engine: SyncEngine):
        if refresh:
            await engine.directory.refresh()
        for calendar_id in enable_ids:
            await engine.directory.set_enabled(calendar_id, True)
        for calendar_id in disable_ids:
            await engine.directory.set_enabled(calendar_id, False)
        return await engine.directory.calendars()

    try:
        listed = _run(config, _action)
    except EntityNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc

    if not listed:
        click.echo("No calendars known yet; run with --refresh.")
        return
    click.echo(f"{'Enabled':<8} {'Primary':<8} {'Id':<40} {'Name'}")
    click.echo("-" * 80)
    for calendar in listed:
        click.echo(
            f"{'yes' if calendar.enabled else 'no':<8} {'yes' if calendar.primary else '':<8} "
            f"{calendar.id:<40} {calendar.name}"
        )


@cli.command()
@click.pass_obj
def conflicts(config: AlmanacConfig) -> None:
    """List unresolved conflicts."""
    pending = _run(config, lambda engine: engine.queue.conflicts.unresolved())
    if not pending:
        click.echo("No unresolved conflicts.")
        return
    for conflict in pending:
        click.echo(
            f"{conflict.id}  {conflict.entity_type}:{conflict.entity_id}  "
            f"detected {conflict.detected_at.isoformat()}"
        )


@cli.command()
@click.argument("conflict_id")
@click.option(
    "--strategy",
    type=click.Choice([strategy.value for strategy in ConflictStrategy]),
    required=True,
    help="Which side wins",
)
@click.pass_obj
def resolve(config: AlmanacConfig, conflict_id: str, strategy: str) -> None:
    """Resolve one conflict."""
    try:
        conflict = _run(
            config,
            lambda engine: engine.queue.conflicts.resolve(conflict_id, ConflictStrategy(strategy)),
        )
    except (ConflictNotFoundError, ConflictAlreadyResolvedError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Resolved {conflict.id} as {conflict.resolution}")


@cli.command()
@click.pass_obj
def run(config: AlmanacConfig) -> None:
    """Run the sync scheduler until SIGINT/SIGTERM."""

    async def _action(engine: SyncEngine) -> None:
        loop = asyncio.get_running_loop()
        shutdown_event = asyncio.Event()

        def _signal_handler() -> None:
            click.echo("\nShutting down...")
            shutdown_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _signal_handler)
        if hasattr(signal, "SIGUSR1"):
            loop.add_signal_handler(signal.SIGUSR1, engine.scheduler.trigger_now)

        click.echo(
            f"Syncing {config.scope_id} every {config.sync.interval_minutes} minute(s)"
        )
        await engine.scheduler.run(shutdown_event)

    _run(config, _action)
