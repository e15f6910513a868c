"""CLI for CalCalc sync — serve the API, prepare the schema, run syncs by hand."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from calcalc.config import CalcalcConfig, ConfigError, load_config
from calcalc.core.logging import configure_logging
from calcalc.db import Database, ensure_schema
from calcalc.services import SyncServices
from calcalc.sync.errors import SyncError
from calcalc.sync.models import SyncDirection, SyncResult

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to calcalc.toml (defaults to $CALCALC_CONFIG or ./calcalc.toml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """CalCalc — Google Calendar sync for the income-tracking calendar."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
    )
    ctx.obj = config


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address")
@click.option("--port", type=int, default=5000, show_default=True, help="Bind port")
@click.pass_obj
def serve(config: CalcalcConfig, host: str, port: int) -> None:
    """Run the HTTP API (and the scheduler, unless disabled)."""
    import uvicorn

    from calcalc.api.app import create_app

    click.echo(f"Serving CalCalc sync API on http://{host}:{port}")
    uvicorn.run(create_app(config), host=host, port=port, log_config=None)


@cli.command("init-db")
def init_db() -> None:
    """Create the database (if missing) and the sync tables."""
    asyncio.run(_init_db())
    click.echo("Database schema is up to date.")


@cli.command()
@click.option("--user-id", required=True, help="User whose calendar to sync")
@click.option(
    "--direction",
    type=click.Choice([d.value for d in SyncDirection]),
    default=None,
    help="Override the stored sync direction for this run",
)
@click.option(
    "--event-id",
    "event_ids",
    multiple=True,
    help="Export only these local events (repeatable)",
)
@click.pass_obj
def sync(
    config: CalcalcConfig,
    user_id: str,
    direction: str | None,
    event_ids: tuple[str, ...],
) -> None:
    """Reconcile one user's default calendar now."""
    try:
        result = asyncio.run(_sync_once(config, user_id, direction, list(event_ids) or None))
    except SyncError as exc:
        click.echo(f"Sync failed: {exc}", err=True)
        sys.exit(1)
    click.echo(result.model_dump_json(indent=2))
    if result.errors:
        sys.exit(2)


@cli.command()
@click.pass_obj
def tick(config: CalcalcConfig) -> None:
    """Run one scheduler tick: sync every user whose next_sync has passed."""
    synced = asyncio.run(_tick_once(config))
    click.echo(f"Synced {synced} user(s).")


# ---------------------------------------------------------------------------
# Async bodies
# ---------------------------------------------------------------------------


async def _connect() -> Database:
    db = Database.from_env()
    await db.provision()
    await db.connect()
    await ensure_schema(db)
    return db


async def _init_db() -> None:
    db = await _connect()
    await db.close()


async def _sync_once(
    config: CalcalcConfig,
    user_id: str,
    direction: str | None,
    event_ids: list[str] | None,
) -> SyncResult:
    services = SyncServices.build(config, await _connect())
    try:
        return await services.engine.reconcile(user_id, direction, event_ids)
    finally:
        await services.aclose()


async def _tick_once(config: CalcalcConfig) -> int:
    services = SyncServices.build(config, await _connect())
    try:
        return await services.scheduler.tick()
    finally:
        await services.aclose()
