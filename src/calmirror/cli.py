"""CLI for calmirror: serve the push endpoint and run maintenance jobs."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click
import uvicorn
from pydantic import BaseModel

from calmirror.calendars import CalendarServiceError
from calmirror.config import (
    CONFIG_FILENAME,
    AppConfig,
    ConfigError,
    config_from_env,
    load_config,
    mask_value,
    validate_config,
)
from calmirror.core.logging import configure_logging
from calmirror.core.metrics import init_metrics
from calmirror.core.telemetry import init_telemetry
from calmirror.errors import CalendarNotFoundError, CalendarSyncError
from calmirror.services import Services, build_services

logger = logging.getLogger(__name__)

SERVICE_NAME = "calmirror"


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help=f"Path to {CONFIG_FILENAME} (defaults to ./{CONFIG_FILENAME}, then the environment)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """calmirror: mirror busy time across linked Google calendars."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


def _load(ctx: click.Context) -> AppConfig:
    """Resolve configuration for a command; exits on ConfigError."""
    config_path: Path | None = ctx.obj.get("config_path")
    if config_path is None and Path(CONFIG_FILENAME).exists():
        config_path = Path(CONFIG_FILENAME)
    try:
        if config_path is not None:
            return load_config(config_path)
        return config_from_env()
    except (ConfigError, ValueError) as exc:
        click.echo(f"Configuration error: {exc}")
        sys.exit(1)


def _setup_observability(config: AppConfig) -> None:
    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=log_root,
        service_name=SERVICE_NAME,
    )
    init_telemetry(SERVICE_NAME)
    init_metrics(SERVICE_NAME)


def _echo_model(model: BaseModel) -> None:
    click.echo(model.model_dump_json(indent=2))


def _run_job(config: AppConfig, job: Callable[[Services], Awaitable[Any]]) -> Any:
    """Build services, run *job*, close services; exits 1 on domain errors."""

    async def _main() -> Any:
        services = await build_services(config)
        try:
            return await job(services)
        finally:
            await services.aclose()

    try:
        return asyncio.run(_main())
    except CalendarServiceError as exc:
        click.echo(f"Error [{exc.code}]: {exc}")
        sys.exit(1)
    except CalendarNotFoundError as exc:
        click.echo(f"Error: {exc}")
        sys.exit(1)
    except CalendarSyncError as exc:
        payload = exc.to_dict()
        click.echo(f"Provider error [{payload['kind']}]: {payload['message']}")
        sys.exit(1)


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to server.host)")
@click.option("--port", type=int, default=None, help="Bind port (defaults to server.port)")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Serve the push endpoint and cron triggers over HTTP."""
    from calmirror.api.app import create_app

    config = _load(ctx)
    problems = validate_config(config)
    if problems and config.is_production:
        for problem in problems:
            click.echo(f"  - {problem}")
        click.echo("Refusing to start with an invalid production configuration")
        sys.exit(1)
    for problem in problems:
        logger.warning("Configuration problem: %s", problem)

    _setup_observability(config)
    bind_host = host or config.server.host
    bind_port = port or config.server.port
    click.echo(f"Starting calmirror on {bind_host}:{bind_port}")
    server = uvicorn.Server(
        uvicorn.Config(
            create_app(config),
            host=bind_host,
            port=bind_port,
            log_level=config.logging.level.lower(),
            log_config=None,
        )
    )
    asyncio.run(server.serve())


@cli.command()
@click.option("--revision", default="head", show_default=True, help="Target revision")
@click.pass_context
def migrate(ctx: click.Context, revision: str) -> None:
    """Apply database migrations."""
    from calmirror.migrations import run_migrations

    config = _load(ctx)
    _setup_observability(config)
    asyncio.run(run_migrations(config.database.url, revision))
    click.echo(f"Database migrated to {revision}")


@cli.command("refresh-tokens")
@click.pass_context
def refresh_tokens(ctx: click.Context) -> None:
    """Refresh access tokens expiring within the next 30 minutes."""
    config = _load(ctx)
    _setup_observability(config)
    summary = _run_job(config, lambda services: services.tokens.refresh_expiring_accounts())
    _echo_model(summary)
    if summary.failed:
        sys.exit(1)


@cli.command("refresh-webhooks")
@click.pass_context
def refresh_webhooks(ctx: click.Context) -> None:
    """Renew push channels expiring within the next 24 hours."""
    config = _load(ctx)
    _setup_observability(config)
    result = _run_job(config, lambda services: services.webhooks.refresh_expiring_webhooks())
    _echo_model(result)
    if result.failed:
        sys.exit(1)


@cli.command("webhook-stats")
@click.option(
    "--validate", is_flag=True, help="Also list channels that are expired or lack an expiry"
)
@click.pass_context
def webhook_stats(ctx: click.Context, validate: bool) -> None:
    """Show push channel health for active calendars."""
    config = _load(ctx)
    _setup_observability(config)

    async def job(services: Services) -> list[BaseModel]:
        reports: list[BaseModel] = [await services.webhooks.get_stats()]
        if validate:
            reports.append(await services.webhooks.validate_all_webhooks())
        return reports

    for report in _run_job(config, job):
        _echo_model(report)


@cli.command("initial-sync")
@click.argument("calendar_id")
@click.pass_context
def initial_sync(ctx: click.Context, calendar_id: str) -> None:
    """Mirror the current window of CALENDAR_ID and store its sync cursor."""
    config = _load(ctx)
    _setup_observability(config)

    async def job(services: Services) -> int:
        entry = await services.store.get_calendar(calendar_id)
        if entry is None:
            raise CalendarNotFoundError(calendar_id)
        return await services.engine.perform_initial_sync(entry.calendar, entry.account)

    processed = _run_job(config, job)
    click.echo(f"Processed {processed} event(s) from calendar {calendar_id}")


@cli.command("add-calendar")
@click.argument("account_id")
@click.pass_context
def add_calendar(ctx: click.Context, account_id: str) -> None:
    """Register the primary calendar of ACCOUNT_ID and open its push channel."""
    config = _load(ctx)
    _setup_observability(config)
    result = _run_job(config, lambda services: services.calendars.add_primary_calendar(account_id))
    click.echo(f"Added calendar {result.calendar.id} ({result.calendar.display_name})")
    if result.webhook_error:
        click.echo(f"Warning: push channel setup failed: {result.webhook_error}")


@cli.command("deactivate-calendar")
@click.argument("calendar_id")
@click.pass_context
def deactivate_calendar(ctx: click.Context, calendar_id: str) -> None:
    """Stop mirroring CALENDAR_ID and close its push channel."""
    config = _load(ctx)
    _setup_observability(config)
    calendar = _run_job(
        config, lambda services: services.calendars.deactivate_calendar(calendar_id)
    )
    click.echo(f"Deactivated calendar {calendar.id}")


@cli.command("check-config")
@click.pass_context
def check_config(ctx: click.Context) -> None:
    """Print the resolved configuration with secrets masked."""
    config = _load(ctx)
    server = config.server
    click.echo("Configuration:")
    click.echo(f"  {'Environment':<22} {'production' if config.is_production else 'development'}")
    click.echo(f"  {'Base URL':<22} {server.base_url or 'not set'}")
    click.echo(f"  {'Bind':<22} {server.host}:{server.port}")
    click.echo(f"  {'Cron secret':<22} {mask_value(server.cron_secret)}")
    click.echo(f"  {'Google client id':<22} {mask_value(config.google.client_id)}")
    click.echo(f"  {'Google client secret':<22} {mask_value(config.google.client_secret)}")
    click.echo(f"  {'Database URL':<22} {mask_value(config.database.url)}")
    click.echo(f"  {'Log level':<22} {config.logging.level} ({config.logging.format})")

    problems = validate_config(config)
    if problems:
        click.echo(f"\n{len(problems)} problem(s):")
        for problem in problems:
            click.echo(f"  - {problem}")
        sys.exit(1)
    click.echo("\nConfiguration is valid")
