"""Command-line entry point for estate-agenda."""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path

import click

from estate_agenda.config import AgendaConfig, ConfigError, load_config
from estate_agenda.core.logging import configure_logging
from estate_agenda.db import Database
from estate_agenda.migrations import run_migrations
from estate_agenda.parsing.extractor import AppointmentExtractor

START_PATH = "/api/oauth/google/start"
CALLBACK_PATH = "/api/oauth/google/callback"


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to agenda.toml (defaults to $ESTATE_AGENDA_CONFIG or ./agenda.toml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """Estate Agenda: appointment confirmations to Google Calendar."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
        service_name=config.name,
    )
    ctx.obj = config


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True, help="Bind address")
@click.option("--port", type=int, default=None, help="Port (defaults to [agenda].port)")
@click.option("--no-migrate", is_flag=True, help="Skip database provisioning and migrations")
@click.pass_obj
def serve(config: AgendaConfig, host: str, port: int | None, no_migrate: bool) -> None:
    """Run the HTTP API."""
    import uvicorn

    from estate_agenda.api.app import create_app

    app = create_app(config, migrate=not no_migrate)
    # log_config=None keeps the structlog handlers installed above
    uvicorn.run(app, host=host, port=port or config.port, log_config=None)


@cli.command()
@click.pass_obj
def migrate(config: AgendaConfig) -> None:
    """Create the database if needed and apply all migrations."""
    database = Database.from_config(config.database)
    asyncio.run(_migrate(database))
    click.echo(f"Database {database.db_name} is at head")


async def _migrate(database: Database) -> None:
    await database.provision()
    await run_migrations(database.url)


@cli.command()
@click.argument("text")
@click.option("--sender", required=True, help="Sender phone number")
@click.option(
    "--now",
    "now_value",
    default=None,
    help="Reference time as ISO 8601 (defaults to the current time in the calendar zone)",
)
@click.pass_obj
def parse(config: AgendaConfig, text: str, sender: str, now_value: str | None) -> None:
    """Dry-run extraction of TEXT; prints the appointment as JSON (or null)."""
    now = None
    if now_value is not None:
        try:
            now = datetime.fromisoformat(now_value)
        except ValueError as exc:
            raise click.BadParameter(f"not an ISO 8601 datetime: {now_value}") from exc
        if now.tzinfo is None:
            now = now.replace(tzinfo=config.calendar.tzinfo)

    extractor = AppointmentExtractor(
        timezone=config.calendar.timezone,
        rollover_days=config.pipeline.past_date_rollover_days,
        denylist=config.pipeline.test_denylist,
    )
    appointment = extractor.extract(text, sender, now=now)
    payload = appointment.model_dump(mode="json") if appointment is not None else None
    click.echo(json.dumps(payload, indent=2, ensure_ascii=False))


@cli.command("auth-url")
@click.pass_obj
def auth_url(config: AgendaConfig) -> None:
    """Print the URL that starts the Google authorization flow.

    The flow must start on the running server, which owns the CSRF state.
    """
    if not config.calendar.has_app_credentials:
        click.echo(
            "Google OAuth client id/secret are not configured "
            "([calendar].client_id / GOOGLE_CALENDAR_CLIENT_ID)",
            err=True,
        )
        sys.exit(1)
    base = config.redirect_uri.removesuffix(CALLBACK_PATH)
    click.echo(f"{base}{START_PATH}")
    click.echo(f"Authorized redirect URI to register with Google: {config.redirect_uri}", err=True)
