"""Typer CLI for Eventide."""

from __future__ import annotations

import json
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from .config import (
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .seed import seed_fake_data
from .storage import init_db, seed_baseline, upgrade_database

app = typer.Typer(help="Eventide command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Upgrade the SQLite database schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        message = str(getattr(exc, "orig", exc)).lower()
        if "readonly" in message or "read-only" in message:
            typer.secho(
                "Unable to upgrade because the database is read-only. "
                f"Ensure write access to {settings.database_path}.",
                err=True,
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1)
        raise

    if not actions:
        typer.echo("Database already up to date.")
        return

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start the FastAPI application with uvicorn."""
    if not settings.auth_secret:
        typer.secho(
            "Refusing to start without an auth secret. "
            "Set EVENTIDE_AUTH_SECRET to the key that signs bearer tokens.",
            err=True,
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)
    init_db()
    config = uvicorn.Config(
        "eventide.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    typer.echo(f"Starting Eventide on {host}:{port}")
    server.run()


@app.command("seed-users")
def seed_users() -> None:
    """Insert the demo user roster if no users exist yet."""
    upgrade_database(make_backup=False)
    inserted = seed_baseline()
    if inserted:
        typer.echo(f"Seeded {inserted} demo users.")
    else:
        typer.echo("Users already present; nothing seeded.")


@app.command("seed-data")
def seed_data(
    users: int = typer.Option(
        settings.seed_users, "--users", min=1, help="Number of fake users to create"
    ),
    events: int = typer.Option(
        settings.seed_events, "--events", min=0, help="Number of events to create"
    ),
    max_rsvps: int = typer.Option(
        settings.seed_rsvps_per_event,
        "--max-rsvps",
        min=0,
        help="Maximum RSVPs from invited users per event",
    ),
):
    """Populate the database with fake users, events and RSVPs for testing."""
    stats = seed_fake_data(
        user_count=users,
        event_count=events,
        max_rsvps_per_event=max_rsvps,
    )
    typer.echo(
        f"Seed complete: {stats['users']} users, {stats['events']} events, "
        f"{stats['rsvps']} RSVPs created."
    )


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    mutate_max_retries: int | None = typer.Option(
        None,
        "--mutate-max-retries",
        min=1,
        help="Attempts allowed for a conflicting RSVP write",
    ),
    db_busy_timeout_ms: int | None = typer.Option(
        None,
        "--db-busy-timeout-ms",
        min=0,
        help="How long SQLite writers wait for a lock",
    ),
    seed_demo_users: bool | None = typer.Option(
        None,
        "--seed-demo-users/--no-seed-demo-users",
        help="Insert the demo user roster at start-up",
    ),
    rsvp_requires_invite: bool | None = typer.Option(
        None,
        "--rsvp-requires-invite/--no-rsvp-requires-invite",
        help="Only creators and invited guests may RSVP",
    ),
    auth_algorithm: str | None = typer.Option(
        None, "--auth-algorithm", help="JWT signing algorithm (e.g. HS256, RS256)"
    ),
    auth_audience: str | None = typer.Option(
        None, "--auth-audience", help="Expected JWT audience (empty to skip)"
    ),
    auth_issuer: str | None = typer.Option(
        None, "--auth-issuer", help="Expected JWT issuer (empty to skip)"
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to eventide.toml (default: ./eventide.toml)"
    ),
    seed_users_default: int | None = typer.Option(
        None, "--seed-users", min=1, help="Default seed-data user count"
    ),
    seed_events_default: int | None = typer.Option(
        None, "--seed-events", min=0, help="Default seed-data event count"
    ),
    seed_rsvps_per_event: int | None = typer.Option(
        None, "--seed-rsvps-per-event", min=0, help="Default seed-data RSVPs per event"
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "mutate_max_retries": mutate_max_retries,
        "db_busy_timeout_ms": db_busy_timeout_ms,
        "seed_demo_users": seed_demo_users,
        "rsvp_requires_invite": rsvp_requires_invite,
        "auth_algorithm": auth_algorithm,
        "auth_audience": auth_audience,
        "auth_issuer": auth_issuer,
        "app_host": host,
        "app_port": port,
        "seed_users": seed_users_default,
        "seed_events": seed_events_default,
        "seed_rsvps_per_event": seed_rsvps_per_event,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    target_path = config_path or settings.config_path
    if clean_updates:
        settings_ref = update_config_file(clean_updates, path=target_path)
        typer.echo(f"Updated configuration in {target_path}")
    else:
        settings_ref = load_settings(target_path)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))


if __name__ == "__main__":
    app()
