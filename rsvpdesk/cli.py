"""Typer CLI for RSVP Desk."""

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
from .database import get_session
from .errors import ValidationError
from .seed import seed_fake_data
from .storage import bootstrap_admin, init_db, upgrade_database
from .users import get_user_by_email, rotate_api_token

app = typer.Typer(help="RSVP Desk command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def _fail(message: str) -> None:
    typer.secho(message, err=True, fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _is_readonly(exc: OperationalError) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return "readonly" in message or "read-only" in message


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
        if _is_readonly(exc):
            _fail(
                "Unable to upgrade because the database is read-only. "
                f"Ensure write access to {settings.database_path}."
            )
        raise

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("ensure-admin")
def ensure_admin_command(
    email: str | None = typer.Option(
        None, "--email", help="Admin email (default: admin_email setting)"
    ),
    password: str | None = typer.Option(
        None, "--password", help="Admin password (default: admin_password setting)"
    ),
    name: str | None = typer.Option(None, "--name", help="Display name for new admins"),
) -> None:
    """Create the admin account or reset its password and role."""
    upgrade_database(make_backup=False)
    try:
        result = bootstrap_admin(email=email, password=password, name=name)
    except ValidationError as exc:
        _fail(exc.message)
    if result is None:
        _fail(
            "No admin credentials given. Pass --email/--password or set "
            "RSVPDESK_ADMIN_EMAIL and RSVPDESK_ADMIN_PASSWORD."
        )
    admin_email, created = result
    verb = "Created" if created else "Updated"
    typer.echo(f"{verb} admin account {admin_email}")


@app.command("rotate-token")
def rotate_token(email: str = typer.Argument(..., help="Email of the account")) -> None:
    """Issue a new API token for a user and print it."""
    init_db()
    try:
        with get_session() as session:
            user = get_user_by_email(session, email)
            if user is None:
                _fail(f"No user found with email {email}")
            token = rotate_api_token(session, user)
    except OperationalError as exc:
        if _is_readonly(exc):
            _fail(
                "Unable to rotate the token because the database is read-only. "
                f"Ensure the process can write to {settings.database_path}."
            )
        raise
    typer.echo(token)


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start the FastAPI application under uvicorn."""
    init_db()
    config = uvicorn.Config(
        "rsvpdesk.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    typer.echo(f"Starting RSVP Desk on {host}:{port}")
    server.run()


@app.command("seed-data")
def seed_data(
    users: int = typer.Option(
        settings.seed_users, "--users", min=1, help="Number of regular users to create"
    ),
    events: int = typer.Option(
        settings.seed_events, "--events", min=0, help="Number of events to create"
    ),
    max_rsvps: int = typer.Option(
        settings.seed_rsvps_per_event,
        "--max-rsvps",
        min=0,
        help="Maximum RSVPs to attach to each event",
    ),
):
    """Populate the database with fake users, events and chats for testing."""
    stats = seed_fake_data(
        user_count=users,
        event_count=events,
        max_rsvps_per_event=max_rsvps,
    )
    typer.echo(
        f"Seed complete: {stats['users']} users, {stats['events']} events, "
        f"{stats['rsvps']} RSVPs, {stats['chats']} chats created."
    )


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    app_url: str | None = typer.Option(
        None, "--app-url", help="Public base URL used in invitation links"
    ),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to rsvpdesk.toml (default: ./rsvpdesk.toml)"
    ),
    db_timeout_seconds: float | None = typer.Option(
        None, "--db-timeout-seconds", min=0.1, help="SQLite busy timeout"
    ),
    smtp_host: str | None = typer.Option(None, "--smtp-host", help="SMTP relay host"),
    smtp_port: int | None = typer.Option(None, "--smtp-port", help="SMTP relay port"),
    smtp_user: str | None = typer.Option(None, "--smtp-user", help="SMTP login"),
    smtp_use_ssl: bool | None = typer.Option(
        None,
        "--smtp-ssl/--smtp-starttls",
        help="Connect with implicit TLS or upgrade with STARTTLS",
    ),
    mail_from: str | None = typer.Option(
        None, "--mail-from", help="From header for invitation emails"
    ),
    rsvp_retry_attempts: int | None = typer.Option(
        None,
        "--rsvp-retry-attempts",
        min=1,
        help="Retries when concurrent RSVPs touch the same event",
    ),
    events_per_page: int | None = typer.Option(
        None, "--events-per-page", min=1, help="Default event list size"
    ),
    seed_users: int | None = typer.Option(
        None, "--seed-users", min=1, help="Default seed-data users"
    ),
    seed_events: int | None = typer.Option(
        None, "--seed-events", min=0, help="Default seed-data events"
    ),
    seed_rsvps_per_event: int | None = typer.Option(
        None, "--seed-rsvps-per-event", min=0, help="Default seed-data RSVPs per event"
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "app_host": host,
        "app_port": port,
        "app_url": app_url,
        "db_timeout_seconds": db_timeout_seconds,
        "smtp_host": smtp_host,
        "smtp_port": smtp_port,
        "smtp_user": smtp_user,
        "smtp_use_ssl": smtp_use_ssl,
        "mail_from": mail_from,
        "rsvp_retry_attempts": rsvp_retry_attempts,
        "events_per_page": events_per_page,
        "seed_users": seed_users,
        "seed_events": seed_events,
        "seed_rsvps_per_event": seed_rsvps_per_event,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    settings_ref = settings
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
