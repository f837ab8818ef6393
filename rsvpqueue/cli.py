"""Typer CLI for rsvpqueue."""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from .config import load_settings, settings, settings_as_dict
from .crud import EventNotFoundError, RosterConflictError, load_snapshot, respond
from .database import get_session
from .notifications import rsvp_link
from .roster import RsvpAction
from .scheduler import start_scheduler, stop_scheduler
from .status import project
from .storage import (
    build_token_signer,
    ensure_root_token,
    fetch_root_token,
    fetch_webhook_secret,
    init_db,
    rotate_root_token,
    rotate_signing_secret,
    rotate_webhook_secret,
    upgrade_database,
)
from .sweep import run_auto_promote_sweep

app = typer.Typer(help="rsvpqueue command-line interface")


def _exit_if_readonly(exc: OperationalError, what: str) -> None:
    message = str(getattr(exc, "orig", exc)).lower()
    if "readonly" in message or "read-only" in message:
        typer.secho(
            f"Unable to {what} because the database is read-only. "
            f"Ensure the process can write to {settings.database_path} "
            "(run with sudo or adjust file ownership/permissions).",
            err=True,
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command("admin-token")
def admin_token() -> None:
    """Print the current root admin token."""
    init_db()
    typer.echo(fetch_root_token())


@app.command("rotate-admin-token")
def rotate_admin_token() -> None:
    """Rotate the root admin token."""
    try:
        init_db()
        token = rotate_root_token()
    except OperationalError as exc:
        _exit_if_readonly(exc, "rotate the root admin token")
        raise
    typer.echo(token)


@app.command("webhook-secret")
def webhook_secret(
    rotate: bool = typer.Option(False, "--rotate", help="Issue a new secret first"),
) -> None:
    """Print the bearer secret the SMS provider must send to the reply webhook."""
    if settings.sms_webhook_secret:
        typer.secho(
            "RSVPQUEUE_SMS_WEBHOOK_SECRET is set; the stored secret is not used.",
            err=True,
            fg=typer.colors.YELLOW,
        )
    try:
        init_db()
        if rotate:
            rotate_webhook_secret()
    except OperationalError as exc:
        _exit_if_readonly(exc, "rotate the webhook secret")
        raise
    typer.echo(fetch_webhook_secret())


@app.command("rotate-signing-secret")
def rotate_signing_secret_command(
    yes: bool = typer.Option(False, "--yes", help="Skip the confirmation prompt"),
) -> None:
    """Rotate the RSVP link signing secret. Every link already sent stops working."""
    if settings.token_secret:
        typer.secho(
            "RSVPQUEUE_TOKEN_SECRET is set; links are signed with it and the "
            "stored secret is not used.",
            err=True,
            fg=typer.colors.YELLOW,
        )
    if not yes:
        typer.confirm("Invalidate every outstanding RSVP link?", abort=True)
    try:
        init_db()
        rotate_signing_secret()
    except OperationalError as exc:
        _exit_if_readonly(exc, "rotate the signing secret")
        raise
    typer.echo("Signing secret rotated.")


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
        _exit_if_readonly(exc, "upgrade")
        raise

    if not actions:
        typer.echo("Database already up to date.")
        return

    ensure_root_token()
    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("sweep")
def sweep() -> None:
    """Run the auto-promote sweep once."""
    init_db()
    stats = run_auto_promote_sweep()
    typer.echo(f"Sweep complete: {stats}")


@app.command("status")
def event_status(event_id: str = typer.Argument(..., help="Event id")) -> None:
    """Show an event's roster and projected statuses."""
    init_db()
    try:
        with get_session() as session:
            snapshot = load_snapshot(session, event_id)
    except EventNotFoundError:
        typer.secho(f"Event {event_id} not found.", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    statuses = project(snapshot.invitees, snapshot.scheduled_at)
    typer.echo(
        f"{snapshot.event_id}: {statuses.confirmation_status.value}, "
        f"{statuses.time_status.value} ({snapshot.invite_mode.value}, "
        f"{snapshot.spots} spot(s))"
    )
    for invitee in snapshot.invitees:
        typer.echo(f"  {invitee.priority:>3}  {invitee.status.value:<9} {invitee.name}")


@app.command("respond")
def respond_command(
    event_id: str = typer.Argument(..., help="Event id"),
    identity: str = typer.Argument(..., help="Invitee email or phone"),
    action: RsvpAction = typer.Argument(..., help="confirm or decline"),
) -> None:
    """Record a confirm or decline on an invitee's behalf."""
    init_db()
    try:
        with get_session() as session:
            outcome = respond(session, event_id, identity, action)
    except EventNotFoundError:
        typer.secho(f"Event {event_id} not found.", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except RosterConflictError as exc:
        typer.secho(str(exc), err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    verdict = outcome.verdict
    color = typer.colors.GREEN if verdict.success else typer.colors.YELLOW
    name = verdict.target.name if verdict.target else identity
    typer.secho(verdict.message or f"Recorded {action.value} for {name}.", fg=color)
    if verdict.promoted_invitee:
        typer.echo(f"Promoted {verdict.promoted_invitee.name}.")
    if not verdict.success and not (verdict.error and verdict.error.is_informational):
        raise typer.Exit(code=1)


@app.command("issue-links")
def issue_links(
    event_id: str = typer.Argument(..., help="Event id"),
    identity: str = typer.Argument(..., help="Invitee email or phone"),
    ttl_days: int | None = typer.Option(
        None, "--ttl-days", min=1, help="Link lifetime in days (default from config)"
    ),
) -> None:
    """Print fresh confirm and decline links for an invitee."""
    init_db()
    signer = build_token_signer()
    if ttl_days is not None:
        signer.ttl = timedelta(days=ttl_days)
    tokens = signer.issue_pair(event_id, identity)
    for action, token in tokens.items():
        typer.echo(f"{action.value}: {rsvp_link(settings.public_base_url, token)}")


@app.command("config")
def show_config(
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to rsvpqueue.toml (default: ./rsvpqueue.toml)"
    ),
    show_secrets: bool = typer.Option(
        False, "--show-secrets", help="Print secret values instead of redacting them"
    ),
) -> None:
    """Show the effective configuration."""
    effective = settings_as_dict(
        load_settings(config_path), redact_secrets=not show_secrets
    )
    typer.echo(json.dumps(effective, indent=2))


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start FastAPI with APScheduler."""
    init_db()
    start_scheduler()
    config = uvicorn.Config(
        "rsvpqueue.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    try:
        typer.echo(f"Starting rsvpqueue on {host}:{port}")
        server.run()
    finally:
        stop_scheduler()


if __name__ == "__main__":
    app()
