"""Typer CLI for Happenings."""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import sys
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
from .crud import (
    get_happening,
    list_all_happenings,
    load_override_set,
    update_happening_recurrence,
)
from .database import get_session
from .dates import add_days, format_date_key_for_display, parse_date_key, today
from .health import audit_happenings
from .occurrences import compute_next_occurrence, expand_occurrences_for_event
from .recurrence import (
    canonicalize_descriptor,
    interpret_recurrence,
    label_from_recurrence,
)
from .scheduler import start_scheduler, stop_scheduler
from .storage import init_db, upgrade_database

app = typer.Typer(help="Happenings command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def _validated_date_key(value: str | None, *, option: str) -> str | None:
    if value is None:
        return None
    try:
        parse_date_key(value)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint=option) from exc
    return value


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
    """Start FastAPI with APScheduler."""
    init_db()
    start_scheduler()
    config = uvicorn.Config(
        "happenings.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    try:
        typer.echo(f"Starting Happenings on {host}:{port}")
        server.run()
    finally:
        stop_scheduler()


@app.command("next")
def next_occurrence(
    happening_id: str = typer.Argument(..., help="Happening id"),
    today_key: str | None = typer.Option(
        None, "--today", help="Reference date (YYYY-MM-DD), default is today"
    ),
) -> None:
    """Print the next occurrence of a happening."""
    reference = _validated_date_key(today_key, option="--today")
    init_db()
    with get_session() as session:
        happening = get_happening(session, happening_id)
        if not happening:
            typer.secho("Happening not found", err=True, fg=typer.colors.RED)
            raise typer.Exit(code=1)
        descriptor = happening.descriptor
        label = label_from_recurrence(interpret_recurrence(descriptor))
        result = compute_next_occurrence(
            descriptor, reference, overrides=load_override_set(session, happening.id)
        )
    typer.echo(f"{happening.title} ({label})")
    if not result.is_confident:
        typer.secho("Schedule is not confident; no date to show.", fg=typer.colors.YELLOW)
    elif not result.has_future:
        typer.echo("No upcoming occurrence.")
    else:
        typer.echo(f"Next: {format_date_key_for_display(result.date_key)}")


@app.command("expand")
def expand(
    happening_id: str = typer.Argument(..., help="Happening id"),
    start: str | None = typer.Option(None, "--start", help="Window start (YYYY-MM-DD)"),
    end: str | None = typer.Option(None, "--end", help="Window end (YYYY-MM-DD)"),
    max_occurrences: int | None = typer.Option(
        None, "--max", min=0, help="Maximum occurrences to list"
    ),
    include_cancelled: bool = typer.Option(
        False, "--include-cancelled", help="Show cancelled occurrences too"
    ),
) -> None:
    """List a happening's occurrences within a window."""
    start_key = _validated_date_key(start, option="--start")
    end_key = _validated_date_key(end, option="--end")
    init_db()
    with get_session() as session:
        happening = get_happening(session, happening_id)
        if not happening:
            typer.secho("Happening not found", err=True, fg=typer.colors.RED)
            raise typer.Exit(code=1)
        descriptor = happening.descriptor
        start_key = start_key or today(descriptor.timezone)
        end_key = end_key or add_days(start_key, settings.default_window_days)
        if end_key < start_key:
            raise typer.BadParameter("--end must not be before --start", param_hint="--end")
        occurrences = expand_occurrences_for_event(
            descriptor,
            start_key,
            end_key,
            max_occurrences=max_occurrences,
            overrides=load_override_set(session, happening.id),
            include_cancelled=include_cancelled,
        )
    for occurrence in occurrences:
        suffix = f" [{occurrence.status}]" if occurrence.status else ""
        typer.echo(f"{occurrence.date_key}{suffix}")
    typer.echo(f"{len(occurrences)} occurrence(s) between {start_key} and {end_key}")


@app.command("health")
def health(
    today_key: str | None = typer.Option(None, "--today", help="Reference date"),
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON"),
) -> None:
    """Audit stored recurrence data; exits 1 when critical issues exist."""
    reference = _validated_date_key(today_key, option="--today")
    init_db()
    with get_session() as session:
        report = audit_happenings(list_all_happenings(session), reference)
    if as_json:
        payload = {
            "summary": report.summary(),
            "has_critical_issues": report.has_critical_issues,
            "findings": [finding.__dict__ for finding in report.findings],
        }
        typer.echo(json.dumps(payload, indent=2))
    else:
        for key, value in report.summary().items():
            typer.echo(f"{key}: {value}")
        for finding in report.findings:
            typer.echo(f"- {finding.issue}: {finding.title} ({finding.happening_id}) {finding.detail}")
    if report.has_critical_issues:
        raise typer.Exit(code=1)


@app.command("canonicalize")
def canonicalize(
    apply: bool = typer.Option(
        False, "--apply", help="Write changes instead of reporting them"
    ),
) -> None:
    """Canonicalize stored recurrence fields (dry run by default)."""
    init_db()
    changed = 0
    with get_session() as session:
        for happening in list_all_happenings(session):
            descriptor = happening.descriptor
            canonical, derived = canonicalize_descriptor(descriptor)
            if canonical == descriptor:
                continue
            changed += 1
            note = " (day_of_week derived from event_date)" if derived else ""
            typer.echo(
                f"{happening.id}: rule {descriptor.recurrence_rule!r} -> "
                f"{canonical.recurrence_rule!r}, day {descriptor.day_of_week!r} -> "
                f"{canonical.day_of_week!r}{note}"
            )
            if apply:
                update_happening_recurrence(session, happening, canonical)
        if not apply:
            session.rollback()
    verb = "Updated" if apply else "Would update"
    typer.echo(f"{verb} {changed} happening(s).")


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    timezone: str | None = typer.Option(
        None, "--timezone", help="IANA timezone that defines 'today'"
    ),
    default_window_days: int | None = typer.Option(
        None, "--default-window-days", min=1, help="Default listing window in days"
    ),
    max_occurrences_per_event: int | None = typer.Option(
        None,
        "--max-occurrences-per-event",
        min=0,
        help="Occurrence cap per happening when expanding",
    ),
    max_events: int | None = typer.Option(
        None, "--max-events", min=1, help="Happenings processed per listing"
    ),
    max_total_occurrences: int | None = typer.Option(
        None, "--max-total-occurrences", min=1, help="Occurrences per listing"
    ),
    max_scan_days: int | None = typer.Option(
        None, "--max-scan-days", min=1, help="Next-occurrence search horizon"
    ),
    digest_window_days: int | None = typer.Option(
        None, "--digest-window-days", min=1, help="Days covered by the weekly digest"
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Toggle background scheduler (health audit)",
    ),
    health_audit_interval_hours: int | None = typer.Option(
        None, "--health-audit-interval-hours", min=1, help="Hours between audits"
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    config_path: Path | None = typer.Option(
        None,
        "--config-path",
        help="Path to happenings.toml (default: ./happenings.toml)",
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "timezone": timezone,
        "default_window_days": default_window_days,
        "max_occurrences_per_event": max_occurrences_per_event,
        "max_events": max_events,
        "max_total_occurrences": max_total_occurrences,
        "max_scan_days": max_scan_days,
        "digest_window_days": digest_window_days,
        "enable_scheduler": enable_scheduler,
        "health_audit_interval_hours": health_audit_interval_hours,
        "app_host": host,
        "app_port": port,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    target_path = config_path or settings.config_path
    if clean_updates:
        try:
            settings_ref = update_config_file(clean_updates, path=target_path)
        except ValueError as exc:
            typer.secho(str(exc), err=True, fg=typer.colors.RED)
            raise typer.Exit(code=1)
        typer.echo(f"Updated configuration in {target_path}")
    else:
        settings_ref = load_settings(target_path)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))


@app.command("test")
def run_tests(pytest_args: list[str] = typer.Argument(None, help="Extra pytest args")):
    """Run the test suite with helpful defaults."""
    env = os.environ.copy()
    env.setdefault("PYTHONPATH", ".")
    env.setdefault("UV_CACHE_DIR", ".uv-cache")
    uv_path = shutil.which("uv")
    if uv_path:
        cmd = [uv_path, "run", "pytest"]
    else:
        typer.echo("uv not found, falling back to python -m pytest")
        cmd = [sys.executable, "-m", "pytest"]
    if pytest_args:
        cmd.extend(pytest_args)
    typer.echo(f"Running tests: {' '.join(cmd)}")
    result = subprocess.run(cmd, env=env)
    raise typer.Exit(code=result.returncode)


if __name__ == "__main__":
    app()
