"""
Click CLI for the Task Tracker service.

Commands:
    serve               Run the REST + WebSocket API under uvicorn
    init-db             Create the SQLite schema
    seed-defaults       Create default categories and priorities for a user
    preview-recurrence  Print the next occurrences of a recurrence pattern
"""

import logging
import os
import sys
from datetime import datetime
from typing import Optional

import click
import uvicorn

from .config import ENV_PREFIX, load_settings
from .database import TaskDatabase
from .errors import TaskTrackerError
from .models import RecurrenceFrequency, RecurrencePattern, coerce_datetime, utc_now
from .recurrence import iter_occurrences


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_days(raw: Optional[str]):
    if not raw:
        return None
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise click.BadParameter("days must be comma separated integers 0-6", param_hint="--days")


@click.group()
@click.version_option(package_name="task-tracker")
def main():
    """Task Tracker: multi-user tasks with recurrence and live updates."""


@main.command()
@click.option("--host", default=None, help="Interface to bind (default from TASK_TRACKER_HOST)")
@click.option("--port", type=int, default=None, help="Port to bind (default from TASK_TRACKER_PORT)")
@click.option("--db-path", default=None, help="SQLite database file")
@click.option("--log-level", default=None, help="Logging level, e.g. INFO or DEBUG")
def serve(host, port, db_path, log_level):
    """Run the API server."""
    # The app reads its settings from the environment at import time
    if db_path:
        os.environ[ENV_PREFIX + "DATABASE_PATH"] = db_path
    if log_level:
        os.environ[ENV_PREFIX + "LOG_LEVEL"] = log_level.upper()
    settings = load_settings()
    host = host or settings.host
    port = port or settings.port

    configure_logging(settings.log_level)
    click.echo(f"Task Tracker API on http://{host}:{port} (database: {settings.database_path})")
    uvicorn.run(
        "task_tracker.api:app",
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
    )


@main.command("init-db")
@click.option("--db-path", default=None, help="SQLite database file")
def init_db(db_path):
    """Create the database schema if it does not exist."""
    path = db_path or load_settings().database_path
    try:
        with TaskDatabase(path):
            pass
    except TaskTrackerError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)
    click.echo(f"Database initialized at {path}")


@main.command("seed-defaults")
@click.argument("user_id")
@click.option("--db-path", default=None, help="SQLite database file")
def seed_defaults(user_id, db_path):
    """Create the default categories and priorities for USER_ID."""
    path = db_path or load_settings().database_path
    try:
        with TaskDatabase(path) as db:
            created = db.seed_user_defaults(user_id)
    except TaskTrackerError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)
    click.echo(
        f"Seeded {created['categories']} categories and "
        f"{created['priorities']} priorities for {user_id}"
    )


@main.command("preview-recurrence")
@click.option(
    "--frequency",
    type=click.Choice([f.value for f in RecurrenceFrequency]),
    required=True,
)
@click.option("--interval", type=int, default=1, show_default=True)
@click.option("--days", default=None, help="Weekdays for weekly patterns, Sunday=0, e.g. 1,3")
@click.option("--day-of-month", type=int, default=None)
@click.option("--end-date", default=None, help="ISO date after which the series stops")
@click.option("--from", "start", default=None, help="ISO start date (default: now)")
@click.option("--count", type=int, default=5, show_default=True)
def preview_recurrence(frequency, interval, days, day_of_month, end_date, start, count):
    """Print the next COUNT occurrences of a recurrence pattern."""
    try:
        pattern = RecurrencePattern(
            frequency=frequency,
            interval=interval,
            days_of_week=_parse_days(days),
            day_of_month=day_of_month,
            end_date=end_date,
        )
    except ValueError as e:
        raise click.BadParameter(str(e))

    current = coerce_datetime(start) if start else utc_now()
    if not isinstance(current, datetime):
        raise click.BadParameter(f"Invalid start date {start!r}", param_hint="--from")

    try:
        occurrences = list(iter_occurrences(current, pattern, count))
    except TaskTrackerError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    for occurrence in occurrences:
        click.echo(occurrence.isoformat())
    if len(occurrences) < count:
        click.echo("(series ends)")


if __name__ == "__main__":
    main()
