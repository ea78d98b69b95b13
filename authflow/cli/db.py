"""Database management CLI commands."""

from __future__ import annotations

import click


@click.group()
def db() -> None:
    """Manage the AuthFlow session database."""
    pass


@db.command("init")
@click.option(
    "--url",
    "database_url",
    help="SQLAlchemy database URL. Defaults to sqlite:///~/.authflow/authflow.db",
)
def db_init(database_url: str | None) -> None:
    """Create the session, pending request and consumed message tables."""
    from authflow.core.errors import StorageError
    from authflow.storage import Database

    database = Database(database_url)
    click.echo(f"Initializing database at: {database.url}")
    try:
        database.init_db()
        database.verify_connection()
    except StorageError as e:
        raise click.ClickException(str(e)) from None
    finally:
        database.close()

    click.echo("Database initialized successfully!")


@db.command("purge")
@click.option(
    "--url",
    "database_url",
    help="SQLAlchemy database URL. Defaults to sqlite:///~/.authflow/authflow.db",
)
def db_purge(database_url: str | None) -> None:
    """Delete expired sessions, pending requests and consumed message IDs."""
    from datetime import UTC, datetime

    from authflow.core.errors import StorageError
    from authflow.storage import Database, SQLPendingRequestStore, SQLReplayGuard, SQLSessionStore

    database = Database(database_url)
    now = datetime.now(UTC)
    try:
        sessions = SQLSessionStore(database).purge_expired(now)
        pending = SQLPendingRequestStore(database).purge_expired(now)
        consumed = SQLReplayGuard(database).purge()
    except StorageError as e:
        raise click.ClickException(str(e)) from None
    finally:
        database.close()

    click.echo("Purged expired records:")
    click.echo(f"  Sessions: {sessions}")
    click.echo(f"  Pending requests: {pending}")
    click.echo(f"  Consumed message IDs: {consumed}")
