"""Database integration for sessions, pending requests and consumed IDs.

Any SQLAlchemy URL works. Several SP workers can share one database, which
is what makes the replay guard and the one-shot pending requests hold
across processes.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from authflow.core.errors import StorageError

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path.home() / ".authflow" / "authflow.db"
ENV_DATABASE_URL = "AUTHFLOW_DATABASE_URL"

_SQLITE_FILE_PREFIX = "sqlite:///"


def get_database_url() -> str:
    """Return ``AUTHFLOW_DATABASE_URL`` or a SQLite file under ``~/.authflow``."""
    return os.environ.get(ENV_DATABASE_URL) or f"{_SQLITE_FILE_PREFIX}{DEFAULT_DB_PATH}"


def create_database_engine(url: str | None = None, echo: bool = False) -> Engine:
    """Create an engine, preparing the directory of a SQLite file first.

    Args:
        url: Database URL. Defaults to get_database_url().
        echo: Echo SQL statements.
    """
    url = url or get_database_url()
    options: dict[str, Any] = {"echo": echo, "pool_pre_ping": True}

    if url.startswith("sqlite"):
        # The engine is shared by request threads.
        options["connect_args"] = {"check_same_thread": False}
        db_file = url.removeprefix(_SQLITE_FILE_PREFIX)
        if url.startswith(_SQLITE_FILE_PREFIX) and db_file and db_file != ":memory:":
            Path(db_file).expanduser().parent.mkdir(parents=True, exist_ok=True)

    return create_engine(url, **options)


class Database:
    """Lazily connected database shared by the SQL stores."""

    def __init__(self, url: str | None = None, echo: bool = False) -> None:
        self._url = url or get_database_url()
        self._echo = echo
        self._engine: Engine | None = None
        self._session_factory: sessionmaker[Session] | None = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = create_database_engine(self._url, self._echo)
        return self._engine

    def get_session(self) -> Session:
        """Open an ORM session; the caller commits and closes it."""
        if self._session_factory is None:
            self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        return self._session_factory()

    @contextmanager
    def transaction(self, action: str) -> Iterator[Session]:
        """Run a block in one transaction.

        The block's work is committed when it leaves normally and rolled
        back otherwise. Driver errors surface as StorageError naming
        ``action``.
        """
        session = self.get_session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error while trying to {action}: {e}")
            raise StorageError(f"Failed to {action}: {e}") from e
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def init_db(self) -> None:
        """Create any missing tables."""
        from authflow.storage.models import Base

        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to create tables: {e}") from e

    def verify_connection(self) -> bool:
        """Run ``SELECT 1``.

        Raises:
            StorageError: If the database cannot be reached.
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1")).fetchone()
        except SQLAlchemyError as e:
            raise StorageError(f"Database connection failed: {e}") from e
        return True

    def close(self) -> None:
        """Dispose of pooled connections. The engine is recreated on next use."""
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._session_factory = None
