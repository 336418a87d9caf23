"""
Log Pulse - Database
====================

Engine and session management for the backing store.
Every mutating store operation runs inside ``transaction()``, which commits
on success and rolls back on any error, so a batch is either fully written
or not at all.
"""

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as OrmSession, sessionmaker

from shared.utils.logging import get_logger
from logpulse.core.errors import StoreFailure
from logpulse.db.models import Base

logger = get_logger(__name__)


def _enable_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


class Database:
    """
    Owns the SQLAlchemy engine and session factory.

    Example:
        db = Database("sqlite:///./logpulse.db")
        db.create_schema()
        with db.transaction("insert_batch") as session:
            session.add_all(rows)
    """

    def __init__(self, url: str, echo: bool = False):
        """
        Initialize the database.

        Args:
            url: SQLAlchemy database URL
            echo: Log every SQL statement
        """
        self.url = url
        connect_args = {}
        if url.startswith("sqlite"):
            # Tails and imports share one engine from different threads
            connect_args["check_same_thread"] = False

        self.engine: Engine = create_engine(url, echo=echo, connect_args=connect_args)
        if url.startswith("sqlite"):
            event.listen(self.engine, "connect", _enable_sqlite_pragmas)

        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_schema(self) -> None:
        """Create all tables that do not exist yet."""
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise StoreFailure("create_schema", str(e)) from e
        logger.info("Database schema ready", extra={"database_url": self.url})

    @contextmanager
    def transaction(self, operation: str) -> Iterator[OrmSession]:
        """
        Run a unit of work atomically.

        Args:
            operation: Name used in logs and in the StoreFailure raised on error

        Raises:
            StoreFailure: If any statement or the commit fails
        """
        try:
            with self._session_factory.begin() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(
                f"Transaction '{operation}' rolled back: {e}",
                extra={"operation": operation}
            )
            raise StoreFailure(operation, str(e)) from e

    @contextmanager
    def session(self) -> Iterator[OrmSession]:
        """Read-only session; nothing is committed."""
        with self._session_factory() as session:
            yield session

    def dispose(self) -> None:
        """Close all pooled connections."""
        self.engine.dispose()
