"""Database access for chronicle.

Engine and session management plus the transaction helpers mutating
operations run under: ``atomic`` makes a block all-or-nothing and
``transaction`` decides whether a public write commits. chronicle does not
own the host application's database: it can create its own tables, but
callers usually hand the engine a ``Session`` they already manage.

Example:
    >>> db = Database(DatabaseConfig(url="sqlite:///history.db"))
    >>> db.initialize(HostBase.metadata)
    >>> with db.session() as session:
    ...     with atomic(session, "publish"):
    ...         session.add(post)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

from sqlalchemy import MetaData, create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from chronicle.base import ChronicleError, PersistenceFailure
from chronicle.models.base import Base

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class DatabaseConfig:
    """Configuration for the chronicle database connection.

    Attributes:
        url: SQLAlchemy connection URL.
        echo: Log emitted SQL.
        pool_size: Connection pool size (ignored for SQLite).
        max_overflow: Connections allowed beyond ``pool_size``.
        pool_pre_ping: Test connections before handing them out.
        create_tables: Create the chronicle tables on initialize.
    """

    url: str = "sqlite:///chronicle.db"
    echo: bool = False
    pool_size: int = 5
    max_overflow: int = 10
    pool_pre_ping: bool = True
    create_tables: bool = True

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


# =============================================================================
# Engine
# =============================================================================


def create_engine_for(config: DatabaseConfig) -> Engine:
    """Build an engine for ``config``.

    SQLite gets the pysqlite transaction fix so that ``BEGIN`` and
    ``SAVEPOINT`` are emitted by SQLAlchemy instead of the driver; nested
    revisions rely on savepoints.
    """
    kwargs: dict[str, Any] = {"echo": config.echo}

    if config.is_sqlite:
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_size"] = config.pool_size
        kwargs["max_overflow"] = config.max_overflow
        kwargs["pool_pre_ping"] = config.pool_pre_ping

    engine = create_engine(config.url, **kwargs)

    if config.is_sqlite:
        _install_sqlite_transactions(engine)

    return engine


def _install_sqlite_transactions(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


def create_schema(engine: Engine, *metadata: MetaData) -> None:
    """Create the chronicle tables and any extra host metadata."""
    Base.metadata.create_all(engine)
    for extra in metadata:
        extra.create_all(engine)


# =============================================================================
# Database
# =============================================================================


class Database:
    """Owns an engine and its session factory.

    Example:
        >>> with Database(DatabaseConfig(url="sqlite://")) as db:
        ...     session = db.session()
    """

    def __init__(self, config: DatabaseConfig | None = None) -> None:
        self._config = config or DatabaseConfig()
        self._engine: Engine | None = None
        self._session_factory: sessionmaker | None = None

    @property
    def config(self) -> DatabaseConfig:
        return self._config

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self.initialize()
        return self._engine  # type: ignore[return-value]

    def initialize(self, *metadata: MetaData) -> None:
        """Connect, verify the connection and create tables.

        Raises:
            PersistenceFailure: If the database cannot be reached.
        """
        if self._engine is not None:
            if metadata:
                create_schema(self._engine, *metadata)
            return

        try:
            self._engine = create_engine_for(self._config)
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))

            self._session_factory = sessionmaker(bind=self._engine)

            if self._config.create_tables:
                create_schema(self._engine, *metadata)
        except SQLAlchemyError as e:
            self._engine = None
            raise PersistenceFailure("connect to database", str(e)) from e

        logger.debug("Connected to %s", self._engine.url.render_as_string(hide_password=True))

    def session(self) -> Session:
        """Open a new session."""
        if self._session_factory is None:
            self.initialize()
        return self._session_factory()  # type: ignore[misc]

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None

    def __enter__(self) -> "Database":
        self.initialize()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


# =============================================================================
# Transactions
# =============================================================================


@contextmanager
def atomic(session: Session, operation: str = "write") -> Iterator[Session]:
    """Run a block atomically.

    Opens a transaction, or a savepoint when the session is already inside
    one, so the block either fully applies or leaves no trace. Database
    errors surface as ``PersistenceFailure``; other errors propagate
    unchanged after the rollback.

    Args:
        session: Session to run in.
        operation: Short description used in error messages.

    Raises:
        PersistenceFailure: If the database rejects a statement.
    """
    try:
        if session.in_transaction():
            with session.begin_nested():
                yield session
        else:
            with session.begin():
                yield session
    except ChronicleError:
        raise
    except SQLAlchemyError as e:
        logger.debug("Rolled back %s: %s", operation, e)
        raise PersistenceFailure(operation, str(e)) from e


def commit(session: Session, operation: str = "write") -> None:
    """Commit the session, rolling back when the database refuses.

    Raises:
        PersistenceFailure: If the commit fails.
    """
    try:
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.debug("Commit of %s failed: %s", operation, e)
        raise PersistenceFailure(operation, str(e)) from e


@contextmanager
def transaction(session: Session, operation: str = "write") -> Iterator[bool]:
    """Run a public write as one unit of work.

    Ownership is decided on entry, before the block reads anything: when no
    transaction is open the block owns the one it starts, commits it on
    success and rolls it back on error. Inside a caller's transaction both
    are left to the caller.

    Yields:
        Whether the block owns the transaction.

    Example:
        >>> with transaction(session, "publish"):
        ...     post = session.get(Post, 1)
        ...     post.title = "Published"
    """
    owns = not session.in_transaction()
    try:
        yield owns
    except Exception:
        if owns:
            session.rollback()
        raise
    if owns:
        commit(session, operation)
