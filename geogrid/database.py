"""SQLAlchemy engine and session handling for the geo-grid tracker.

The CLI, the scheduler's worker threads, and the tests all share one cached
engine per process. File-backed SQLite runs in WAL mode so a scan writing
progress does not block readers; ``sqlite:///:memory:`` uses a single shared
connection.
"""

import os
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///data/geogrid.db"

_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")

_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA foreign_keys=ON;",
    "PRAGMA busy_timeout=5000;",
)


class Base(DeclarativeBase):
    """Declarative base shared by every geo-grid table."""


_engine: Engine | None = None
_SessionFactory: sessionmaker | None = None


def _apply_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    cursor = dbapi_conn.cursor()
    for pragma in _SQLITE_PRAGMAS:
        cursor.execute(pragma)
    cursor.close()


def _prepare_sqlite_file(database_url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    if database_url in _MEMORY_URLS or not database_url.startswith("sqlite:///"):
        return
    db_file = Path(database_url[len("sqlite:///"):])
    db_file.parent.mkdir(parents=True, exist_ok=True)


def get_engine(database_url: str | None = None, echo: bool = False) -> Engine:
    """Return the process-wide engine, creating it on first call.

    Args:
        database_url: SQLAlchemy URL. Defaults to ``$DATABASE_URL``, then
                      ``sqlite:///data/geogrid.db``. Ignored once the
                      engine exists.
        echo: Log every SQL statement.
    """
    global _engine
    if _engine is not None:
        return _engine

    url = database_url or os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL
    options: dict = {"echo": echo, "pool_pre_ping": True}

    if url.startswith("sqlite"):
        _prepare_sqlite_file(url)
        options["connect_args"] = {"check_same_thread": False}
        if url in _MEMORY_URLS:
            options["poolclass"] = StaticPool

    _engine = create_engine(url, **options)
    if url.startswith("sqlite"):
        event.listen(_engine, "connect", _apply_sqlite_pragmas)

    logger.info("Database engine created: %s", url)
    return _engine


def get_session_factory(engine: Engine | None = None) -> sessionmaker:
    """Return the cached session factory bound to the global engine."""
    global _SessionFactory
    if _SessionFactory is None:
        # Loaded rows stay readable after the session closes
        _SessionFactory = sessionmaker(bind=engine or get_engine(), expire_on_commit=False)
    return _SessionFactory


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """One unit of work: commit on success, roll back and re-raise on error.

    Usage::

        with get_session() as session:
            session.add(campaign)
    """
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(database_url: str | None = None, echo: bool = False) -> None:
    """Create any missing campaign, scan, point-result and stat tables."""
    engine = get_engine(database_url=database_url, echo=echo)
    import geogrid.models  # noqa: F401  (registers the tables)
    Base.metadata.create_all(bind=engine)
    logger.info("Geo-grid tables created / verified.")


def table_names() -> list[str]:
    """Names of the tables present in the connected database."""
    return sorted(inspect(get_engine()).get_table_names())


def reset_engine() -> None:
    """Dispose the cached engine and session factory (used between tests)."""
    global _engine, _SessionFactory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionFactory = None
