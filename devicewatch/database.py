"""
Database setup using SQLAlchemy.

We create:
- an Engine bound to the DATABASE_URL from config
- a SessionLocal factory for request/scheduler sessions
- a Base class to declare ORM models

For SQLite every new connection is switched to WAL journaling with a busy
timeout, so the scheduler, the maintenance timers and API readers can share
the file without "database is locked" errors.
"""

import logging
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from devicewatch.config import settings

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_MS = 5000

# Base class for all ORM models
Base = declarative_base()


def _set_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(url: str) -> Engine:
    """
    Build an engine for `url`.

    SQLite file databases get their parent directory created and the WAL /
    busy-timeout / foreign-key pragmas applied on connect.
    """
    parsed = make_url(url)
    connect_args = {}

    if parsed.get_backend_name() == "sqlite":
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = BUSY_TIMEOUT_MS / 1000
        if parsed.database and parsed.database != ":memory:":
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)

    db_engine = create_engine(url, future=True, echo=False, connect_args=connect_args)

    if parsed.get_backend_name() == "sqlite":
        event.listen(db_engine, "connect", _set_sqlite_pragmas)

    return db_engine


# Engine: the core connection to the DB (SQLite by default)
engine = create_db_engine(settings.database_url)

# Session factory: each "unit of work" gets its own session
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    future=True,
)


def get_db():
    """
    FastAPI dependency that provides a SQLAlchemy session.

    The session is created at the start of the request and closed at the end.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_session(factory: sessionmaker = None) -> Session:
    """Context manager for non-request code: commit on success, roll back on error."""
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_database(bind: Engine = None) -> None:
    """Create any missing tables (no-op for existing ones)."""
    # Import models so they are registered on Base.metadata
    from devicewatch import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables ready")
