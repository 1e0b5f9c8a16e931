"""
Database connection management for aiobscura.

Provides engine creation for the embedded SQLite store, session factories,
and schema initialization.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, Union

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from aiobscura.models.db import SCHEMA_VERSION, Base, SchemaVersion

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"


def create_db_engine(path: Union[str, Path]) -> Engine:
    """
    Create a SQLAlchemy engine for a SQLite database file.

    File databases run in WAL mode so readers do not block the single
    writer. ``":memory:"`` creates a private in-memory database shared by
    every session of the returned engine.

    Args:
        path: Database file path, or ``":memory:"``

    Returns:
        Engine: Configured SQLAlchemy engine
    """
    if str(path) == MEMORY_PATH:
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        wal = False
    else:
        db_path = Path(path).expanduser()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False, "timeout": 30},
            pool_pre_ping=True,
        )
        wal = True

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):  # pragma: no cover - driver hook
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if wal:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory bound to ``engine``."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Context manager for database sessions with automatic cleanup.

    Yields:
        Session: A SQLAlchemy session

    Example:
        >>> with session_scope(factory) as db:
        >>>     db.query(Project).count()
    """
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Engine) -> int:
    """
    Create missing tables and stamp the schema version.

    Returns:
        int: The schema version now in effect
    """
    Base.metadata.create_all(bind=engine)

    factory = create_session_factory(engine)
    with session_scope(factory) as db:
        current = db.query(SchemaVersion).order_by(SchemaVersion.version.desc()).first()
        if current is None or current.version < SCHEMA_VERSION:
            db.add(
                SchemaVersion(
                    version=SCHEMA_VERSION, applied_at=datetime.now(timezone.utc)
                )
            )
            logger.info(f"Database schema stamped at version {SCHEMA_VERSION}")
            return SCHEMA_VERSION
        return current.version
