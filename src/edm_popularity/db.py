"""SQLite database connection and schema management.

Data is stored in ~/.edm-popularity/edm_popularity.sqlite by default.
WAL mode is enabled so score lookups read the last committed state while an
ingestion run holds the write lock.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = os.path.expanduser("~/.edm-popularity")
DB_FILENAME = "edm_popularity.sqlite"
SUMMARY_FILENAME = "last_update.json"


def get_data_dir() -> Path:
    """Get the data directory, creating it if needed."""
    data_dir = Path(os.environ.get("DATA_DIR", DEFAULT_DATA_DIR))
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def get_db_path() -> Path:
    return get_data_dir() / DB_FILENAME


def get_summary_path() -> Path:
    return get_data_dir() / SUMMARY_FILENAME


def get_db_url() -> str:
    """Get the SQLite database URL."""
    return f"sqlite+aiosqlite:///{get_db_path()}"


def _set_wal_mode(dbapi_connection, connection_record):
    """Enable WAL mode for concurrent reads during writes."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _set_query_only(dbapi_connection, connection_record):
    """Reader connections never write, not even the journal mode."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.execute("PRAGMA query_only=ON")
    cursor.close()


def create_reader_engine(db_path: Path) -> AsyncEngine:
    """Engine for read-only access to an existing database file.

    ``mode=rw`` makes SQLite fail instead of creating a missing file.
    """
    url = f"sqlite+aiosqlite:///file:{db_path}?mode=rw&uri=true"
    engine = create_async_engine(url, echo=False)
    event.listen(engine.sync_engine, "connect", _set_query_only)
    return engine


_engine = None
_session_factory = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_async_engine(get_db_url(), echo=False)
        event.listen(_engine.sync_engine, "connect", _set_wal_mode)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


async def init_db():
    """Create all tables if they don't exist."""
    from .sqlmodels import Base

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database initialized at %s", get_db_path())


async def close_db():
    """Close the database engine."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
