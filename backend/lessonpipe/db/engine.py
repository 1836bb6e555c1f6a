"""Async engine and session factory.

build_engine() is used directly by tests with throwaway databases; the
module-level engine serves the CLI from settings.storage.database_url.
"""
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from lessonpipe.config import settings


def configure_sqlite_pragmas(dbapi_conn, connection_record):
    """Per-connection SQLite setup: WAL journal, full fsync, FK checks, 5s busy wait."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=FULL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def build_engine(database_url: str) -> AsyncEngine:
    """Create an async engine, registering SQLite pragmas when applicable."""
    new_engine = create_async_engine(database_url, echo=False)
    if new_engine.dialect.name == "sqlite":
        # aiosqlite: pool events are registered on the sync engine
        event.listens_for(new_engine.sync_engine, "connect")(configure_sqlite_pragmas)
    return new_engine


def build_sessionmaker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory; expire_on_commit=False keeps loaded jobs usable after commit."""
    return async_sessionmaker(
        bind,
        expire_on_commit=False,
        class_=AsyncSession,
    )


# Default engine (no connection is opened until first use)
engine = build_engine(settings.storage.database_url)
async_session = build_sessionmaker(engine)
