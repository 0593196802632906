"""
Database Initialization

Builds the async SQLAlchemy engine and session factory, and creates the
transactions table. SQLite files run in WAL mode for concurrent readers.
"""
import logging
from pathlib import Path
from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..config import Settings, settings as default_settings
from .models import Base

logger = logging.getLogger(__name__)


def database_url(settings: Settings) -> str:
    return f"sqlite+aiosqlite:///{settings.database_path}"


def _enable_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")  # 30 second timeout
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


def create_engine(settings: Optional[Settings] = None) -> AsyncEngine:
    """
    Create the async engine for the configured SQLite database.

    The database directory is created if missing.
    """
    settings = settings or default_settings
    db_path = Path(settings.database_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(
        database_url(settings),
        echo=False,
        future=True,
    )
    event.listen(engine.sync_engine, "connect", _enable_sqlite_pragmas)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def initialize_database(engine: AsyncEngine) -> None:
    """
    Create all tables if they do not exist.

    Called once at process start.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Database initialized at {engine.url}")
