import logging
import sqlite3
from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from sqlalchemy.engine.url import make_url

from checkin.core.config import settings
from checkin.models.base import Base

logger = logging.getLogger(__name__)


class DatabaseFactory:
    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or settings.DATABASE_URL
        self.engine = self.get_engine()
        self.session_factory = self.get_session_factory()

    def get_engine(self) -> AsyncEngine:
        """Create and return a database engine based on configuration."""
        try:
            url = make_url(self.database_url)
            is_sqlite = url.drivername.startswith("sqlite")
            if url.drivername == "sqlite":
                url = url.set(drivername="sqlite+aiosqlite")

            logger.info("Creating async database engine driver=%s database=%s", url.drivername, url.database)
            connect_args = {}
            if is_sqlite:
                connect_args = {"check_same_thread": False, "timeout": 30}
            engine = create_async_engine(
                url,
                echo=settings.DEBUG and getattr(logging, settings.SQL_LOG_LEVEL.upper(), logging.WARNING) <= logging.DEBUG,
                poolclass=NullPool,
                connect_args=connect_args,
            )

            # Enable SQLite PRAGMAs for better concurrency.
            if is_sqlite:
                @event.listens_for(engine.sync_engine, "connect")
                def set_sqlite_pragma(dbapi_connection, connection_record):
                    if isinstance(dbapi_connection, sqlite3.Connection):
                        cursor = dbapi_connection.cursor()
                        cursor.execute("PRAGMA journal_mode=WAL")
                        cursor.execute("PRAGMA synchronous=NORMAL")
                        cursor.execute("PRAGMA busy_timeout=5000")
                        cursor.close()

            return engine
        except Exception as e:
            logger.error(f"Error creating database engine: {e}")
            raise

    def get_session_factory(self) -> async_sessionmaker:
        """Create and return a session factory."""
        return async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def init_db(self) -> None:
        """Create tables that do not exist yet."""
        # Import models so they register on the metadata
        import checkin.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


db_factory = DatabaseFactory()

