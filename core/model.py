import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from sqlalchemy import event, func
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.future import select
from sqlalchemy.orm import declarative_base

from core.exceptions import ConfigurationError, TransientStoreError

Base = declarative_base()
logger = logging.getLogger("RowQueue.Model")


def utc_now() -> datetime:
    """Current UTC time as a naive datetime, matching the DATETIME columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _is_transient(error: Exception) -> bool:
    if isinstance(error, (OperationalError, InterfaceError)):
        return True
    return isinstance(error, DBAPIError) and error.connection_invalidated


class Model:
    """Holds the shared engine and session factory of the job storage."""

    # This will be set by the application bootstrap
    _engine = None
    _session_factory = None
    _is_enabled = False

    @classmethod
    def configure(cls, connection_string: str, **engine_kwargs):
        """Configure the database connection."""
        if not connection_string:
            raise ConfigurationError("A database connection string is required")

        cls._engine = create_async_engine(connection_string, **engine_kwargs)
        if cls._engine.dialect.name == "sqlite":
            # Cascading deletes of job parameters and states rely on foreign keys
            @event.listens_for(cls._engine.sync_engine, "connect")
            def set_sqlite_pragma(dbapi_conn: Any, _connection_record: Any) -> None:
                cursor = dbapi_conn.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.execute("PRAGMA busy_timeout=5000")
                cursor.close()

        cls._session_factory = async_sessionmaker(
            cls._engine, expire_on_commit=False, class_=AsyncSession
        )
        cls._is_enabled = True
        logger.info(f"Database connection configured ({cls._engine.dialect.name})")

    @classmethod
    def ensure_configured(cls, component: str) -> None:
        """Fail fast when a component is built before the storage is configured."""
        if not cls._is_enabled or cls._session_factory is None:
            raise ConfigurationError(
                f"Cannot create {component} - the job storage is not configured. "
                "Call Model.configure() first."
            )

    @classmethod
    async def cleanup(cls):
        """Cleanup database connections and close the engine."""
        if cls._engine is not None:
            await cls._engine.dispose()
            cls._engine = None
            cls._session_factory = None
            cls._is_enabled = False
            logger.info("Database connections closed")

    @classmethod
    async def get_session(cls) -> Optional[AsyncSession]:
        """Get a new session for database operations."""
        if not cls._is_enabled:
            logger.warning("Database operations attempted while the storage is disabled")
            return None

        if cls._session_factory is None:
            raise ConfigurationError("Database not configured. Call Model.configure() first.")
        return cls._session_factory()

    @classmethod
    @asynccontextmanager
    async def transaction(cls) -> AsyncIterator[AsyncSession]:
        """
        Yield a session whose work is committed on exit and rolled back on error.
        Connectivity problems are re-raised as TransientStoreError.
        """
        if cls._session_factory is None:
            raise ConfigurationError("Database not configured. Call Model.configure() first.")

        session: AsyncSession = cls._session_factory()
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            if _is_transient(e):
                raise TransientStoreError(str(e)) from e
            raise
        finally:
            await session.close()

    @classmethod
    async def create_tables(cls):
        """Create all tables defined in models."""
        if not cls._is_enabled:
            logger.info("Skipping table creation as the storage is disabled")
            return

        # Register every table on the metadata before creating them
        import app.models  # noqa: F401

        async with cls._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables created")

    @classmethod
    async def drop_tables(cls):
        """Drop all tables defined in models."""
        if not cls._is_enabled:
            return

        import app.models  # noqa: F401

        async with cls._engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            logger.info("Database tables dropped")

    @classmethod
    async def find(cls, model_class, id_value):
        """Find a record by ID."""
        if not cls._is_enabled:
            logger.warning(f"Find operation on {model_class.__name__} skipped - storage disabled")
            return None

        async with await cls.get_session() as session:
            result = await session.execute(
                select(model_class).where(model_class.id == id_value)
            )
            return result.scalars().first()

    @classmethod
    async def count(cls, model_class, *criteria) -> int:
        """Count the records of a model matching the given criteria."""
        if not cls._is_enabled:
            return 0

        async with await cls.get_session() as session:
            stmt = select(func.count()).select_from(model_class)
            if criteria:
                stmt = stmt.where(*criteria)
            result = await session.execute(stmt)
            return result.scalar_one()
