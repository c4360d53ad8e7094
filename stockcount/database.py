import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from stockcount.config import settings

logger = logging.getLogger(__name__)


def normalize_database_url(url: str) -> str:
    """Route PostgreSQL URLs through the psycopg async driver."""
    if url.startswith("postgresql+asyncpg://"):
        return url.replace("postgresql+asyncpg://", "postgresql+psycopg://")
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """
    Let SQLAlchemy own BEGIN on SQLite.

    pysqlite/aiosqlite issue their own implicit BEGIN, which breaks SAVEPOINT
    handling (used by the item slot retry and the auto-audit).
    """
    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_engine_for(url: str, echo: bool = False, **kwargs) -> AsyncEngine:
    """Create an async engine with settings appropriate for the backend."""
    if url.startswith("sqlite"):
        engine = create_async_engine(
            url,
            echo=echo,
            future=True,
            connect_args={"check_same_thread": False},
            **kwargs,
        )
        enable_sqlite_savepoints(engine)
        return engine

    return create_async_engine(
        normalize_database_url(url),
        echo=echo,
        future=True,
        pool_pre_ping=True,  # Check connection health before use
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        connect_args={"connect_timeout": 30},
        **kwargs,
    )


engine = create_engine_for(settings.DATABASE_URL, echo=settings.DEBUG)

# Create async session factory
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@asynccontextmanager
async def get_db_session():
    """Context manager for getting database session (for scripts and jobs)."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(bind: AsyncEngine = None) -> None:
    """Create all tables registered on Base.metadata."""
    # Import all models to register them with Base.metadata
    from stockcount import models  # noqa: F401

    target = bind or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Registered {len(Base.metadata.tables)} tables")
