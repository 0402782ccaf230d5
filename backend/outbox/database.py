"""Async engine and session factory for the outbox database.

PostgreSQL (asyncpg) in production; SQLite (aiosqlite) for development and
tests. The engine is created on first use so importing models never opens a
connection.
"""
import asyncio
import logging
import os

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from outbox.config import Settings, get_settings

logger = logging.getLogger(__name__)

Base = declarative_base()

_engine: AsyncEngine | None = None
_session_maker: async_sessionmaker[AsyncSession] | None = None


def _is_memory_sqlite(settings: Settings) -> bool:
    return settings.use_sqlite and ":memory:" in settings.database_url


def _sqlite_engine(settings: Settings) -> AsyncEngine:
    connect_args: dict = {"check_same_thread": False}
    kwargs: dict = {"echo": settings.app_debug, "connect_args": connect_args}
    if _is_memory_sqlite(settings):
        # Every connection must see the same in-memory database
        kwargs["poolclass"] = StaticPool
    else:
        os.makedirs("data", exist_ok=True)
        connect_args["timeout"] = 30
    logger.info("Using SQLite outbox database at %s", settings.database_url)
    return create_async_engine(settings.database_url, **kwargs)


def _postgres_engine(settings: Settings) -> AsyncEngine:
    logger.info("Connecting to PostgreSQL at %s:%s", settings.postgres_host, settings.postgres_port)
    return create_async_engine(
        settings.database_url,
        echo=settings.app_debug,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
        pool_recycle=settings.db_pool_recycle,
    )


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    """WAL plus a busy timeout: concurrent claims wait for the write lock."""

    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on first call."""
    global _engine
    if _engine is None:
        settings = get_settings()
        if settings.use_sqlite:
            _engine = _sqlite_engine(settings)
            if not _is_memory_sqlite(settings):
                _install_sqlite_pragmas(_engine)
        else:
            _engine = _postgres_engine(settings)
    return _engine


def AsyncSessionLocal() -> AsyncSession:
    """New session; use as ``async with AsyncSessionLocal() as session``."""
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _session_maker()


async def init_db(max_retries: int = 5, base_delay: float = 2) -> None:
    """Create missing tables, retrying while the database comes up.

    Deployments apply the Alembic revisions instead; this serves local
    development, the CLI's ``--init-db`` and the tests.
    """
    import outbox.models  # noqa: F401  (registers tables on Base.metadata)

    for attempt in range(1, max_retries + 1):
        try:
            async with get_engine().begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Outbox tables initialized")
            return
        except Exception as e:
            if attempt == max_retries:
                logger.error("Database initialization failed after %d attempts: %s", max_retries, e)
                raise
            delay = base_delay * 2 ** (attempt - 1)
            logger.warning(
                "Database connection attempt %d/%d failed: %s. Retrying in %ss",
                attempt, max_retries, e, delay,
            )
            await asyncio.sleep(delay)
