"""
Database connection and session management for the payment ledger.
"""
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy import event, text
from sqlalchemy.pool import StaticPool
import logging

from models import Base

logger = logging.getLogger(__name__)


def _set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable WAL mode and other SQLite optimizations."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


def create_ledger_engine(database_url: str) -> AsyncEngine:
    """
    Create the async engine for the ledger.

    SQLite (aiosqlite) gets WAL mode; an in-memory SQLite URL shares a
    single connection so every session sees the same tables.
    """
    if not database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=False, pool_pre_ping=True)

    in_memory = database_url.rstrip("/").endswith(":") or ":memory:" in database_url
    if in_memory:
        engine = create_async_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_async_engine(
            database_url,
            echo=False,
            connect_args={
                "check_same_thread": False,
                "timeout": 30.0,
            },
            pool_pre_ping=True,
        )
        event.listen(engine.sync_engine, "connect", _set_sqlite_pragma)
    return engine


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> bool:
    """
    Initialize ledger tables.
    Creates all tables defined in models if they don't exist.
    Returns False (and logs) when the ledger database is unreachable.
    """
    try:
        logger.info("Initializing payment ledger tables...")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            if engine.dialect.name == "sqlite":
                await conn.execute(text("PRAGMA wal_checkpoint(TRUNCATE)"))
        logger.info("✅ Payment ledger initialized")
        return True
    except Exception as e:
        logger.warning(f"⚠️  Failed to initialize payment ledger: {e}")
        logger.warning("Bookings still work, but paid orders will not be recorded for reconciliation.")
        logger.warning("Please check DATABASE_URL (example: sqlite+aiosqlite:///./payments.db)")
        return False


async def close_db(engine: AsyncEngine):
    """Close database connections."""
    await engine.dispose()
    logger.info("Payment ledger connection closed")
