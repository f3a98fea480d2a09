"""
Database configuration for the teacher memory store.
Uses SQLAlchemy async; SQLite (aiosqlite) locally, PostgreSQL (asyncpg) in production.
"""
import logging
from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from .config import settings

logger = logging.getLogger(__name__)


def _engine_kwargs(database_url: str) -> dict:
    """Pool sizing only applies to server databases."""
    kwargs = {
        "echo": settings.app_env == "development",
        "pool_pre_ping": True,
    }
    if not database_url.startswith("sqlite"):
        kwargs.update(pool_size=5, max_overflow=10)
    return kwargs


# Create async engine
engine = create_async_engine(settings.database_url, **_engine_kwargs(settings.database_url))

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

# Base class for all models
Base = declarative_base()


def _ensure_sqlite_directory(database_url: str) -> None:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite" or not url.database or url.database == ":memory:":
        return
    Path(url.database).parent.mkdir(parents=True, exist_ok=True)


async def init_db():
    """
    Initialize the database by creating all tables.
    Called on application startup.
    """
    _ensure_sqlite_directory(settings.database_url)
    async with engine.begin() as conn:
        # Import models to ensure they're registered with Base
        from .models import teacher_annotation  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created/verified successfully")


async def close_db():
    """
    Close database connections.
    Called on application shutdown.
    """
    await engine.dispose()
    logger.info("Database connections closed")
