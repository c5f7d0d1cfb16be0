"""Database engine and session setup."""
import logging
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from plex_encoder.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def create_engine(database_url: str):
    """
    Create an async engine for the given URL.

    SQLite connections get foreign keys enabled and a busy timeout so
    concurrent job tasks writing to different rows wait instead of failing.
    """
    engine = create_async_engine(
        database_url,
        connect_args={"timeout": 30} if database_url.startswith("sqlite") else {},
    )

    if database_url.startswith("sqlite"):
        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    return engine


def create_session_factory(engine) -> async_sessionmaker:
    """Build a session factory bound to engine."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine = create_engine(settings.DATABASE_URL)
AsyncSessionLocal = create_session_factory(engine)


async def init_db(bind=None):
    """Create all tables."""
    # Register models on Base.metadata
    from plex_encoder.models import job, media, schedule  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready")

