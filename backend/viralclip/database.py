"""
Database configuration for the async SQLAlchemy engine.
"""

import logging

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from viralclip.config import get_settings

logger = logging.getLogger(__name__)

_engine = None
_session_maker = None
_initialized = False


class Base(DeclarativeBase):
    pass


def get_engine():
    global _engine
    settings = get_settings()
    if _engine is None and settings.database_url:
        _engine = create_async_engine(
            settings.database_url,
            echo=settings.database_echo,
            pool_pre_ping=True,
        )
        logger.info(f"Database engine created for: {settings.database_url[:50]}...")
    return _engine


def get_session_maker():
    global _session_maker
    if _session_maker is None:
        engine = get_engine()
        if engine:
            _session_maker = async_sessionmaker(
                engine,
                class_=AsyncSession,
                expire_on_commit=False
            )
    return _session_maker


async def create_tables(engine) -> None:
    """Create all tables registered on Base for the given engine."""
    # Models must be imported so their tables are registered
    from viralclip import models  # noqa

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db() -> bool:
    """Initialize database tables."""
    global _initialized
    if _initialized:
        return True

    engine = get_engine()
    if not engine:
        logger.error("No database engine available")
        return False

    await create_tables(engine)
    _initialized = True
    logger.info("Database tables created")
    return True
