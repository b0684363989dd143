"""
Database engine and session lifecycle.

Engine operations take an ``AsyncSession`` and commit or roll back their own
unit of work. Callers outside the engine (a web controller, a webhook worker,
an admin script) open that session through ``session_scope``.
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import structlog
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from impact_settlement.config import Settings, get_settings
from impact_settlement.database.models import Base

logger = structlog.get_logger(__name__)

_engine: Optional[AsyncEngine] = None
_async_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """
    Build an async engine for ``settings.database_url``.

    SQLite gets a single shared connection so an in-memory database survives
    across sessions; other backends get the configured pool.
    """
    options: Dict[str, Any] = {"echo": settings.database_echo}
    if make_url(settings.database_url).get_backend_name() == "sqlite":
        options["poolclass"] = StaticPool
        options["connect_args"] = {"check_same_thread": False}
    else:
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
    return create_async_engine(settings.database_url, **options)


def get_engine(settings: Optional[Settings] = None) -> AsyncEngine:
    """Get or create the process-wide engine."""
    global _engine
    if _engine is None:
        settings = settings or get_settings()
        _engine = create_engine_from_settings(settings)
        logger.info(
            "database_engine_created",
            backend=make_url(settings.database_url).get_backend_name(),
        )
    return _engine


def get_session_factory(settings: Optional[Settings] = None) -> async_sessionmaker[AsyncSession]:
    """
    Get or create the session factory.

    ``expire_on_commit=False`` keeps returned Transactions readable after the
    engine commits.
    """
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            get_engine(settings),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _async_session_factory


@asynccontextmanager
async def session_scope(settings: Optional[Settings] = None) -> AsyncIterator[AsyncSession]:
    """
    Session for one or more engine operations.

    Anything left uncommitted when the block exits, normally or by an
    exception, is rolled back.
    """
    session_factory = get_session_factory(settings)
    async with session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            if session.in_transaction():
                await session.rollback()


async def init_db(settings: Optional[Settings] = None) -> None:
    """Create all tables that do not exist yet."""
    engine = get_engine(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", tables=len(Base.metadata.tables))


async def close_db() -> None:
    """Dispose of the engine and forget the session factory."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
