"""Database connection module for the trial activation pipeline.

Provides:
- init_engine(): build (or rebuild) the AsyncEngine from DATABASE_URL or an explicit URL
- unit_of_work(): turn any session factory into a get_db-style context manager
- get_db(): async context manager for use in services and batch jobs
- dispose_engine(): release the pool on shutdown

The engine is created lazily so importing models or services never needs a database.
"""
import logging
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from sqlalchemy.engine import make_url as _make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

import config

logger = logging.getLogger(__name__)

UnitOfWork = Callable[[], AbstractAsyncContextManager[AsyncSession]]

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def init_engine(url: Optional[str] = None, **engine_kwargs) -> AsyncEngine:
    """Create the process-wide engine and session factory.

    Without an explicit url, DATABASE_URL is required and must use the
    'postgresql+asyncpg' driver.
    """
    global _engine, _session_factory

    if url is None:
        url = config.database_url()
        if not url:
            raise RuntimeError(
                "DATABASE_URL is not set; the activation jobs need the CRM Postgres database. "
                "See .env.example for the expected keys."
            )
        parsed = _make_url(url)
        if parsed.drivername != "postgresql+asyncpg":
            raise RuntimeError(
                f"DATABASE_URL uses driver '{parsed.drivername}', expected 'postgresql+asyncpg' "
                "(e.g. postgresql+asyncpg://crm:secret@db:5432/crm)."
            )
        engine_kwargs = {"pool_pre_ping": True, **config.pool_settings(), **engine_kwargs}

    _engine = create_async_engine(url, echo=False, **engine_kwargs)
    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return _engine


def get_session_factory() -> async_sessionmaker:
    if _session_factory is None:
        init_engine()
    return _session_factory


def unit_of_work(session_factory: Callable[[], AsyncSession]) -> UnitOfWork:
    """Build a get_db-style context manager over a session factory.

    Commits on clean exit, rolls back and re-raises on any exception.
    """

    @asynccontextmanager
    async def _scope() -> AsyncIterator[AsyncSession]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                logger.exception("Unit of work failed; transaction rolled back")
                raise

    return _scope


@asynccontextmanager
async def get_db() -> AsyncIterator[AsyncSession]:
    """Unit of work on the process-wide engine.

    Usage:
        async with get_db() as session:
            pipeline = await trials_repo.get(session, pipeline_id)
    """
    async with unit_of_work(get_session_factory())() as session:
        yield session


async def dispose_engine() -> None:
    """Close pooled connections; the next get_db() call rebuilds the engine."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
