"""
Async SQLAlchemy 2.0 engine for the notification stores.

Only used when ``NOTIFY_STORAGE=database``; the engine and the session
factory are built on first use so in-memory mode never opens a connection.
PostgreSQL (asyncpg) is the production target. ``sqlite+aiosqlite`` URLs
are accepted for local runs and tests; they get no pool sizing.

ORM rows live in ``backend.app.notifications.persistence`` and register
themselves on ``Base.metadata`` when that module is imported.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from backend.app.core.config import settings

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


class Base(DeclarativeBase):
    pass


def build_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """Engine for ``url``; pool settings apply to server databases only."""
    options: Dict[str, Any] = {"echo": echo}
    if make_url(url).get_backend_name() != "sqlite":
        options.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_pre_ping=True,
        )
    return create_async_engine(url, **options)


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create missing tables. Existing tables are left untouched."""
    from backend.app.notifications import persistence  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Notification tables ready (%s)", engine.url.render_as_string(hide_password=True))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("Database connections closed")
    _engine = None
    _session_factory = None
