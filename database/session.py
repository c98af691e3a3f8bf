"""
Engine and session lifecycle for the SQL store.

One engine per process. The URL comes from settings.database.url unless
init_db() / configure() was handed an explicit one (tests point it at a
temporary SQLite file). Plain URLs get their async driver filled in:

    postgresql:// , postgres://   -> postgresql+asyncpg
    mysql:// , mysql+pymysql://   -> mysql+aiomysql
    sqlite://                     -> sqlite+aiosqlite

    await init_db()
    async with get_session() as db:     # commits on exit, rolls back on error
        ...
    await close_db()
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

POOL_OPTIONS = {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}

_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None
_configured_url: Optional[str] = None


def async_url(db_url: str) -> str:
    """Swap a plain scheme for its async driver; other URLs pass through."""
    scheme, sep, rest = db_url.partition("://")
    if not sep or scheme not in ASYNC_DRIVERS:
        return db_url
    return f"{ASYNC_DRIVERS[scheme]}://{rest}"


def configure(db_url: str) -> None:
    """Use db_url for the next engine instead of settings.database.url."""
    global _configured_url
    _configured_url = db_url


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is not None:
        return _engine

    settings = get_settings()
    url = async_url(_configured_url or settings.database.url)
    options: dict = {"echo": settings.debug}
    if url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
    else:
        options.update(POOL_OPTIONS)

    _engine = create_async_engine(url, **options)
    logger.info("database_engine_created",
                dialect=_engine.dialect.name,
                url=make_url(url).render_as_string(hide_password=True))
    return _engine


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    global _sessions
    if _sessions is None:
        _sessions = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    async with _sessions() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(db_url: str = None) -> None:
    """Create the flow and conversation tables if they are missing."""
    if db_url:
        configure(db_url)
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    """Dispose the engine and forget any configured URL."""
    global _engine, _sessions, _configured_url
    if _engine is not None:
        await _engine.dispose()
        logger.info("database_closed")
    _engine = None
    _sessions = None
    _configured_url = None
