from __future__ import annotations

from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from stackwright.config.settings import Settings, get_settings
from stackwright.db.models import Base

_engines: dict[str, AsyncEngine] = {}


def init_engine(settings: Settings | None = None) -> AsyncEngine:
    """Create (once per URL) the async engine for the configured database."""

    cfg = settings or get_settings()
    if cfg.database_url in _engines:
        return _engines[cfg.database_url]

    url = make_url(cfg.database_url)
    if url.get_backend_name() == "sqlite":
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        engine = create_async_engine(cfg.database_url, echo=cfg.debug)
    else:
        engine = create_async_engine(
            cfg.database_url,
            echo=cfg.debug,
            pool_size=cfg.db_pool_size,
            max_overflow=cfg.db_max_overflow,
            pool_pre_ping=True,
        )
    _engines[cfg.database_url] = engine
    return engine


def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    """Create state tables if missing."""

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engines() -> None:
    for engine in _engines.values():
        await engine.dispose()
    _engines.clear()
