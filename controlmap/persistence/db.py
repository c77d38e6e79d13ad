from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from controlmap.core.config import Settings, get_settings


def engine_options(settings: Settings) -> dict[str, Any]:
    options: dict[str, Any] = {"pool_pre_ping": True}
    if settings.database_url.startswith("sqlite"):
        # SQLite test databases use the driver's default pool.
        return options
    # Analyses hold sessions only briefly, so the API pool stays small and recycled.
    options.update(
        pool_size=max(1, settings.api_db_pool_size),
        max_overflow=max(0, settings.api_db_max_overflow),
        pool_timeout=30,
        pool_recycle=1800,
    )
    if settings.api_db_statement_timeout_ms > 0:
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(settings.api_db_statement_timeout_ms)}
        }
    return options


_settings = get_settings()
engine = create_async_engine(_settings.database_url, **engine_options(_settings))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


def pool_stats() -> dict[str, int | None]:
    pool = engine.sync_engine.pool
    stats: dict[str, int | None] = {}
    for key, attr in (("size", "size"), ("checked_out", "checkedout"), ("overflow", "overflow")):
        # Not every pool class (e.g. SQLite's) reports every counter.
        reader = getattr(pool, attr, None)
        stats[key] = int(reader()) if callable(reader) else None
    return stats
