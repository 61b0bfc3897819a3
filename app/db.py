from __future__ import annotations

import pathlib
import logging
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    async_sessionmaker,
    AsyncSession,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

logger = logging.getLogger("uvicorn.error")


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite stores DateTime without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _ensure_sqlite_dir(dsn: str) -> None:
    # sqlite+aiosqlite:///./data/webhooks.db or sqlite+aiosqlite:////code/data/webhooks.db
    sep = "///" if "///" in dsn else "//"
    path_part = dsn.split(sep, 1)[1] if sep in dsn else ""
    if path_part and path_part != ":memory:":
        try:
            pathlib.Path(path_part).resolve().parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("[DB] Could not ensure SQLite directory exists: %s", e)


def create_engine(dsn: str, *, null_pool: bool = False) -> AsyncEngine:
    """
    Build the AsyncEngine for the given DSN. SQLite gets its folder created first.
    `null_pool` opens a fresh connection per checkout, so the engine can be shared
    between event loops (used by the test-suite).
    """
    if dsn.startswith("sqlite"):
        _ensure_sqlite_dir(dsn)
    kwargs: dict = {"echo": False, "future": True}
    if null_pool:
        kwargs["poolclass"] = NullPool
    else:
        kwargs["pool_pre_ping"] = True
    engine = create_async_engine(dsn, **kwargs)
    logger.info("[DB] engine initialized for %s", engine.url.render_as_string(hide_password=True))
    return engine


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """
    Validate connectivity and create the tables (webhook log, jobs, mappings, ledger).
    """
    # Register all models on Base.metadata
    from app.models import jobs, webhook_delivery, product_mapping, inventory_ledger  # noqa: F401

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except Exception as e:
        logger.error("[DB] initial connect failed: %s", e)
        raise
