"""
Database session management.

Flow:
  1. The engine and session factory are created lazily on first use, so
     importing this module never opens a connection (the Celery beat
     process and unit tests import it without a database).
  2. Services receive an `async_sessionmaker` and open one short
     transaction per state change; a worker never holds a transaction
     open across an external provider call.
  3. get_admin_db() yields a session for system jobs (retry scanner,
     retention cleanup) that iterate over organizations.

Tenant scoping is explicit: every query in services/analysis_store.py
filters on organization_id.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    from docpipeline.core.config import settings

    pool_args: dict = {}
    if not settings.database_url.startswith("sqlite"):
        # SQLite (local runs) uses a static/singleton pool with no sizing
        pool_args = {
            "pool_size":    settings.db_pool_size,
            "max_overflow": settings.db_max_overflow,
            "pool_recycle": 3600,    # recycle connections every hour
        }

    return create_async_engine(
        settings.database_url,
        pool_pre_ping=True,          # detect stale connections before use
        echo=settings.db_echo_sql,   # log SQL in dev; disable in prod
        **pool_args,
    )


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# ---------------------------------------------------------------------------
# Admin / system session
# ---------------------------------------------------------------------------

@asynccontextmanager
async def get_admin_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Session for background system jobs that operate across organizations.

    Never hand this to per-organization request handling; those paths go
    through AnalysisRecordStore with an explicit organization_id.
    """
    async with get_session_factory()() as session:
        async with session.begin():
            yield session


# ---------------------------------------------------------------------------
# Schema bootstrap + health
# ---------------------------------------------------------------------------

async def create_all(engine: AsyncEngine | None = None) -> None:
    """Create missing tables (local dev and tests; production uses migrations)."""
    from docpipeline.models.analysis import Base

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Schema ensured | url=%s", engine.url.render_as_string(hide_password=True))


async def check_db_health() -> dict:
    """Ping the database; used by the worker health-check task."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
