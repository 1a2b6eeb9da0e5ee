from __future__ import annotations

from typing import Any, Dict, Optional
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool

from shopcore.config import Settings, get_settings
from shopcore.infrastructure.database import models  # noqa: F401  (registers tables on Base.metadata)
from shopcore.infrastructure.database.base_model import Base
from shopcore.infrastructure.database.rls import (
    SCOPE_MARKER,
    SYSTEM_MARKER,
    TENANT_MARKER,
    TenantGuardedSession,
)
from shopcore.logging import get_logger

logger = get_logger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


async def create_database_engine(settings: Optional[Settings] = None, *, smoke_test: bool = True) -> AsyncEngine:
    """
    Build the async engine with sane pooling defaults.

    NullPool when testing, AsyncAdaptedQueuePool otherwise. SQLite connections
    get `PRAGMA foreign_keys=ON` so ON DELETE rules behave as on PostgreSQL.
    """
    settings = settings or get_settings()
    kwargs: Dict[str, Any] = {"echo": settings.debug and not settings.is_prod}

    if settings.is_testing:
        kwargs["poolclass"] = NullPool
    else:
        kwargs.update(
            poolclass=AsyncAdaptedQueuePool,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=30,
            pool_recycle=3600,
            pool_pre_ping=True,
        )

    if settings.is_sqlite:
        kwargs["connect_args"] = {"timeout": 30}
    else:
        kwargs["connect_args"] = {
            "server_settings": {
                "application_name": f"shopcore-{settings.environment}",
                "statement_timeout": "30000",  # 30s
            }
        }

    engine = create_async_engine(settings.database_url, **kwargs)
    if settings.is_sqlite:
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

    if smoke_test:
        async with engine.begin() as conn:
            await conn.execute(sa.text("SELECT 1"))

    logger.info("Database engine created", dialect=engine.dialect.name, testing=settings.is_testing)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        sync_session_class=TenantGuardedSession,
        expire_on_commit=False,
        autoflush=True,
    )


def system_session(factory: async_sessionmaker[AsyncSession]) -> AsyncSession:
    """Session for cross-tenant housekeeping (tenant lookup, outbox relay)."""
    return factory(info={SYSTEM_MARKER: True})


def tenant_session(factory: async_sessionmaker[AsyncSession], tenant_id: UUID, scope_id: UUID) -> AsyncSession:
    """Session pinned to one scope; the tenant marker is set at construction."""
    return factory(info={TENANT_MARKER: tenant_id, SCOPE_MARKER: scope_id})


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables (local development and tests; production uses migrations)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured", tables=len(Base.metadata.tables))


async def close_database_engine(engine: AsyncEngine) -> None:
    await engine.dispose()
    logger.info("Database engine disposed")
