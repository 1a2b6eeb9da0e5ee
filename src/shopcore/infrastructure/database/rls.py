"""
Centralized Row-Level Security (RLS) Enforcement

Two layers, both keyed off the tenant marker stored in `Session.info` when a
scope pins its session:

1. Application level (SQLAlchemy session events on `TenantGuardedSession`):
   - every ORM statement on a session without a marker raises `RlsNotSetError`
     unless the session is flagged as a system session;
   - every SELECT / UPDATE / DELETE against a tenant-scoped model gets
     `tenant_id = <marker>` appended via `with_loader_criteria`;
   - a flush that inserts or re-parents a row into another tenant raises
     `CrossTenantViolationError`.
2. Store level (PostgreSQL only): `app.current_tenant` / `app.current_user`
   GUCs set transaction-locally, matching the database RLS policies.
"""
from __future__ import annotations

from typing import Any, Optional
from uuid import UUID

from sqlalchemy import event, inspect, text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import ORMExecuteState, Session, with_loader_criteria

from shopcore.errors import CrossTenantViolationError, RlsNotSetError
from shopcore.infrastructure.database.base_model import TenantScopedMixin
from shopcore.logging import get_logger, log_security_event
from shopcore.utils import tenant_ctxvars

logger = get_logger(__name__)

TENANT_MARKER = "tenant_id"
SCOPE_MARKER = "scope_id"
SYSTEM_MARKER = "system"

# Execution option: lets an ownership probe see which tenant owns an id.
INCLUDE_FOREIGN_TENANTS = "include_foreign_tenants"


class TenantGuardedSession(Session):
    """Sync session class behind every AsyncSession produced by the engine module."""


def tenant_marker(session: Session | AsyncSession) -> Optional[UUID]:
    info = session.info
    value = info.get(TENANT_MARKER)
    return value if isinstance(value, UUID) else None


def is_system_session(session: Session | AsyncSession) -> bool:
    return bool(session.info.get(SYSTEM_MARKER))


@event.listens_for(TenantGuardedSession, "do_orm_execute")
def _enforce_tenant_marker(orm_execute_state: ORMExecuteState) -> None:
    session = orm_execute_state.session
    tenant_id = tenant_marker(session)

    if tenant_id is None:
        if is_system_session(session):
            return
        log_security_event(
            "rls_not_set",
            details={"statement": str(orm_execute_state.statement)[:200], "context": tenant_ctxvars.snapshot()},
        )
        raise RlsNotSetError(missing_context=[TENANT_MARKER])

    if orm_execute_state.execution_options.get(INCLUDE_FOREIGN_TENANTS):
        return
    if orm_execute_state.is_column_load or orm_execute_state.is_relationship_load:
        return
    if orm_execute_state.is_select or orm_execute_state.is_update or orm_execute_state.is_delete:
        orm_execute_state.statement = orm_execute_state.statement.options(
            with_loader_criteria(
                TenantScopedMixin,
                lambda cls: cls.tenant_id == tenant_id,
                include_aliases=True,
            )
        )


@event.listens_for(TenantGuardedSession, "before_flush")
def _reject_foreign_rows(session: Session, flush_context: Any, instances: Any) -> None:
    tenant_id = tenant_marker(session)
    if tenant_id is None:
        return

    for obj in session.new:
        owner = getattr(obj, "tenant_id", None)
        if owner is not None and owner != tenant_id:
            _raise_foreign_row(tenant_id, obj, owner)

    for obj in session.dirty:
        if isinstance(obj, TenantScopedMixin) and inspect(obj).attrs.tenant_id.history.has_changes():
            _raise_foreign_row(tenant_id, obj, obj.tenant_id)


def _raise_foreign_row(tenant_id: UUID, obj: Any, owner: Any) -> None:
    log_security_event(
        "cross_tenant_flush",
        tenant_id=str(tenant_id),
        details={"model": type(obj).__name__, "row_tenant_id": str(owner)},
    )
    raise CrossTenantViolationError(
        "Row belongs to a different tenant",
        resource_type=type(obj).__name__,
        resource_id=str(getattr(obj, "id", "")),
        tenant_id=tenant_id,
    )


async def apply_store_tenant_context(
    session: AsyncSession,
    tenant_id: UUID,
    user_id: UUID | None = None,
) -> None:
    """
    Set the transaction-local GUCs read by the PostgreSQL RLS policies.

    No-op on backends without session variables (SQLite); the application
    level guard still applies there.
    """
    bind = session.get_bind()
    if bind.dialect.name != "postgresql":
        return

    await session.execute(
        text("SELECT set_config('app.current_tenant', :tenant_id, true)"),
        {"tenant_id": str(tenant_id)},
    )
    if user_id is not None:
        await session.execute(
            text("SELECT set_config('app.current_user', :user_id, true)"),
            {"user_id": str(user_id)},
        )
    logger.debug("Store tenant context applied", tenant_id=str(tenant_id))
