"""
Tenant Context Manager.

Binds every unit of work to exactly one tenant. `begin_scope` validates the
tenant and pins one AsyncSession carrying the tenant marker; the session
guard in `infrastructure.database.rls` refuses to run ORM statements on any
session without it. Work on a scope is serialised by a per-scope lock.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Iterable, Optional, Union
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shopcore.config import Settings
from shopcore.domain.entities import Tenant
from shopcore.domain.scope import ScopeHandle
from shopcore.domain.value_objects import TenantStatus
from shopcore.errors import InvalidTenantError, ReadOnlyScopeError
from shopcore.infrastructure.database.engine import system_session, tenant_session
from shopcore.infrastructure.database.errors import translate_db_error
from shopcore.infrastructure.database.mappers import tenant_to_entity
from shopcore.infrastructure.database.models import TenantModel
from shopcore.infrastructure.database.outbox import OutboxStore
from shopcore.infrastructure.database.unit_of_work import SQLAlchemyUnitOfWork
from shopcore.infrastructure.messaging.event_notifier import EventNotifier
from shopcore.logging import bind_request_context, get_logger
from shopcore.utils.tenant_ctxvars import bind_tenant_ctx

logger = get_logger(__name__)


@dataclass
class _ScopeState:
    handle: ScopeHandle
    session: AsyncSession
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def parse_tenant_id(value: Union[UUID, str, None]) -> UUID:
    if isinstance(value, UUID):
        return value
    if value is None or not str(value).strip():
        raise InvalidTenantError("Tenant id is empty")
    try:
        return UUID(str(value).strip())
    except ValueError:
        raise InvalidTenantError(f"Tenant id is malformed: {value!r}")


class TenantContextManager:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        *,
        notifier: Optional[EventNotifier] = None,
        outbox: Optional[OutboxStore] = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._notifier = notifier
        self._outbox = outbox
        self._scopes: Dict[UUID, _ScopeState] = {}

    @property
    def active_scopes(self) -> int:
        return len(self._scopes)

    async def load_tenant(self, tenant_id: UUID) -> Optional[Tenant]:
        try:
            async with system_session(self._session_factory) as session:
                row = await session.get(TenantModel, tenant_id)
                return tenant_to_entity(row) if row is not None else None
        except SQLAlchemyError as e:
            raise translate_db_error(e, operation="load_tenant") from None

    async def begin_scope(
        self,
        tenant_id: Union[UUID, str, None],
        *,
        user_id: Optional[UUID] = None,
        roles: Optional[Iterable[str]] = None,
    ) -> ScopeHandle:
        """
        Validate the tenant and open a scope bound to it.

        Raises:
            InvalidTenantError: empty / malformed / unknown id, cancelled tenant,
                or suspended tenant while read-only scopes are disabled
        """
        tid = parse_tenant_id(tenant_id)
        tenant = await self.load_tenant(tid)
        if tenant is None:
            raise InvalidTenantError("Unknown tenant", tenant_id=tid)

        read_only = False
        if tenant.status is TenantStatus.CANCELLED:
            raise InvalidTenantError("Tenant is cancelled", tenant_id=tid, status=tenant.status.value)
        if tenant.status is TenantStatus.SUSPENDED:
            if not self._settings.allow_suspended_read_only:
                raise InvalidTenantError("Tenant is suspended", tenant_id=tid, status=tenant.status.value)
            read_only = True

        handle = ScopeHandle(
            tenant_id=tid,
            read_only=read_only,
            user_id=user_id,
            roles=tuple(roles or ()),
        )
        # The marker is part of the session from its creation; no statement can
        # run on this session before it is set.
        session = tenant_session(self._session_factory, handle.tenant_id, handle.scope_id)
        self._scopes[handle.scope_id] = _ScopeState(handle=handle, session=session)

        logger.debug(
            "Scope opened",
            tenant_id=str(tid),
            scope_id=str(handle.scope_id),
            read_only=read_only,
        )
        return handle

    def current_tenant(self, scope: ScopeHandle) -> UUID:
        return scope.tenant_id

    def is_active(self, scope: ScopeHandle) -> bool:
        return scope.scope_id in self._scopes

    async def end_scope(self, scope: ScopeHandle) -> None:
        """Release the pinned session. Safe to call more than once."""
        state = self._scopes.pop(scope.scope_id, None)
        if state is None:
            return
        try:
            await asyncio.shield(state.session.close())
        finally:
            logger.debug("Scope closed", tenant_id=str(scope.tenant_id), scope_id=str(scope.scope_id))

    @asynccontextmanager
    async def scope(
        self,
        tenant_id: Union[UUID, str, None],
        *,
        user_id: Optional[UUID] = None,
        roles: Optional[Iterable[str]] = None,
    ) -> AsyncIterator[ScopeHandle]:
        """
        Scoped acquisition: the scope is ended on return, error and cancellation.

        Example:
            async with contexts.scope(tenant_id) as scope:
                product = await dal.get_by_id(scope, "product", product_id)
        """
        handle = await self.begin_scope(tenant_id, user_id=user_id, roles=roles)
        try:
            with bind_tenant_ctx(
                tenant_id=str(handle.tenant_id),
                scope_id=str(handle.scope_id),
                user_id=str(user_id) if user_id else None,
                roles=list(handle.roles),
            ), bind_request_context(
                tenant_id=str(handle.tenant_id),
                scope_id=str(handle.scope_id),
                user_id=str(user_id) if user_id else None,
            ):
                yield handle
        finally:
            await self.end_scope(handle)

    def _state(self, scope: ScopeHandle) -> _ScopeState:
        if not isinstance(scope, ScopeHandle):
            raise InvalidTenantError("A ScopeHandle is required")
        state = self._scopes.get(scope.scope_id)
        if state is None or state.handle != scope:
            raise InvalidTenantError("Scope has ended or was never opened", tenant_id=scope.tenant_id)
        return state

    def require_writable(self, scope: ScopeHandle) -> None:
        self._state(scope)
        if scope.read_only:
            raise ReadOnlyScopeError(tenant_id=scope.tenant_id)

    @asynccontextmanager
    async def unit_of_work(self, scope: ScopeHandle, *, mutating: bool = True) -> AsyncIterator[SQLAlchemyUnitOfWork]:
        """
        One transaction on the scope's pinned session.

        Mutating units of work are refused on read-only scopes. Callers must
        `await uow.commit()`; anything else rolls back.
        """
        state = self._state(scope)
        if mutating and scope.read_only:
            raise ReadOnlyScopeError(tenant_id=scope.tenant_id)

        async with state.lock:
            uow = SQLAlchemyUnitOfWork(
                state.session,
                tenant_id=scope.tenant_id,
                user_id=scope.user_id,
                notifier=self._notifier if mutating else None,
                outbox=self._outbox if mutating else None,
                readonly=not mutating,
            )
            async with uow:
                yield uow

    async def close(self) -> None:
        for state in list(self._scopes.values()):
            await self.end_scope(state.handle)
