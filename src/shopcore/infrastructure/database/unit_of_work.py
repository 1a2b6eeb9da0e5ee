"""
SQLAlchemy Implementation of Unit of Work
One transaction on a scope's pinned session; staged change events are written
to the outbox in the same transaction and published once the commit succeeded.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from shopcore.domain.events import ChangeEvent
from shopcore.infrastructure.database.rls import apply_store_tenant_context
from shopcore.logging import get_logger

if TYPE_CHECKING:
    from shopcore.infrastructure.database.outbox import OutboxStore
    from shopcore.infrastructure.messaging.event_notifier import EventNotifier

logger = get_logger(__name__)


class SQLAlchemyUnitOfWork:
    """
    Unit of Work over an AsyncSession.

    Usage:
        async with SQLAlchemyUnitOfWork(session, tenant_id=...) as uow:
            uow.session.add(...)
            uow.add_event(event)
            await uow.commit()

    Leaving the block without `commit()` (or with an exception) rolls back and
    drops the staged events. The identity map is cleared on exit so the next
    unit of work on a pinned session reads fresh rows.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        tenant_id: Optional[UUID] = None,
        user_id: Optional[UUID] = None,
        notifier: Optional["EventNotifier"] = None,
        outbox: Optional["OutboxStore"] = None,
        readonly: bool = False,
    ) -> None:
        self.session = session
        self.readonly = readonly
        self.tenant_id = tenant_id
        self.user_id = user_id
        self._notifier = notifier
        self._outbox = outbox
        self._events: List[ChangeEvent] = []
        self._committed = False

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        if not self.session.in_transaction():
            await self.session.begin()
        if self.tenant_id is not None:
            await apply_store_tenant_context(self.session, self.tenant_id, self.user_id)
        logger.debug("UnitOfWork transaction started")
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        try:
            if exc_type is not None:
                await self.rollback()
                logger.debug("UnitOfWork rolled back due to exception", error=repr(exc_val))
            elif not self._committed:
                await self.rollback()
                if not self.readonly:
                    logger.warning("UnitOfWork rolled back (not committed)")
        finally:
            self.session.expunge_all()

    def add_event(self, event: ChangeEvent) -> None:
        self._events.append(event)

    @property
    def pending_events(self) -> List[ChangeEvent]:
        return list(self._events)

    async def flush(self) -> None:
        await self.session.flush()

    async def commit(self) -> None:
        """
        Write staged events to the outbox, commit, then publish them.

        Publishing happens after the commit; required subscribers (cache
        invalidation) have run by the time this returns.
        """
        events = list(self._events)
        try:
            if events and self._outbox is not None:
                delivered = [
                    self._notifier is None or not self._notifier.has_external_subscribers(e.event_type)
                    for e in events
                ]
                self._outbox.stage(self.session, events, delivered=delivered)
            await self.session.commit()
            self._committed = True
            self._events.clear()
            logger.debug("UnitOfWork transaction committed", events=len(events))
        except Exception as e:
            await self.rollback()
            logger.error("UnitOfWork commit failed", error=str(e))
            raise

        if events and self._notifier is not None:
            await self._notifier.publish_many(events)

    async def rollback(self) -> None:
        try:
            await self.session.rollback()
            self._committed = False
            self._events.clear()
            logger.debug("UnitOfWork transaction rolled back")
        except Exception as e:
            logger.error("UnitOfWork rollback failed", error=str(e))
            raise
