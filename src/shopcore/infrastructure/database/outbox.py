"""
Transactional Outbox Pattern
Change events are stored with the business data and re-published until every
external subscriber has received them (at-least-once).
"""
from __future__ import annotations

from typing import Iterable, List, Sequence
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shopcore.domain.base_entity import utcnow
from shopcore.domain.events import ChangeEvent
from shopcore.infrastructure.database.engine import system_session
from shopcore.infrastructure.database.models import OutboxEventModel
from shopcore.logging import get_logger

logger = get_logger(__name__)


def to_outbox_row(event: ChangeEvent, *, delivered: bool) -> OutboxEventModel:
    now = utcnow()
    return OutboxEventModel(
        id=event.event_id,
        tenant_id=event.tenant_id,
        aggregate_id=event.entity_id,
        aggregate_type=event.subject_type,
        event_type=event.event_type,
        event_data=event.to_wire(),
        occurred_at=event.timestamp,
        processed_at=now if delivered else None,
        retry_count=0,
    )


def from_outbox_row(row: OutboxEventModel) -> ChangeEvent:
    return ChangeEvent.from_wire(row.event_data, event_id=row.id, entity_type=row.aggregate_type)


class OutboxStore:
    """
    Reads and updates outbox rows outside of tenant scopes.

    Rows are inserted by the unit of work on the tenant session; everything
    here runs on short-lived system sessions.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    def stage(self, session: AsyncSession, events: Iterable[ChangeEvent], *, delivered: Iterable[bool]) -> None:
        for event, done in zip(events, delivered):
            session.add(to_outbox_row(event, delivered=done))

    async def mark_processed(self, event_ids: Sequence[UUID]) -> None:
        if not event_ids:
            return
        async with system_session(self._session_factory) as session:
            async with session.begin():
                await session.execute(
                    update(OutboxEventModel)
                    .where(OutboxEventModel.id.in_(list(event_ids)), OutboxEventModel.processed_at.is_(None))
                    .values(processed_at=utcnow())
                )
        logger.debug("Outbox events marked processed", count=len(event_ids))

    async def record_failure(self, event_id: UUID, error: str) -> None:
        async with system_session(self._session_factory) as session:
            async with session.begin():
                await session.execute(
                    update(OutboxEventModel)
                    .where(OutboxEventModel.id == event_id)
                    .values(
                        retry_count=OutboxEventModel.retry_count + 1,
                        error_message=error[:1000],
                    )
                )

    async def fetch_pending(self, limit: int = 100) -> List[ChangeEvent]:
        """Unprocessed events below their retry budget, oldest first."""
        async with system_session(self._session_factory) as session:
            result = await session.execute(
                select(OutboxEventModel)
                .where(
                    OutboxEventModel.processed_at.is_(None),
                    OutboxEventModel.retry_count < OutboxEventModel.max_retries,
                )
                .order_by(OutboxEventModel.occurred_at, OutboxEventModel.id)
                .limit(limit)
            )
            return [from_outbox_row(row) for row in result.scalars().all()]
