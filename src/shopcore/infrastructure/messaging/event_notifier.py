"""
Change Event Notifier
In-process publish/subscribe for committed changes
"""
from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Set
from uuid import UUID

from shopcore.domain.events import ALL_EVENTS, ChangeEvent
from shopcore.domain.scope import ScopeHandle
from shopcore.logging import get_logger

if TYPE_CHECKING:
    from shopcore.infrastructure.database.outbox import OutboxStore

logger = get_logger(__name__)

EventHandler = Callable[[ChangeEvent], Awaitable[None]]


@dataclass(frozen=True)
class _Subscription:
    handler: EventHandler
    required: bool

    @property
    def name(self) -> str:
        return getattr(self.handler, "__qualname__", repr(self.handler))


class EventNotifier:
    """
    Two delivery classes per event:

    - required subscribers (cache invalidation) are awaited in-process before
      `publish` returns; their failures propagate to the publisher;
    - every other subscriber is delivered in a background task. Failures are
      logged and the outbox row stays pending for `OutboxRelay`, so external
      consumers must tolerate duplicates (at-least-once).

    Handlers registered for `"*"` receive every event type.
    """

    def __init__(self, outbox: Optional["OutboxStore"] = None) -> None:
        self._handlers: Dict[str, List[_Subscription]] = defaultdict(list)
        self._pending: Set[asyncio.Task] = set()
        self._outbox = outbox

    def subscribe(self, event_type: str, handler: EventHandler, *, required: bool = False) -> None:
        """
        Subscribe a handler to an event type (or `"*"` for all).

        Example:
            async def index_product(event: ChangeEvent) -> None:
                ...

            notifier.subscribe("product.updated", index_product)
        """
        subscription = _Subscription(handler=handler, required=required)
        self._handlers[event_type].append(subscription)
        logger.debug("Handler subscribed", event_type=event_type, handler=subscription.name, required=required)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        self._handlers[event_type] = [s for s in self._handlers.get(event_type, []) if s.handler is not handler]

    def _subscriptions(self, event_type: str) -> List[_Subscription]:
        return list(self._handlers.get(event_type, [])) + list(self._handlers.get(ALL_EVENTS, []))

    def has_external_subscribers(self, event_type: str) -> bool:
        return any(not s.required for s in self._subscriptions(event_type))

    async def publish(self, event: ChangeEvent) -> None:
        subscriptions = self._subscriptions(event.event_type)
        if not subscriptions:
            logger.debug("No handlers for event", event_type=event.event_type, event_id=str(event.event_id))
            return

        required = [s for s in subscriptions if s.required]
        external = [s for s in subscriptions if not s.required]

        first_error: Optional[BaseException] = None
        for subscription in required:
            try:
                await subscription.handler(event)
            except Exception as e:
                logger.error(
                    "Required event handler failed",
                    handler=subscription.name,
                    event_type=event.event_type,
                    event_id=str(event.event_id),
                    error=str(e),
                )
                first_error = first_error or e

        if external:
            task = asyncio.create_task(self._deliver(event, external))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        logger.debug(
            "Event published",
            event_type=event.event_type,
            event_id=str(event.event_id),
            required=len(required),
            external=len(external),
        )
        if first_error is not None:
            raise first_error

    async def publish_many(self, events: List[ChangeEvent]) -> None:
        for event in events:
            await self.publish(event)

    async def publish_change(
        self,
        scope: ScopeHandle,
        event_type: str,
        payload: Dict[str, Any],
        *,
        entity_id: Optional[UUID] = None,
    ) -> ChangeEvent:
        """Publish an ad-hoc event for the scope's tenant (not written to the outbox)."""
        event = ChangeEvent(event_type=event_type, tenant_id=scope.tenant_id, entity_id=entity_id, payload=payload)
        await self.publish(event)
        return event

    async def redeliver(self, event: ChangeEvent) -> bool:
        """Deliver to external subscribers inline; used by the outbox relay."""
        external = [s for s in self._subscriptions(event.event_type) if not s.required]
        return await self._deliver(event, external)

    async def _deliver(self, event: ChangeEvent, subscriptions: List[_Subscription]) -> bool:
        errors: List[str] = []
        for subscription in subscriptions:
            try:
                await subscription.handler(event)
            except Exception as e:
                logger.error(
                    "Event handler failed",
                    handler=subscription.name,
                    event_type=event.event_type,
                    event_id=str(event.event_id),
                    error=str(e),
                )
                errors.append(f"{subscription.name}: {e}")

        if self._outbox is not None:
            try:
                if errors:
                    await self._outbox.record_failure(event.event_id, "; ".join(errors))
                else:
                    await self._outbox.mark_processed([event.event_id])
            except Exception as e:
                # Row stays pending; the relay picks it up again.
                logger.error("Outbox bookkeeping failed", event_id=str(event.event_id), error=str(e))
        return not errors

    async def drain(self) -> None:
        """Wait for all background deliveries started so far."""
        while True:
            pending = [t for t in self._pending if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
