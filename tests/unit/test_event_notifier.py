import asyncio
import uuid

import pytest

from shopcore.domain.events import ALL_EVENTS, ChangeEvent
from shopcore.domain.scope import ScopeHandle
from shopcore.infrastructure.messaging.event_notifier import EventNotifier


def _event(event_type="product.updated"):
    return ChangeEvent(event_type=event_type, tenant_id=uuid.uuid4(), entity_id=uuid.uuid4())


async def test_required_handlers_run_before_publish_returns():
    notifier = EventNotifier()
    seen = []

    async def invalidate(event):
        seen.append(event.event_type)

    notifier.subscribe(ALL_EVENTS, invalidate, required=True)
    await notifier.publish(_event("product.updated"))
    await notifier.publish(_event("stock.low"))

    assert seen == ["product.updated", "stock.low"]


async def test_required_handler_failure_propagates():
    notifier = EventNotifier()

    async def broken(event):
        raise RuntimeError("cache gone")

    notifier.subscribe("product.updated", broken, required=True)
    with pytest.raises(RuntimeError):
        await notifier.publish(_event())


async def test_external_handlers_are_background_and_isolated():
    notifier = EventNotifier()
    seen = []
    gate = asyncio.Event()

    async def slow(event):
        await gate.wait()
        seen.append("slow")

    async def broken(event):
        raise RuntimeError("search indexer down")

    notifier.subscribe("product.updated", slow)
    notifier.subscribe("product.updated", broken)

    await notifier.publish(_event())
    assert seen == []

    gate.set()
    await notifier.drain()
    assert seen == ["slow"]


async def test_subscriptions_by_type():
    notifier = EventNotifier()
    seen = []

    async def handler(event):
        seen.append(event.event_type)

    notifier.subscribe("order.created", handler)
    assert notifier.has_external_subscribers("order.created")
    assert not notifier.has_external_subscribers("order.cancelled")

    await notifier.publish(_event("order.cancelled"))
    await notifier.publish(_event("order.created"))
    await notifier.drain()
    assert seen == ["order.created"]

    notifier.unsubscribe("order.created", handler)
    assert not notifier.has_external_subscribers("order.created")


async def test_publish_change_uses_scope_tenant():
    notifier = EventNotifier()
    received = []

    async def handler(event):
        received.append(event)

    notifier.subscribe("stock.low", handler, required=True)
    scope = ScopeHandle(tenant_id=uuid.uuid4())
    event = await notifier.publish_change(scope, "stock.low", {"sku": "A"}, entity_id=uuid.uuid4())

    assert received == [event]
    assert event.tenant_id == scope.tenant_id
