import pytest
from sqlalchemy import select

from shopcore.domain.events import PRODUCT_CREATED
from shopcore.errors import ConstraintViolationError
from shopcore.infrastructure.database.engine import system_session
from shopcore.infrastructure.database.models import OutboxEventModel

pytestmark = pytest.mark.integration


async def _outbox_rows(session_factory):
    async with system_session(session_factory) as session:
        result = await session.execute(select(OutboxEventModel).order_by(OutboxEventModel.occurred_at))
        return result.scalars().all()


async def test_events_without_external_subscribers_are_not_pending(layer, session_factory, tenant_a, make_product):
    async with layer.scope(tenant_a) as a:
        product = await layer.write(a, make_product(tenant_a, stock_quantity=2))
        await layer.adjust_stock(a, product.id, 1, "stock_in")

    rows = await _outbox_rows(session_factory)
    assert [r.event_type for r in rows] == ["product.created", "stock.adjusted"]
    assert all(r.processed_at is not None for r in rows)
    assert rows[0].event_data["entityId"] == str(product.id)
    assert rows[0].event_data["tenantId"] == str(tenant_a)
    assert await layer.outbox.fetch_pending() == []


async def test_failed_delivery_stays_pending_until_relayed(layer, session_factory, tenant_a, make_product):
    delivered = []
    broken = True

    async def search_indexer(event):
        if broken:
            raise RuntimeError("indexer offline")
        delivered.append(event.entity_id)

    layer.subscribe(PRODUCT_CREATED, search_indexer)

    async with layer.scope(tenant_a) as a:
        product = await layer.write(a, make_product(tenant_a))
    await layer.drain()

    (row,) = await _outbox_rows(session_factory)
    assert row.processed_at is None
    assert row.retry_count == 1
    assert "indexer offline" in row.error_message

    pending = await layer.outbox.fetch_pending()
    assert [e.event_id for e in pending] == [row.id]
    assert pending[0].entity_type == "product"

    broken = False
    assert await layer.relay.redeliver_pending() == 1
    assert delivered == [product.id]
    assert await layer.outbox.fetch_pending() == []


async def test_rolled_back_writes_publish_nothing(layer, session_factory, tenant_a, make_product):
    seen = []

    async def record(event):
        seen.append(event)

    layer.subscribe(PRODUCT_CREATED, record)

    async with layer.scope(tenant_a) as a:
        await layer.write(a, make_product(tenant_a, sku="DUP-1"))
        with pytest.raises(ConstraintViolationError):
            await layer.write(a, make_product(tenant_a, sku="DUP-1"))
    await layer.drain()

    assert len(seen) == 1
    assert len(await _outbox_rows(session_factory)) == 1
