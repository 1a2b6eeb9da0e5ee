import dataclasses
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select
from structlog.testing import capture_logs

from shopcore.domain.entities import Order, OrderLine
from shopcore.domain.query import OrderBy, Pagination
from shopcore.errors import (
    ConcurrencyConflictError,
    ConstraintViolationError,
    CrossTenantViolationError,
    InvalidFilterError,
    NotFoundError,
    RlsNotSetError,
    ValidationError,
)
from shopcore.infrastructure.database.engine import tenant_session
from shopcore.infrastructure.database.models import CategoryModel, ProductModel
from shopcore.infrastructure.database.tenant_query import scoped_select

pytestmark = pytest.mark.integration


async def test_rows_of_another_tenant_are_invisible(layer, tenant_a, tenant_b, make_product):
    async with layer.scope(tenant_a) as a:
        product = await layer.write(a, make_product(tenant_a))

    async with layer.scope(tenant_b) as b:
        with pytest.raises(NotFoundError):
            await layer.get_by_id(b, "product", product.id)
        page = await layer.list(b, "product")
        assert page.total == 0 and page.items == ()

        with pytest.raises(CrossTenantViolationError):
            await layer.write(b, dataclasses.replace(product, tenant_id=tenant_b, name="Hijacked"))
        with pytest.raises(CrossTenantViolationError):
            await layer.delete(b, "product", product.id)
        with pytest.raises(CrossTenantViolationError):
            await layer.write(b, make_product(tenant_a))

    async with layer.scope(tenant_a) as a:
        assert (await layer.get_by_id(a, "product", product.id)).name == "Espresso Beans"


async def test_cross_tenant_attempts_are_logged_as_security_events(layer, tenant_a, tenant_b, make_product):
    async with layer.scope(tenant_a) as a:
        product = await layer.write(a, make_product(tenant_a))

    async with layer.scope(tenant_b) as b:
        with capture_logs() as logs:
            with pytest.raises(CrossTenantViolationError):
                await layer.delete(b, "product", product.id)
            with pytest.raises(CrossTenantViolationError):
                await layer.write(b, dataclasses.replace(product, tenant_id=tenant_b))

    events = [e for e in logs if e.get("event_type") == "cross_tenant_violation"]
    assert [e["details"]["operation"] for e in events] == ["delete", "write"]
    for event in events:
        assert event["log_level"] == "warning"
        assert event["tenant_id"] == str(tenant_b)
        assert event["details"]["owner_tenant_id"] == str(tenant_a)
        assert event["details"]["entity_id"] == str(product.id)


async def test_sku_is_unique_per_tenant_only(layer, tenant_a, tenant_b, make_product):
    async with layer.scope(tenant_a) as a:
        await layer.write(a, make_product(tenant_a, sku="BEAN-1"))
        with pytest.raises(ConstraintViolationError) as exc:
            await layer.write(a, make_product(tenant_a, sku="BEAN-1"))
        assert exc.value.details["conflict_field"] == "sku"

    async with layer.scope(tenant_b) as b:
        await layer.write(b, make_product(tenant_b, sku="BEAN-1"))


async def test_write_then_get_round_trip(layer, tenant_a, make_product, make_category):
    async with layer.scope(tenant_a) as a:
        category = await layer.write(a, make_category(tenant_a, description="Roasted"))
        assert await layer.get_by_id(a, "category", category.id) == category

        product = await layer.write(
            a,
            make_product(
                tenant_a,
                category_id=category.id,
                description="Single origin",
                cost_price=Decimal("4.25"),
                min_stock_level=2,
            ),
        )
        assert product.version == 1
        assert await layer.get_by_id(a, "product", product.id) == product

        renamed = await layer.write(a, dataclasses.replace(product, name="House Blend"))
        assert renamed.version == 2
        assert await layer.get_by_id(a, "product", product.id) == renamed


async def test_stale_product_write_is_a_conflict(layer, tenant_a, make_product):
    async with layer.scope(tenant_a) as a:
        product = await layer.write(a, make_product(tenant_a))
        await layer.write(a, dataclasses.replace(product, name="First"))

        with pytest.raises(ConcurrencyConflictError):
            await layer.write(a, dataclasses.replace(product, name="Second"))


async def test_stock_cannot_be_written_directly(layer, tenant_a, make_product):
    async with layer.scope(tenant_a) as a:
        product = await layer.write(a, make_product(tenant_a, stock_quantity=5))
        with pytest.raises(ConstraintViolationError):
            await layer.write(a, dataclasses.replace(product, stock_quantity=500))

        history = await layer.stock_history(a, product.id)
        assert [(t.transaction_type.value, t.quantity, t.sequence) for t in history] == [("stock_in", 5, 1)]


async def test_inventory_transactions_are_append_only(layer, tenant_a, make_product):
    async with layer.scope(tenant_a) as a:
        product = await layer.write(a, make_product(tenant_a, stock_quantity=3))
        (entry,) = await layer.stock_history(a, product.id)

        with pytest.raises(ConstraintViolationError):
            await layer.write(a, entry)
        with pytest.raises(ConstraintViolationError):
            await layer.delete(a, "inventory_transaction", entry.id)


async def test_delete(layer, tenant_a, make_product):
    async with layer.scope(tenant_a) as a:
        product = await layer.write(a, make_product(tenant_a))
        await layer.delete(a, "product", product.id)

        with pytest.raises(NotFoundError):
            await layer.get_by_id(a, "product", product.id)
        with pytest.raises(NotFoundError):
            await layer.delete(a, "product", product.id)


async def test_deleting_a_category_detaches_its_products(layer, tenant_a, make_product, make_category):
    async with layer.scope(tenant_a) as a:
        category = await layer.write(a, make_category(tenant_a))
        product = await layer.write(a, make_product(tenant_a, category_id=category.id))
        assert (await layer.get_by_id(a, "product", product.id)).category_id == category.id

        await layer.delete(a, "category", category.id)

        assert (await layer.get_by_id(a, "product", product.id)).category_id is None


async def test_products_cannot_link_a_foreign_category(layer, tenant_a, tenant_b, make_product, make_category):
    async with layer.scope(tenant_b) as b:
        foreign = await layer.write(b, make_category(tenant_b))

    async with layer.scope(tenant_a) as a:
        with capture_logs() as logs:
            with pytest.raises(CrossTenantViolationError):
                await layer.write(a, make_product(tenant_a, category_id=foreign.id))
        (event,) = [e for e in logs if e.get("event_type") == "cross_tenant_violation"]
        assert event["details"]["operation"] == "reference"
        assert event["details"]["entity_id"] == str(foreign.id)
        with pytest.raises(NotFoundError):
            await layer.write(a, make_product(tenant_a, category_id=uuid.uuid4()))

        product = await layer.write(a, make_product(tenant_a))
        with pytest.raises(CrossTenantViolationError):
            await layer.write(a, dataclasses.replace(product, category_id=foreign.id))
        assert (await layer.list(a, "product")).total == 1

    async with layer.scope(tenant_b) as b:
        await layer.delete(b, "category", foreign.id)

    async with layer.scope(tenant_a) as a:
        assert (await layer.get_by_id(a, "product", product.id)).category_id is None


async def test_categories_cannot_nest_under_a_foreign_parent(layer, tenant_a, tenant_b, make_category):
    async with layer.scope(tenant_b) as b:
        foreign = await layer.write(b, make_category(tenant_b))

    async with layer.scope(tenant_a) as a:
        with pytest.raises(CrossTenantViolationError):
            await layer.write(a, make_category(tenant_a, parent_id=foreign.id))
        with pytest.raises(NotFoundError):
            await layer.write(a, make_category(tenant_a, parent_id=uuid.uuid4()))

        parent = await layer.write(a, make_category(tenant_a, name="Beans"))
        child = await layer.write(a, make_category(tenant_a, name="Espresso", parent_id=parent.id))
        assert (await layer.get_by_id(a, "category", child.id)).parent_id == parent.id


async def test_order_lines_cannot_point_at_foreign_products(layer, tenant_a, tenant_b, make_product):
    async with layer.scope(tenant_b) as b:
        foreign = await layer.write(b, make_product(tenant_b, stock_quantity=5))

    line = OrderLine(
        product_id=foreign.id,
        product_name=foreign.name,
        product_sku=foreign.sku,
        unit_price=foreign.price,
        quantity=1,
    )
    async with layer.scope(tenant_a) as a:
        with pytest.raises(CrossTenantViolationError):
            await layer.write(a, Order(tenant_id=tenant_a, order_number="ORD-MANUAL-1", lines=(line,)))
        with pytest.raises(NotFoundError):
            await layer.write(
                a,
                Order(
                    tenant_id=tenant_a,
                    order_number="ORD-MANUAL-2",
                    lines=(dataclasses.replace(line, product_id=uuid.uuid4()),),
                ),
            )
        assert (await layer.list(a, "order")).total == 0


async def test_list_filters_sorting_and_pages(layer, tenant_a, make_product):
    async with layer.scope(tenant_a) as a:
        for i, price in enumerate(["3.00", "7.50", "12.00", "20.00"]):
            await layer.write(a, make_product(tenant_a, name=f"Blend {i}", price=Decimal(price)))

        page = await layer.list(
            a,
            "product",
            [("price", "gte", Decimal("7.50"))],
            Pagination(limit=2, order_by=OrderBy("price", descending=True)),
        )
        assert [p.price for p in page] == [Decimal("20.00"), Decimal("12.00")]
        assert page.total == 3 and page.has_more

        page = await layer.list(a, "product", [("name", "contains", "blend 1")])
        assert [p.name for p in page] == ["Blend 1"]

        with pytest.raises(InvalidFilterError):
            await layer.list(a, "product", "price > 0")
        with pytest.raises(InvalidFilterError):
            await layer.list(a, "product", [("cost_price", "gt", 1)])
        with pytest.raises(InvalidFilterError):
            await layer.list(a, "product", None, Pagination(order_by=OrderBy("cost_price")))
        with pytest.raises(ValidationError):
            await layer.list(a, "product", None, Pagination(limit=10_000))
        with pytest.raises(ValidationError):
            await layer.list(a, "widget")


async def test_session_without_tenant_marker_refuses_to_query(session_factory):
    async with session_factory() as session:
        with pytest.raises(RlsNotSetError):
            await session.execute(select(ProductModel))


async def test_guard_adds_tenant_filter_and_blocks_foreign_inserts(
    layer, session_factory, tenant_a, tenant_b, make_product, make_category
):
    async with layer.scope(tenant_a) as a:
        await layer.write(a, make_product(tenant_a))

    # A statement built without any tenant criteria still only sees the marker's rows.
    async with tenant_session(session_factory, tenant_b, uuid.uuid4()) as session:
        assert (await session.execute(select(ProductModel))).scalars().all() == []

        session.add(CategoryModel(tenant_id=tenant_a, name="Sneaky", slug="sneaky"))
        with pytest.raises(CrossTenantViolationError):
            await session.flush()


def test_scoped_select_requires_a_scope():
    with pytest.raises(RlsNotSetError):
        scoped_select(None, ProductModel)
