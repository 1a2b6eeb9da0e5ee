import dataclasses
from decimal import Decimal

import pytest

from shopcore.domain.query import Pagination

pytestmark = pytest.mark.integration


async def test_repeated_reads_are_served_from_the_hot_tier(layer, tenant_a, make_product):
    async with layer.scope(tenant_a) as a:
        product = await layer.write(a, make_product(tenant_a))

        first = await layer.get_by_id(a, "product", product.id)
        hits = layer.cache.hot.hits
        second = await layer.get_by_id(a, "product", product.id)

        assert first == second == product
        assert layer.cache.hot.hits == hits + 1


async def test_write_is_visible_on_the_next_read(layer, tenant_a, make_product):
    async with layer.scope(tenant_a) as a:
        product = await layer.write(a, make_product(tenant_a, price=Decimal("10.00")))
        cached = await layer.get_by_id(a, "product", product.id)
        assert cached.price == Decimal("10.00")

        await layer.write(a, dataclasses.replace(cached, price=Decimal("20.00")))

        assert (await layer.get_by_id(a, "product", product.id)).price == Decimal("20.00")


async def test_cached_lists_follow_writes(layer, tenant_a, make_product):
    async with layer.scope(tenant_a) as a:
        await layer.write(a, make_product(tenant_a, name="Alpha"))
        page = Pagination(limit=10)
        assert (await layer.list(a, "product", None, page)).total == 1

        await layer.write(a, make_product(tenant_a, name="Beta"))
        listed = await layer.list(a, "product", None, page)
        assert listed.total == 2
        assert sorted(p.name for p in listed) == ["Alpha", "Beta"]


async def test_stock_adjustment_evicts_the_cached_product(layer, tenant_a, make_product):
    async with layer.scope(tenant_a) as a:
        product = await layer.write(a, make_product(tenant_a, stock_quantity=10))
        assert (await layer.get_by_id(a, "product", product.id)).stock_quantity == 10

        await layer.adjust_stock(a, product.id, -3, "stock_out")

        fresh = await layer.get_by_id(a, "product", product.id)
        assert fresh.stock_quantity == 7
        assert fresh.version == 2


async def test_tenant_record_is_cached(layer, tenant_a):
    async with layer.scope(tenant_a) as a:
        tenant = await layer.get_tenant(a)
        assert tenant.id == tenant_a
        assert await layer.get_tenant(a) == tenant


async def test_reads_and_writes_work_while_shared_tier_is_down(layer, shared_cache, tenant_a, make_product):
    async with layer.scope(tenant_a) as a:
        product = await layer.write(a, make_product(tenant_a))
        await layer.get_by_id(a, "product", product.id)

        shared_cache.down = True
        renamed = await layer.write(a, dataclasses.replace(product, name="Decaf"))
        assert (await layer.get_by_id(a, "product", product.id)).name == "Decaf"
        assert layer.cache.degraded

        shared_cache.down = False
        assert (await layer.get_by_id(a, "product", product.id)) == renamed
        assert not layer.cache.degraded
