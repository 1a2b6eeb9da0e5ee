import dataclasses
import uuid

import pytest
import structlog

from shopcore.domain.events import TENANT_STATUS_CHANGED
from shopcore.domain.value_objects import TenantStatus
from shopcore.errors import InvalidTenantError, ReadOnlyScopeError, ValidationError

pytestmark = pytest.mark.integration


@pytest.mark.parametrize("tenant_id", [None, "", "   ", "not-a-uuid", "1234"])
async def test_malformed_tenant_ids_are_rejected(layer, tenant_id):
    with pytest.raises(InvalidTenantError):
        await layer.begin_scope(tenant_id)


async def test_unknown_tenant_is_rejected(layer):
    with pytest.raises(InvalidTenantError):
        await layer.begin_scope(uuid.uuid4())


async def test_cancelled_tenant_is_rejected(layer, add_tenant):
    tenant_id = await add_tenant("gone", TenantStatus.CANCELLED)
    with pytest.raises(InvalidTenantError):
        await layer.begin_scope(tenant_id)


async def test_tenant_id_may_be_given_as_string(layer, tenant_a):
    async with layer.scope(str(tenant_a)) as scope:
        assert layer.current_tenant(scope) == tenant_a
        assert not scope.read_only


async def test_ended_scope_cannot_be_used(layer, tenant_a, make_product):
    scope = await layer.begin_scope(tenant_a)
    await layer.end_scope(scope)
    await layer.end_scope(scope)

    with pytest.raises(InvalidTenantError):
        await layer.write(scope, make_product(tenant_a))
    with pytest.raises(InvalidTenantError):
        await layer.list(scope, "order")


async def test_forged_scope_is_rejected(layer, tenant_a, tenant_b, make_product):
    async with layer.scope(tenant_a) as a:
        forged = dataclasses.replace(a, tenant_id=tenant_b)
        with pytest.raises(InvalidTenantError):
            await layer.write(forged, make_product(tenant_b))


async def test_suspension_makes_new_scopes_read_only(layer, tenant_a, make_product):
    async with layer.scope(tenant_a) as a:
        product = await layer.write(a, make_product(tenant_a))

    tenant = await layer.set_tenant_status(tenant_a, "suspended")
    assert tenant.status is TenantStatus.SUSPENDED

    async with layer.scope(tenant_a) as a:
        assert a.read_only
        assert (await layer.get_by_id(a, "product", product.id)).id == product.id
        assert (await layer.get_tenant(a)).status is TenantStatus.SUSPENDED

        with pytest.raises(ReadOnlyScopeError):
            await layer.write(a, make_product(tenant_a))
        with pytest.raises(ReadOnlyScopeError):
            await layer.delete(a, "product", product.id)
        with pytest.raises(ReadOnlyScopeError):
            await layer.place_order(a, [(product.id, 1)])

    await layer.set_tenant_status(tenant_a, TenantStatus.ACTIVE)
    async with layer.scope(tenant_a) as a:
        assert not a.read_only
        await layer.write(a, make_product(tenant_a))


async def test_status_change_flushes_only_that_tenant(layer, tenant_a, tenant_b, make_product):
    async with layer.scope(tenant_a) as a:
        product_a = await layer.write(a, make_product(tenant_a))
        await layer.get_by_id(a, "product", product_a.id)
        await layer.get_tenant(a)
    async with layer.scope(tenant_b) as b:
        product_b = await layer.write(b, make_product(tenant_b))
        await layer.get_by_id(b, "product", product_b.id)

    hot = layer.cache.hot
    assert hot.tenant_usage(tenant_a) > 0
    usage_b = hot.tenant_usage(tenant_b)
    assert usage_b > 0

    await layer.set_tenant_status(tenant_a, TenantStatus.SUSPENDED)

    assert hot.tenant_usage(tenant_a) == 0
    assert hot.tenant_usage(tenant_b) == usage_b

    hits = hot.hits
    async with layer.scope(tenant_b) as b:
        await layer.get_by_id(b, "product", product_b.id)
    assert hot.hits == hits + 1


async def test_status_change_is_published(layer, tenant_a):
    seen = []

    async def record(event):
        seen.append((event.tenant_id, event.payload["previous_status"], event.payload["status"]))

    layer.subscribe(TENANT_STATUS_CHANGED, record)
    await layer.set_tenant_status(tenant_a, TenantStatus.SUSPENDED)
    await layer.drain()

    assert seen == [(tenant_a, "active", "suspended")]


async def test_status_change_of_unknown_tenant(layer):
    with pytest.raises(InvalidTenantError):
        await layer.set_tenant_status(uuid.uuid4(), TenantStatus.SUSPENDED)
    with pytest.raises(InvalidTenantError):
        await layer.set_tenant_status("nope", TenantStatus.SUSPENDED)


async def test_status_must_be_known(layer, tenant_a):
    with pytest.raises(ValidationError):
        await layer.set_tenant_status(tenant_a, "archived")


async def test_close_ends_open_scopes(layer, tenant_a):
    scope = await layer.begin_scope(tenant_a)
    assert layer.contexts.is_active(scope)

    await layer.close()

    assert not layer.contexts.is_active(scope)
    assert layer.contexts.active_scopes == 0


async def test_nested_scope_restores_the_outer_log_context(layer, tenant_a, tenant_b):
    with structlog.contextvars.bound_contextvars(correlation_id="req-42"):
        async with layer.scope(tenant_a) as a:
            async with layer.scope(tenant_b):
                assert structlog.contextvars.get_contextvars()["tenant_id"] == str(tenant_b)

            ctx = structlog.contextvars.get_contextvars()
            assert ctx["tenant_id"] == str(tenant_a)
            assert ctx["scope_id"] == str(a.scope_id)
            assert ctx["correlation_id"] == "req-42"

        ctx = structlog.contextvars.get_contextvars()
        assert ctx["correlation_id"] == "req-42"
        assert "tenant_id" not in ctx
