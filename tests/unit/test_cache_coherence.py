import uuid
from decimal import Decimal

import pytest
from structlog.testing import capture_logs

from shopcore.application.cache_coherence import (
    CacheCoherenceLayer,
    CacheKey,
    decode_value,
    encode_value,
    entity_generation_key,
    epoch_key,
    list_generation_key,
)
from shopcore.config import Settings
from shopcore.domain.entities import Product
from shopcore.domain.events import TENANT_STATUS_CHANGED, ChangeEvent
from shopcore.domain.query import Page
from shopcore.domain.scope import ScopeHandle
from shopcore.errors import CrossTenantViolationError
from shopcore.infrastructure.cache.memory_cache import CounterMap


class CountingLoader:
    def __init__(self, value):
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return self.value


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def scope():
    return ScopeHandle(tenant_id=uuid.uuid4())


@pytest.fixture(params=["hot-only", "shared"])
def coherence(request):
    shared = request.getfixturevalue("shared_cache") if request.param == "shared" else None
    return CacheCoherenceLayer(Settings(), shared=shared)


async def test_second_read_is_served_from_cache(coherence, scope):
    key = CacheKey.for_entity(scope, "product", uuid.uuid4())
    loader = CountingLoader({"price": "10.00"})

    assert await coherence.read(scope, key, loader) == {"price": "10.00"}
    assert await coherence.read(scope, key, loader) == {"price": "10.00"}
    assert loader.calls == 1


async def test_live_types_always_hit_the_loader(coherence, scope):
    key = CacheKey.for_entity(scope, "order", uuid.uuid4())
    loader = CountingLoader({"status": "pending"})

    await coherence.read(scope, key, loader)
    await coherence.read(scope, key, loader)
    assert loader.calls == 2


async def test_invalidate_forces_reload_and_is_idempotent(coherence, scope):
    pid = uuid.uuid4()
    key = CacheKey.for_entity(scope, "product", pid)
    await coherence.read(scope, key, CountingLoader({"price": "10.00"}))

    await coherence.invalidate(scope, "product", pid)
    await coherence.invalidate(scope, "product", pid)

    assert await coherence.read(scope, key, CountingLoader({"price": "20.00"})) == {"price": "20.00"}


async def test_value_loaded_across_an_invalidation_is_not_served(coherence, scope):
    pid = uuid.uuid4()
    key = CacheKey.for_entity(scope, "product", pid)

    async def racing_loader():
        # A writer commits and invalidates while this reader is still loading.
        await coherence.invalidate(scope, "product", pid)
        return {"price": "10.00"}

    assert await coherence.read(scope, key, racing_loader) == {"price": "10.00"}
    assert await coherence.read(scope, key, CountingLoader({"price": "20.00"})) == {"price": "20.00"}


async def test_entity_invalidation_also_invalidates_lists(coherence, scope):
    key = CacheKey.for_query(scope, "product", "f" * 32)
    await coherence.read(scope, key, CountingLoader(["old"]))

    await coherence.invalidate(scope, "product", uuid.uuid4())

    assert await coherence.read(scope, key, CountingLoader(["new"])) == ["new"]


async def test_flush_tenant_leaves_other_tenants_alone(coherence):
    a, b = ScopeHandle(tenant_id=uuid.uuid4()), ScopeHandle(tenant_id=uuid.uuid4())
    key_a = CacheKey.for_entity(a, "category", uuid.uuid4())
    key_b = CacheKey.for_entity(b, "category", uuid.uuid4())
    await coherence.read(a, key_a, CountingLoader("a1"))
    await coherence.read(b, key_b, CountingLoader("b1"))

    await coherence.flush_tenant(a.tenant_id)

    loader_b = CountingLoader("b2")
    assert await coherence.read(a, key_a, CountingLoader("a2")) == "a2"
    assert await coherence.read(b, key_b, loader_b) == "b1"
    assert loader_b.calls == 0


async def test_key_of_other_tenant_is_rejected(coherence, scope):
    foreign = CacheKey(tenant_id=uuid.uuid4(), entity_type="product", entity_id=uuid.uuid4())
    loader = CountingLoader(1)
    with capture_logs() as logs:
        with pytest.raises(CrossTenantViolationError):
            await coherence.read(scope, foreign, loader)

    assert loader.calls == 0
    (event,) = [e for e in logs if e.get("event_type") == "cross_tenant_cache_key"]
    assert event["tenant_id"] == str(scope.tenant_id)
    assert event["details"]["key_tenant_id"] == str(foreign.tenant_id)


async def test_tenant_status_event_flushes_the_tenant(coherence, scope):
    key = CacheKey.for_entity(scope, "tenant", scope.tenant_id)
    await coherence.read(scope, key, CountingLoader("active"))

    await coherence.handle_event(
        ChangeEvent(event_type=TENANT_STATUS_CHANGED, tenant_id=scope.tenant_id, entity_id=scope.tenant_id)
    )

    assert await coherence.read(scope, key, CountingLoader("suspended")) == "suspended"


async def test_shared_tier_outage_degrades_to_pass_through(scope, shared_cache):
    shared = shared_cache
    coherence = CacheCoherenceLayer(Settings(), shared=shared)
    pid = uuid.uuid4()
    key = CacheKey.for_entity(scope, "product", pid)
    await coherence.read(scope, key, CountingLoader("v1"))

    shared.down = True
    loader = CountingLoader("v2")
    assert await coherence.read(scope, key, loader) == "v2"
    await coherence.invalidate(scope, "product", pid)
    assert coherence.degraded
    assert len(coherence.hot) == 0

    shared.down = False
    assert await coherence.read(scope, key, CountingLoader("v3")) == "v3"
    assert not coherence.degraded


async def test_local_generation_counters_are_bounded(scope):
    clock = FakeClock()
    counters = CounterMap(clock=clock, sweep_interval=1)
    coherence = CacheCoherenceLayer(Settings(), counters=counters)

    for _ in range(50):
        await coherence.invalidate(scope, "product", uuid.uuid4())
    assert len(counters) == 51

    clock.now += coherence.counter_ttl + 2
    await coherence.invalidate(scope, "product", uuid.uuid4())
    assert len(counters) == 2


async def test_shared_generation_counters_expire(scope, shared_cache):
    settings = Settings()
    coherence = CacheCoherenceLayer(settings, shared=shared_cache)
    pid = uuid.uuid4()
    key = CacheKey.for_entity(scope, "product", pid)

    await coherence.invalidate(scope, "product", pid)
    await coherence.read(scope, key, CountingLoader("v1"))

    assert coherence.counter_ttl > max(settings.cache_ttl_static, settings.cache_ttl_semi_dynamic)
    assert shared_cache.ttls[entity_generation_key(scope.tenant_id, "product", pid)] == coherence.counter_ttl
    assert shared_cache.ttls[list_generation_key(scope.tenant_id, "product")] == coherence.counter_ttl
    assert epoch_key(scope.tenant_id) not in shared_cache.ttls



def test_cache_key_needs_exactly_one_target():
    with pytest.raises(ValueError):
        CacheKey(tenant_id=uuid.uuid4(), entity_type="product")
    with pytest.raises(ValueError):
        CacheKey(tenant_id=uuid.uuid4(), entity_type="product", entity_id=uuid.uuid4(), fingerprint="x")


def test_codec_restores_entities_and_pages():
    product = Product(tenant_id=uuid.uuid4(), name="Beans", sku="B-1", price=Decimal("9.99"))
    assert decode_value(encode_value(product)) == product

    page = Page(items=(product,), total=3, offset=0, limit=1)
    restored = decode_value(encode_value(page))
    assert restored == page
    assert restored.has_more
