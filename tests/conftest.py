import json
import uuid
from decimal import Decimal

import pytest

from shopcore.application.facade import ShopDataLayer
from shopcore.config import Settings
from shopcore.domain.entities import Category, Product, Tenant
from shopcore.domain.value_objects import TenantStatus
from shopcore.errors import CacheUnavailableError
from shopcore.infrastructure.database.engine import (
    close_database_engine,
    create_database_engine,
    create_schema,
    create_session_factory,
    system_session,
)
from shopcore.infrastructure.database.mappers import tenant_to_model
from shopcore.utils.serialization import SafeEncoder


class FakeSharedCache:
    """In-memory stand-in for the shared tier; `down = True` simulates an outage."""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.down = False

    def _check(self, operation):
        if self.down:
            raise CacheUnavailableError("shared tier down", operation=operation)

    async def get(self, key):
        self._check("GET")
        return self.data.get(key)

    async def set(self, key, value, ttl=None):
        self._check("SET")
        # Same JSON round trip the Redis implementation performs
        self.data[key] = json.loads(json.dumps(value, cls=SafeEncoder))
        return True

    async def delete(self, key):
        self._check("DELETE")
        return self.data.pop(key, None) is not None

    async def exists(self, key):
        self._check("EXISTS")
        return key in self.data

    async def increment(self, key, amount=1, ttl=None):
        self._check("INCR")
        self.data[key] = int(self.data.get(key) or 0) + amount
        if ttl:
            self.ttls[key] = ttl
        return self.data[key]

    async def get_int(self, key):
        self._check("GET")
        return int(self.data.get(key) or 0)

    async def get_many(self, keys):
        self._check("MGET")
        return {k: self.data[k] for k in keys if k in self.data}

    async def ping(self):
        return not self.down


@pytest.fixture
def settings(tmp_path):
    return Settings(
        is_testing=True,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'shopcore-test.db'}",
        stock_lock_timeout_seconds=30.0,
        stock_retry_base_ms=1,
        hot_cache_budget_bytes=256 * 1024,
    )


@pytest.fixture
async def engine(settings):
    engine = await create_database_engine(settings)
    await create_schema(engine)
    yield engine
    await close_database_engine(engine)


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def shared_cache():
    return FakeSharedCache()


@pytest.fixture
async def layer(settings, session_factory, shared_cache):
    layer = ShopDataLayer(settings, session_factory, shared_cache=shared_cache)
    yield layer
    await layer.close()


async def seed_tenant(session_factory, slug, status=TenantStatus.ACTIVE):
    tenant = Tenant(name=slug.title(), slug=slug, status=status)
    async with system_session(session_factory) as session:
        async with session.begin():
            session.add(tenant_to_model(tenant))
    return tenant.id


@pytest.fixture
async def tenant_a(session_factory):
    return await seed_tenant(session_factory, "tenant-a")


@pytest.fixture
async def tenant_b(session_factory):
    return await seed_tenant(session_factory, "tenant-b")


def _make_product(tenant_id, **overrides):
    values = {
        "tenant_id": tenant_id,
        "name": "Espresso Beans",
        "sku": f"SKU-{uuid.uuid4().hex[:8]}",
        "price": Decimal("10.00"),
    }
    values.update(overrides)
    return Product(**values)


def _make_category(tenant_id, **overrides):
    values = {"tenant_id": tenant_id, "name": "Coffee", "slug": f"coffee-{uuid.uuid4().hex[:6]}"}
    values.update(overrides)
    return Category(**values)


@pytest.fixture
def make_product():
    return _make_product


@pytest.fixture
def make_category():
    return _make_category


@pytest.fixture
def add_tenant(session_factory):
    async def _add(slug, status=TenantStatus.ACTIVE):
        return await seed_tenant(session_factory, slug, status)

    return _add
