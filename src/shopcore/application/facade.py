"""
ShopDataLayer: the entry points offered to the API layer.

Wires the tenant context manager, data access layer, cache coherence layer,
stock engine and event notifier together. Reads of cache-eligible entity
types go through the cache; every committed write publishes its change events,
and the cache layer is subscribed to all of them as a required handler, so
invalidation has finished before a write returns.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable, List, Optional, Union
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from shopcore.application.cache_coherence import CacheCoherenceLayer, CacheKey, Loader
from shopcore.application.data_access import DataAccessLayer, as_uuid
from shopcore.application.entity_registry import cache_class_of, get_descriptor
from shopcore.application.order_service import OrderService
from shopcore.application.stock_engine import StockEngine
from shopcore.application.tenant_context import TenantContextManager, parse_tenant_id
from shopcore.config import Settings, get_settings
from shopcore.domain.base_entity import utcnow
from shopcore.domain.entities import InventoryTransaction, Order, Tenant
from shopcore.domain.events import ALL_EVENTS, TENANT_STATUS_CHANGED, ChangeEvent
from shopcore.domain.query import Page, Pagination, QueryFilter, fingerprint
from shopcore.domain.scope import ScopeHandle
from shopcore.domain.value_objects import TenantStatus
from shopcore.errors import InvalidTenantError, ValidationError
from shopcore.infrastructure.cache.cache_protocol import ICacheProvider
from shopcore.infrastructure.cache.redis_cache import RedisCache, create_redis_client
from shopcore.infrastructure.database.engine import (
    close_database_engine,
    create_database_engine,
    create_schema,
    create_session_factory,
    system_session,
)
from shopcore.infrastructure.database.errors import translate_db_error
from shopcore.infrastructure.database.mappers import tenant_to_entity
from shopcore.infrastructure.database.models import TenantModel
from shopcore.infrastructure.database.outbox import OutboxStore
from shopcore.infrastructure.messaging.event_notifier import EventHandler, EventNotifier
from shopcore.infrastructure.messaging.outbox_relay import OutboxRelay
from shopcore.logging import get_logger, setup_logging

logger = get_logger(__name__)


class ShopDataLayer:
    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: Optional[AsyncEngine] = None,
        shared_cache: Optional[ICacheProvider] = None,
        owns_shared_cache: bool = False,
    ) -> None:
        self.settings = settings
        self._engine = engine
        self._session_factory = session_factory
        self._shared_cache = shared_cache
        self._owns_shared_cache = owns_shared_cache

        self.outbox = OutboxStore(session_factory)
        self.notifier = EventNotifier(self.outbox)
        self.contexts = TenantContextManager(session_factory, settings, notifier=self.notifier, outbox=self.outbox)
        self.dal = DataAccessLayer(self.contexts, settings)
        self.cache = CacheCoherenceLayer(settings, shared=shared_cache)
        self.stock = StockEngine(self.contexts, settings)
        self.orders = OrderService(self.contexts, settings, self.stock)
        self.relay = OutboxRelay(self.outbox, self.notifier)

        self.notifier.subscribe(ALL_EVENTS, self.cache.handle_event, required=True)

    async def __aenter__(self) -> "ShopDataLayer":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # ----------------------------------------------------------------- scopes

    async def begin_scope(
        self,
        tenant_id: Union[UUID, str, None],
        *,
        user_id: Optional[UUID] = None,
        roles: Optional[Iterable[str]] = None,
    ) -> ScopeHandle:
        return await self.contexts.begin_scope(tenant_id, user_id=user_id, roles=roles)

    async def end_scope(self, scope: ScopeHandle) -> None:
        await self.contexts.end_scope(scope)

    @asynccontextmanager
    async def scope(
        self,
        tenant_id: Union[UUID, str, None],
        *,
        user_id: Optional[UUID] = None,
        roles: Optional[Iterable[str]] = None,
    ) -> AsyncIterator[ScopeHandle]:
        async with self.contexts.scope(tenant_id, user_id=user_id, roles=roles) as handle:
            yield handle

    def current_tenant(self, scope: ScopeHandle) -> UUID:
        return self.contexts.current_tenant(scope)

    # ------------------------------------------------------------ data access

    async def get_by_id(self, scope: ScopeHandle, entity_type: str, entity_id: Union[UUID, str]) -> Any:
        get_descriptor(entity_type)
        eid = as_uuid(entity_id)
        if not cache_class_of(entity_type).cacheable:
            return await self.dal.get_by_id(scope, entity_type, eid)
        return await self.cache.read(
            scope,
            CacheKey.for_entity(scope, entity_type, eid),
            lambda: self.dal.get_by_id(scope, entity_type, eid),
        )

    async def list(
        self,
        scope: ScopeHandle,
        entity_type: str,
        query_filter: Any = None,
        pagination: Optional[Pagination] = None,
    ) -> Page:
        descriptor = get_descriptor(entity_type)
        qf = QueryFilter.coerce(query_filter)
        page = pagination or Pagination()
        if not descriptor.cache_class.cacheable:
            return await self.dal.list(scope, entity_type, qf, page)

        qf.validate(descriptor.filterable)
        page.validate(self.settings.max_page_size)
        return await self.cache.read(
            scope,
            CacheKey.for_query(scope, entity_type, fingerprint(qf, page)),
            lambda: self.dal.list(scope, entity_type, qf, page),
        )

    async def write(self, scope: ScopeHandle, entity: Any) -> Any:
        return await self.dal.write(scope, entity)

    async def delete(self, scope: ScopeHandle, entity_type: str, entity_id: Union[UUID, str]) -> None:
        await self.dal.delete(scope, entity_type, entity_id)

    # ------------------------------------------------------------------ cache

    async def read(self, scope: ScopeHandle, key: CacheKey, loader: Loader) -> Any:
        return await self.cache.read(scope, key, loader)

    async def invalidate(self, scope: ScopeHandle, entity_type: str, entity_id: Any) -> None:
        await self.cache.invalidate(scope, entity_type, entity_id)

    async def get_tenant(self, scope: ScopeHandle) -> Tenant:
        """Tenant record of the scope, cached as static data."""

        async def load() -> Tenant:
            tenant = await self.contexts.load_tenant(scope.tenant_id)
            if tenant is None:
                raise InvalidTenantError("Unknown tenant", tenant_id=scope.tenant_id)
            return tenant

        return await self.cache.read(scope, CacheKey.for_entity(scope, Tenant.entity_type, scope.tenant_id), load)

    # ------------------------------------------------------------------ stock

    async def adjust_stock(
        self,
        scope: ScopeHandle,
        product_id: Union[UUID, str],
        delta: int,
        reason: Any,
        *,
        notes: Optional[str] = None,
        reference_number: Optional[str] = None,
    ) -> int:
        return await self.stock.adjust_stock(
            scope, product_id, delta, reason, notes=notes, reference_number=reference_number
        )

    async def stock_history(self, scope: ScopeHandle, product_id: Union[UUID, str]) -> List[InventoryTransaction]:
        return await self.stock.stock_history(scope, product_id)

    async def verify_stock_chain(self, scope: ScopeHandle, product_id: Union[UUID, str]) -> int:
        return await self.stock.verify_stock_chain(scope, product_id)

    async def place_order(self, scope: ScopeHandle, lines: Any, **kwargs: Any) -> Order:
        return await self.orders.place_order(scope, lines, **kwargs)

    async def cancel_order(self, scope: ScopeHandle, order_id: Union[UUID, str]) -> Order:
        return await self.orders.cancel_order(scope, order_id)

    # ---------------------------------------------------------------- tenants

    async def set_tenant_status(self, tenant_id: Union[UUID, str], status: Union[TenantStatus, str]) -> Tenant:
        """
        Move a tenant to another status and flush its cache.

        Scopes opened before the change keep their mode until they end.
        """
        tid = parse_tenant_id(tenant_id)
        try:
            new_status = TenantStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown tenant status: {status!r}", field_errors={"status": ["unknown"]})

        try:
            async with system_session(self._session_factory) as session:
                async with session.begin():
                    row = await session.get(TenantModel, tid)
                    if row is None:
                        raise InvalidTenantError("Unknown tenant", tenant_id=tid)
                    previous = row.status
                    row.status = new_status
                    row.updated_at = utcnow()
                    event = ChangeEvent(
                        event_type=TENANT_STATUS_CHANGED,
                        tenant_id=tid,
                        entity_id=tid,
                        entity_type=Tenant.entity_type,
                        payload={"previous_status": previous.value, "status": new_status.value},
                    )
                    delivered = not self.notifier.has_external_subscribers(TENANT_STATUS_CHANGED)
                    self.outbox.stage(session, [event], delivered=[delivered])
                tenant = tenant_to_entity(row)
        except SQLAlchemyError as e:
            raise translate_db_error(e, operation="set_tenant_status") from None

        logger.info(
            "Tenant status changed",
            tenant_id=str(tid),
            previous_status=previous.value,
            status=new_status.value,
        )
        await self.notifier.publish(event)
        return tenant

    # ----------------------------------------------------------------- events

    def subscribe(self, event_type: str, handler: EventHandler, *, required: bool = False) -> None:
        self.notifier.subscribe(event_type, handler, required=required)

    async def drain(self) -> None:
        await self.notifier.drain()

    async def close(self) -> None:
        await self.contexts.close()
        await self.notifier.drain()
        self.relay.stop()
        if self._owns_shared_cache and isinstance(self._shared_cache, RedisCache):
            await self._shared_cache.close()
        if self._engine is not None:
            await close_database_engine(self._engine)
            self._engine = None


async def create_shop_data_layer(
    settings: Optional[Settings] = None,
    *,
    shared_cache: Optional[ICacheProvider] = None,
    create_tables: bool = False,
) -> ShopDataLayer:
    """
    Build a ShopDataLayer from settings.

    A Redis shared tier is created from `REDIS_URL` unless `shared_cache` is
    given; without either, only the in-process tier is used.
    """
    settings = settings or get_settings()
    setup_logging(settings)
    engine = await create_database_engine(settings)
    if create_tables:
        await create_schema(engine)

    owns_shared_cache = False
    if shared_cache is None and settings.redis_url:
        shared_cache = RedisCache(create_redis_client(settings), key_prefix=settings.cache_key_prefix)
        owns_shared_cache = True

    logger.info(
        "Shop data layer ready",
        shared_cache=type(shared_cache).__name__ if shared_cache else None,
        hot_budget_bytes=settings.hot_cache_budget_bytes,
    )
    return ShopDataLayer(
        settings,
        create_session_factory(engine),
        engine=engine,
        shared_cache=shared_cache,
        owns_shared_cache=owns_shared_cache,
    )
