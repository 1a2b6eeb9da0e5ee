"""
Cache Coherence Layer.

Cache-aside reads through two tiers:

- hot tier: in-process `MemoryCache`, one LRU partition per tenant;
- shared tier: an `ICacheProvider` (Redis), optional.

Every stored entry carries the generation counter observed *before* its loader
ran. Invalidation bumps the counter, so an entry written by a reader that
raced a writer is rejected on the next read instead of being served. Every
key also embeds the tenant epoch; bumping the epoch orphans all of a tenant's
entries at once without scanning anything.

Generation counters expire `counter_ttl` seconds after their last bump or
store, so a counter that has expired and restarted at 0 can never match a
live entry.

Key layout (relative to the provider prefix):
    t:{tenant}:epoch                      tenant epoch
    t:{tenant}:gen:{type}:{id}            entity generation
    t:{tenant}:gen:{type}:*               list generation for a type
    t:{tenant}:e{epoch}:{type}:{id}       cached entity
    t:{tenant}:e{epoch}:{type}:q:{fp}     cached page of a list query
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple
from uuid import UUID

from shopcore.application.entity_registry import ENTITY_CLASSES, cache_class_of
from shopcore.config import Settings
from shopcore.domain.events import TENANT_STATUS_CHANGED, ChangeEvent
from shopcore.domain.query import Page
from shopcore.domain.scope import ScopeHandle
from shopcore.domain.value_objects import CacheClass
from shopcore.errors import CacheUnavailableError, CrossTenantViolationError, InvalidTenantError
from shopcore.infrastructure.cache.cache_protocol import ICacheProvider
from shopcore.infrastructure.cache.memory_cache import CounterMap, MemoryCache
from shopcore.logging import get_logger, log_security_event
from shopcore.utils.serialization import from_jsonable, to_jsonable

logger = get_logger(__name__)

Loader = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class CacheKey:
    """
    Identifies one cacheable value: a single entity, or one page of a list query
    (`fingerprint` from `shopcore.domain.query.fingerprint`).
    """
    tenant_id: UUID
    entity_type: str
    entity_id: Optional[UUID] = None
    fingerprint: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.entity_id is None) == (self.fingerprint is None):
            raise ValueError("CacheKey needs exactly one of entity_id or fingerprint")

    @classmethod
    def for_entity(cls, scope: ScopeHandle, entity_type: str, entity_id: UUID) -> "CacheKey":
        return cls(tenant_id=scope.tenant_id, entity_type=entity_type, entity_id=entity_id)

    @classmethod
    def for_query(cls, scope: ScopeHandle, entity_type: str, fingerprint: str) -> "CacheKey":
        return cls(tenant_id=scope.tenant_id, entity_type=entity_type, fingerprint=fingerprint)

    @property
    def is_query(self) -> bool:
        return self.fingerprint is not None

    def generation_key(self) -> str:
        if self.is_query:
            return list_generation_key(self.tenant_id, self.entity_type)
        return entity_generation_key(self.tenant_id, self.entity_type, self.entity_id)

    def storage_key(self, epoch: int) -> str:
        base = f"t:{self.tenant_id}:e{epoch}:{self.entity_type}"
        if self.is_query:
            return f"{base}:q:{self.fingerprint}"
        return f"{base}:{self.entity_id}"


def epoch_key(tenant_id: UUID) -> str:
    return f"t:{tenant_id}:epoch"


def entity_generation_key(tenant_id: UUID, entity_type: str, entity_id: Any) -> str:
    return f"t:{tenant_id}:gen:{entity_type}:{entity_id}"


def list_generation_key(tenant_id: UUID, entity_type: str) -> str:
    return f"t:{tenant_id}:gen:{entity_type}:*"


# Codec: entries hold plain JSON so both tiers store the same thing.

def encode_value(value: Any) -> Dict[str, Any]:
    if isinstance(value, Page):
        item_type = getattr(value.items[0], "entity_type", None) if value.items else None
        return {
            "kind": "page",
            "type": item_type,
            "items": [to_jsonable(item) for item in value.items],
            "total": value.total,
            "offset": value.offset,
            "limit": value.limit,
        }
    entity_type = getattr(type(value), "entity_type", None)
    if entity_type in ENTITY_CLASSES and dataclasses.is_dataclass(value):
        return {"kind": "entity", "type": entity_type, "data": to_jsonable(value)}
    return {"kind": "raw", "data": to_jsonable(value)}


def decode_value(encoded: Dict[str, Any]) -> Any:
    kind = encoded.get("kind")
    if kind == "entity":
        return from_jsonable(ENTITY_CLASSES[encoded["type"]], encoded["data"])
    if kind == "page":
        item_cls = ENTITY_CLASSES.get(encoded.get("type") or "")
        items = tuple(from_jsonable(item_cls, item) if item_cls else item for item in encoded["items"])
        return Page(items=items, total=encoded["total"], offset=encoded["offset"], limit=encoded["limit"])
    return encoded.get("data")


class CacheCoherenceLayer:
    def __init__(
        self,
        settings: Settings,
        *,
        shared: Optional[ICacheProvider] = None,
        hot: Optional[MemoryCache] = None,
        counters: Optional[CounterMap] = None,
    ) -> None:
        self._settings = settings
        self._shared = shared
        self._hot = hot if hot is not None else MemoryCache(settings.hot_cache_budget_bytes)
        # Counters used when there is no shared tier.
        self._local_counters = counters if counters is not None else CounterMap()
        # Tenants whose invalidation could not reach the shared tier.
        self._pending_flush: Set[UUID] = set()
        self._degraded = False

    @property
    def hot(self) -> MemoryCache:
        return self._hot

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def counter_ttl(self) -> int:
        """Generation counters outlive every entry stamped with them."""
        return 2 * max(self._settings.cache_ttl_static, self._settings.cache_ttl_semi_dynamic)

    def ttl_for(self, cache_class: CacheClass) -> Optional[int]:
        if cache_class is CacheClass.STATIC:
            return self._settings.cache_ttl_static
        if cache_class is CacheClass.SEMI_DYNAMIC:
            return self._settings.cache_ttl_semi_dynamic
        return None

    # ------------------------------------------------------------------ reads

    async def read(self, scope: ScopeHandle, key: CacheKey, loader: Loader) -> Any:
        """
        Return the cached value for `key`, or call `loader` and cache its result.

        Live entity types always go to the loader. When the shared tier is
        unreachable the loader result is returned without caching.

        Raises:
            CrossTenantViolationError: `key` is namespaced to another tenant
        """
        self._check_key(scope, key)
        cache_class = cache_class_of(key.entity_type)
        if not cache_class.cacheable:
            return await loader()

        stamp = await self._stamp(key)
        if stamp is None:
            return await loader()
        epoch, generation = stamp
        storage_key = key.storage_key(epoch)

        entry = self._hot.get(key.tenant_id, storage_key)
        if entry is not None and entry.get("gen") == generation:
            return decode_value(entry["value"])

        if self._shared is not None:
            try:
                entry = await self._shared.get(storage_key)
            except CacheUnavailableError as e:
                self._mark_degraded("get", e)
                return await loader()
            if isinstance(entry, dict) and entry.get("gen") == generation and "value" in entry:
                self._hot.set(key.tenant_id, storage_key, entry, self.ttl_for(cache_class))
                return decode_value(entry["value"])

        value = await loader()
        await self._store(key, storage_key, generation, value, cache_class)
        return value

    async def _store(
        self,
        key: CacheKey,
        storage_key: str,
        generation: int,
        value: Any,
        cache_class: CacheClass,
    ) -> None:
        if value is None:
            return
        entry = {"gen": generation, "value": encode_value(value)}
        ttl = self.ttl_for(cache_class)
        # Refresh the counter the entry is stamped with; a changed value means a
        # writer invalidated while the loader ran.
        gkey = key.generation_key()
        if self._shared is None:
            if self._local_counters.increment(gkey, 0, ttl=self.counter_ttl) != generation:
                return
        else:
            try:
                if await self._shared.increment(gkey, 0, ttl=self.counter_ttl) != generation:
                    return
                await self._shared.set(storage_key, entry, ttl)
            except CacheUnavailableError as e:
                self._mark_degraded("set", e)
                return
        if not self._hot.set(key.tenant_id, storage_key, entry, ttl):
            logger.debug("Value exceeds hot tier budget", key=storage_key)

    async def _stamp(self, key: CacheKey) -> Optional[Tuple[int, int]]:
        """(epoch, generation) for `key`; None while the shared tier is unreachable."""
        ekey = epoch_key(key.tenant_id)
        gkey = key.generation_key()
        if self._shared is None:
            return self._local_counters.get(ekey), self._local_counters.get(gkey)

        if not await self._apply_pending_flushes():
            return None
        try:
            values = await self._shared.get_many([ekey, gkey])
        except CacheUnavailableError as e:
            self._mark_degraded("get_many", e)
            return None
        self._mark_healthy()
        return int(values.get(ekey) or 0), int(values.get(gkey) or 0)

    # ----------------------------------------------------------- invalidation

    async def invalidate(self, scope: ScopeHandle, entity_type: str, entity_id: Any) -> None:
        """
        Make the cached value of one entity (and every cached list of its type)
        unreadable. Safe to call repeatedly.
        """
        if not isinstance(scope, ScopeHandle):
            raise InvalidTenantError("A ScopeHandle is required")
        await self._invalidate(scope.tenant_id, entity_type, entity_id)

    async def _invalidate(self, tenant_id: UUID, entity_type: str, entity_id: Any) -> None:
        if not cache_class_of(entity_type).cacheable:
            return
        gen_key = entity_generation_key(tenant_id, entity_type, entity_id)
        list_key = list_generation_key(tenant_id, entity_type)

        if self._shared is None:
            self._local_counters.increment(gen_key, ttl=self.counter_ttl)
            self._local_counters.increment(list_key, ttl=self.counter_ttl)
            epoch = self._local_counters.get(epoch_key(tenant_id))
            self._hot.delete(tenant_id, f"t:{tenant_id}:e{epoch}:{entity_type}:{entity_id}")
            logger.debug("Cache entry invalidated", tenant_id=str(tenant_id), entity_type=entity_type)
            return

        try:
            await self._shared.increment(gen_key, ttl=self.counter_ttl)
            await self._shared.increment(list_key, ttl=self.counter_ttl)
            epoch = await self._shared.get_int(epoch_key(tenant_id))
            storage_key = f"t:{tenant_id}:e{epoch}:{entity_type}:{entity_id}"
            await self._shared.delete(storage_key)
        except CacheUnavailableError as e:
            self._mark_degraded("invalidate", e)
            # Nothing of this tenant may be served from the hot tier until the
            # shared tier has seen an epoch bump.
            self._hot.drop_tenant(tenant_id)
            self._pending_flush.add(tenant_id)
            return
        self._hot.delete(tenant_id, storage_key)
        logger.debug("Cache entry invalidated", tenant_id=str(tenant_id), entity_type=entity_type)

    async def flush_tenant(self, tenant_id: UUID) -> None:
        """Drop everything cached for one tenant; other tenants are untouched."""
        dropped = self._hot.drop_tenant(tenant_id)
        if self._shared is None:
            self._local_counters.increment(epoch_key(tenant_id))
        else:
            try:
                await self._shared.increment(epoch_key(tenant_id))
            except CacheUnavailableError as e:
                self._mark_degraded("flush_tenant", e)
                self._pending_flush.add(tenant_id)
        logger.info("Tenant cache flushed", tenant_id=str(tenant_id), hot_entries=dropped)

    async def _apply_pending_flushes(self) -> bool:
        for tenant_id in list(self._pending_flush):
            try:
                await self._shared.increment(epoch_key(tenant_id))  # type: ignore[union-attr]
            except CacheUnavailableError as e:
                self._mark_degraded("flush_tenant", e)
                return False
            self._pending_flush.discard(tenant_id)
            logger.info("Deferred tenant cache flush applied", tenant_id=str(tenant_id))
        return True

    async def handle_event(self, event: ChangeEvent) -> None:
        """Required subscriber for every committed change event."""
        if event.event_type == TENANT_STATUS_CHANGED:
            await self.flush_tenant(event.tenant_id)
            return
        if event.entity_id is None:
            return
        await self._invalidate(event.tenant_id, event.subject_type, event.entity_id)

    # ---------------------------------------------------------------- helpers

    def _check_key(self, scope: ScopeHandle, key: CacheKey) -> None:
        if not isinstance(scope, ScopeHandle):
            raise InvalidTenantError("A ScopeHandle is required")
        if key.tenant_id != scope.tenant_id:
            log_security_event(
                "cross_tenant_cache_key",
                tenant_id=str(scope.tenant_id),
                details={"key_tenant_id": str(key.tenant_id), "entity_type": key.entity_type},
            )
            raise CrossTenantViolationError(
                "Cache key belongs to another tenant",
                resource_type=key.entity_type,
                tenant_id=scope.tenant_id,
            )

    def _mark_degraded(self, operation: str, error: Exception) -> None:
        if not self._degraded:
            logger.warning("Shared cache unavailable, passing reads through", operation=operation, error=str(error))
        self._degraded = True

    def _mark_healthy(self) -> None:
        if self._degraded:
            logger.info("Shared cache available again")
        self._degraded = False
