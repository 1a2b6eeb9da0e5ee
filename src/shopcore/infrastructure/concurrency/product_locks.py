"""
Per-(tenant, product) exclusive locks for stock mutations.

Locks live in the current process; across processes the optimistic version
check in the stock engine still serialises read-modify-write cycles.
Entries are reference counted and dropped once nobody holds or waits on them.
"""
from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, Tuple
from uuid import UUID

from shopcore.errors import ConcurrencyConflictError
from shopcore.logging import get_logger

logger = get_logger(__name__)

LockKey = Tuple[UUID, UUID]


class _Slot:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class ProductLockRegistry:
    def __init__(self) -> None:
        self._slots: Dict[LockKey, _Slot] = {}

    def __len__(self) -> int:
        return len(self._slots)

    def is_locked(self, tenant_id: UUID, product_id: UUID) -> bool:
        slot = self._slots.get((tenant_id, product_id))
        return slot is not None and slot.lock.locked()

    @asynccontextmanager
    async def hold(self, tenant_id: UUID, product_id: UUID, *, timeout: float) -> AsyncIterator[None]:
        """
        Hold the product lock for the duration of the block.

        Raises:
            ConcurrencyConflictError: lock not acquired within `timeout` seconds
        """
        key = (tenant_id, product_id)
        slot = self._slots.setdefault(key, _Slot())
        slot.users += 1
        try:
            try:
                await asyncio.wait_for(slot.lock.acquire(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Stock lock timeout",
                    tenant_id=str(tenant_id),
                    product_id=str(product_id),
                    timeout=timeout,
                )
                raise ConcurrencyConflictError(
                    f"Timed out after {timeout}s waiting for stock lock",
                    resource_id=str(product_id),
                    tenant_id=tenant_id,
                )
            try:
                yield
            finally:
                slot.lock.release()
        finally:
            slot.users -= 1
            if slot.users == 0 and self._slots.get(key) is slot:
                del self._slots[key]

    @asynccontextmanager
    async def hold_many(
        self,
        tenant_id: UUID,
        product_ids: Iterable[UUID],
        *,
        timeout: float,
    ) -> AsyncIterator[None]:
        """Acquire several product locks in sorted id order (acyclic ordering)."""
        async with AsyncExitStack() as stack:
            for product_id in sorted(set(product_ids), key=str):
                await stack.enter_async_context(self.hold(tenant_id, product_id, timeout=timeout))
            yield
