"""
In-process hot cache tier.

One LRU partition per tenant, each bounded by a byte budget measured on the
JSON encoding of the stored value. TTL is a backstop for missed invalidations.
Dropping a tenant touches only that tenant's partition.
"""
from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional

from shopcore.utils.serialization import dumps


@dataclass
class _Entry:
    value: Any
    size: int
    expires_at: Optional[float]


class _Partition:
    def __init__(self) -> None:
        self.entries: "OrderedDict[str, _Entry]" = OrderedDict()
        self.bytes_used = 0

    def pop(self, key: str) -> Optional[_Entry]:
        entry = self.entries.pop(key, None)
        if entry is not None:
            self.bytes_used -= entry.size
        return entry


class MemoryCache:
    def __init__(
        self,
        budget_bytes: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if budget_bytes <= 0:
            raise ValueError("budget_bytes must be > 0")
        self.budget_bytes = budget_bytes
        self._clock = clock
        self._partitions: Dict[Hashable, _Partition] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, tenant_id: Hashable, key: str) -> Optional[Any]:
        with self._lock:
            partition = self._partitions.get(tenant_id)
            entry = partition.entries.get(key) if partition else None
            if entry is None:
                self.misses += 1
                return None
            if entry.expires_at is not None and entry.expires_at <= self._clock():
                partition.pop(key)
                self.misses += 1
                return None
            partition.entries.move_to_end(key)
            self.hits += 1
            return entry.value

    def set(self, tenant_id: Hashable, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Store a JSON-able value; False when it alone exceeds the tenant budget."""
        size = len(dumps(value).encode("utf-8"))
        if size > self.budget_bytes:
            return False
        expires_at = self._clock() + ttl if ttl else None
        with self._lock:
            partition = self._partitions.setdefault(tenant_id, _Partition())
            partition.pop(key)
            partition.entries[key] = _Entry(value=value, size=size, expires_at=expires_at)
            partition.bytes_used += size
            while partition.bytes_used > self.budget_bytes:
                _, evicted = partition.entries.popitem(last=False)
                partition.bytes_used -= evicted.size
                self.evictions += 1
        return True

    def delete(self, tenant_id: Hashable, key: str) -> bool:
        with self._lock:
            partition = self._partitions.get(tenant_id)
            return partition is not None and partition.pop(key) is not None

    def drop_tenant(self, tenant_id: Hashable) -> int:
        """Remove every entry of one tenant; returns how many were dropped."""
        with self._lock:
            partition = self._partitions.pop(tenant_id, None)
            return len(partition.entries) if partition else 0

    def tenant_usage(self, tenant_id: Hashable) -> int:
        with self._lock:
            partition = self._partitions.get(tenant_id)
            return partition.bytes_used if partition else 0

    def __len__(self) -> int:
        with self._lock:
            return sum(len(p.entries) for p in self._partitions.values())

    def clear(self) -> None:
        with self._lock:
            self._partitions.clear()


class CounterMap:
    """
    In-process counters with a sliding TTL.

    Stands in for the shared tier's INCRBY + EXPIRE when there is no shared
    tier. A counter that is not bumped or touched within its TTL is dropped
    and reads as 0 again. Expired counters are swept at most once per
    `sweep_interval` seconds.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = 60.0,
    ) -> None:
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._values: Dict[str, int] = {}
        self._expires: Dict[str, float] = {}
        self._next_sweep = clock() + sweep_interval
        self._lock = threading.Lock()

    def get(self, key: str) -> int:
        with self._lock:
            self._expire_one(key, self._clock())
            return self._values.get(key, 0)

    def increment(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        """Add `amount` (0 only refreshes the TTL) and return the new value."""
        with self._lock:
            now = self._clock()
            self._sweep(now)
            self._expire_one(key, now)
            value = self._values.get(key, 0) + amount
            self._values[key] = value
            if ttl:
                self._expires[key] = now + ttl
            else:
                self._expires.pop(key, None)
            return value

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    def _expire_one(self, key: str, now: float) -> None:
        expires_at = self._expires.get(key)
        if expires_at is not None and expires_at <= now:
            del self._expires[key]
            self._values.pop(key, None)

    def _sweep(self, now: float) -> None:
        if now < self._next_sweep:
            return
        for key in [k for k, expires_at in self._expires.items() if expires_at <= now]:
            del self._expires[key]
            self._values.pop(key, None)
        self._next_sweep = now + self._sweep_interval
