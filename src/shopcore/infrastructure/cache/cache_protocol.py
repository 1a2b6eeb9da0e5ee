"""
Cache Protocol (Abstract Interface)
Contract for the shared cache tier
"""
from __future__ import annotations

from typing import Any, Protocol


class ICacheProvider(Protocol):
    """
    Shared cache tier: key-value with TTL and atomic increment.

    Cache is used ONLY for optimization, never as source of truth.
    Implementations raise `CacheUnavailableError` when the backend cannot be
    reached; the coherence layer absorbs it and degrades to pass-through.
    """

    async def get(self, key: str) -> Any | None:
        """
        Retrieve value from cache by key.

        Returns:
            Cached value (deserialized) or None if not found/expired
        """
        ...

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """
        Set a JSON-serializable value with optional TTL (seconds).
        """
        ...

    async def delete(self, key: str) -> bool:
        """
        Returns:
            True if key existed and was deleted
        """
        ...

    async def exists(self, key: str) -> bool:
        ...

    async def increment(self, key: str, amount: int = 1, ttl: int | None = None) -> int:
        """
        Atomically increment a counter (created at 0 when missing).

        With `ttl` the counter expires `ttl` seconds after this call; an
        `amount` of 0 only refreshes the expiry.

        Returns:
            New value after increment
        """
        ...

    async def get_int(self, key: str) -> int:
        """
        Read a counter written by `increment`; 0 when missing.
        """
        ...

    async def get_many(self, keys: list[str]) -> dict[str, Any]:
        """
        Returns:
            Dictionary of key-value pairs (missing keys omitted)
        """
        ...

    async def ping(self) -> bool:
        ...
