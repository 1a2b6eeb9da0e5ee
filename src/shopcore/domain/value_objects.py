"""
Domain value objects: status enums and cache classification.
"""
from __future__ import annotations

from enum import Enum


class TenantStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def is_cancellable(self) -> bool:
        return self in (OrderStatus.PENDING, OrderStatus.CONFIRMED)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class InventoryTransactionType(str, Enum):
    STOCK_IN = "stock_in"
    STOCK_OUT = "stock_out"
    ADJUSTMENT = "adjustment"
    TRANSFER = "transfer"
    RETURN = "return"

    def accepts(self, delta: int) -> bool:
        """Sign rule for a stock delta of this type."""
        if delta == 0:
            return False
        if self in (InventoryTransactionType.STOCK_IN, InventoryTransactionType.RETURN):
            return delta > 0
        if self is InventoryTransactionType.STOCK_OUT:
            return delta < 0
        return True


class CacheClass(str, Enum):
    """
    Cache eligibility of an entity type.

    STATIC: long TTL, cached aggressively (categories, tenant settings).
    SEMI_DYNAMIC: short TTL + event invalidation (product descriptions/pricing).
    LIVE: never cached (stock movements, orders).
    """
    STATIC = "static"
    SEMI_DYNAMIC = "semi_dynamic"
    LIVE = "live"

    @property
    def cacheable(self) -> bool:
        return self is not CacheClass.LIVE
