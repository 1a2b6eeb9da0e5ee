"""
Per-entity-type descriptors used by the data access and cache layers.

A descriptor names the ORM model, the entity class, the mapping functions,
the cache class, and the whitelists for filtering and sorting.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Type

from shopcore.domain.entities import Category, InventoryTransaction, Order, Product, Tenant
from shopcore.domain.query import COMPARISON_OPS, EQUALITY_OPS, TEXT_OPS
from shopcore.domain.value_objects import CacheClass
from shopcore.errors import ValidationError
from shopcore.infrastructure.database import mappers
from shopcore.infrastructure.database.models import (
    CategoryModel,
    InventoryTransactionModel,
    OrderModel,
    ProductModel,
)


@dataclass(frozen=True)
class EntityDescriptor:
    name: str
    model: Type[Any]
    entity_cls: Type[Any]
    to_entity: Callable[[Any], Any]
    to_values: Optional[Callable[[Any], Dict[str, Any]]]
    cache_class: CacheClass
    filterable: Mapping[str, FrozenSet]
    sortable: FrozenSet[str]
    deletable: bool = True

    @property
    def writable(self) -> bool:
        return self.to_values is not None


CATEGORY = EntityDescriptor(
    name="category",
    model=CategoryModel,
    entity_cls=Category,
    to_entity=mappers.category_to_entity,
    to_values=mappers.category_values,
    cache_class=CacheClass.STATIC,
    filterable={
        "name": TEXT_OPS,
        "slug": TEXT_OPS,
        "parent_id": EQUALITY_OPS,
        "is_active": EQUALITY_OPS,
        "sort_order": COMPARISON_OPS,
    },
    sortable=frozenset({"name", "slug", "sort_order", "created_at"}),
)

PRODUCT = EntityDescriptor(
    name="product",
    model=ProductModel,
    entity_cls=Product,
    to_entity=mappers.product_to_entity,
    to_values=mappers.product_values,
    cache_class=CacheClass.SEMI_DYNAMIC,
    filterable={
        "name": TEXT_OPS,
        "sku": TEXT_OPS,
        "description": TEXT_OPS,
        "category_id": EQUALITY_OPS,
        "price": COMPARISON_OPS,
        "is_active": EQUALITY_OPS,
        "allow_backorder": EQUALITY_OPS,
        "min_stock_level": COMPARISON_OPS,
        "created_at": COMPARISON_OPS,
    },
    sortable=frozenset({"name", "sku", "price", "created_at", "updated_at"}),
)

ORDER = EntityDescriptor(
    name="order",
    model=OrderModel,
    entity_cls=Order,
    to_entity=mappers.order_to_entity,
    to_values=mappers.order_values,
    cache_class=CacheClass.LIVE,
    filterable={
        "order_number": TEXT_OPS,
        "status": EQUALITY_OPS,
        "payment_status": EQUALITY_OPS,
        "customer_id": EQUALITY_OPS,
        "customer_email": TEXT_OPS,
        "total_amount": COMPARISON_OPS,
        "created_at": COMPARISON_OPS,
    },
    sortable=frozenset({"order_number", "total_amount", "created_at", "updated_at"}),
)

INVENTORY_TRANSACTION = EntityDescriptor(
    name="inventory_transaction",
    model=InventoryTransactionModel,
    entity_cls=InventoryTransaction,
    to_entity=mappers.inventory_transaction_to_entity,
    to_values=None,
    cache_class=CacheClass.LIVE,
    filterable={
        "product_id": EQUALITY_OPS,
        "order_id": EQUALITY_OPS,
        "transaction_type": EQUALITY_OPS,
        "sequence": COMPARISON_OPS,
        "created_at": COMPARISON_OPS,
    },
    sortable=frozenset({"sequence", "created_at"}),
    deletable=False,
)

REGISTRY: Dict[str, EntityDescriptor] = {
    d.name: d for d in (CATEGORY, PRODUCT, ORDER, INVENTORY_TRANSACTION)
}

# Cache classification covers a few types the DAL does not serve directly.
CACHE_CLASSES: Dict[str, CacheClass] = {
    Tenant.entity_type: CacheClass.STATIC,
    "stock": CacheClass.LIVE,
    **{name: d.cache_class for name, d in REGISTRY.items()},
}

ENTITY_CLASSES: Dict[str, Type[Any]] = {
    Tenant.entity_type: Tenant,
    **{name: d.entity_cls for name, d in REGISTRY.items()},
}


def get_descriptor(entity_type: str) -> EntityDescriptor:
    try:
        return REGISTRY[entity_type]
    except KeyError:
        raise ValidationError(
            f"Unknown entity type: {entity_type!r}",
            field_errors={"entity_type": [f"expected one of {sorted(REGISTRY)}"]},
        )


def descriptor_for(entity: Any) -> EntityDescriptor:
    return get_descriptor(getattr(type(entity), "entity_type", ""))


def cache_class_of(entity_type: str) -> CacheClass:
    """Unknown types are never cached."""
    return CACHE_CLASSES.get(entity_type, CacheClass.LIVE)
