"""
Model <-> entity mapping.

Entities are frozen dataclasses whose field names match the column names, so
most mapping is by field. Timestamps read back from backends without timezone
support (SQLite) are normalised to UTC.
"""
from __future__ import annotations

import dataclasses
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Type, TypeVar

from shopcore.domain.entities import (
    Category,
    InventoryTransaction,
    Order,
    OrderLine,
    Product,
    Tenant,
)
from shopcore.infrastructure.database.base_model import Base
from shopcore.infrastructure.database.models import (
    CategoryModel,
    InventoryTransactionModel,
    OrderLineModel,
    OrderModel,
    ProductModel,
    TenantModel,
)

E = TypeVar("E")
M = TypeVar("M", bound=Base)


def _aware(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _field_values(entity: Any, exclude: Iterable[str] = ()) -> Dict[str, Any]:
    skip = set(exclude)
    return {f.name: getattr(entity, f.name) for f in dataclasses.fields(entity) if f.name not in skip}


def _from_model(entity_cls: Type[E], model: Any, exclude: Iterable[str] = ()) -> Dict[str, Any]:
    skip = set(exclude)
    return {
        f.name: _aware(getattr(model, f.name))
        for f in dataclasses.fields(entity_cls)  # type: ignore[arg-type]
        if f.name not in skip
    }


def apply_fields(model: M, values: Dict[str, Any]) -> M:
    for name, value in values.items():
        setattr(model, name, value)
    return model


# Tenant

def tenant_to_entity(model: TenantModel) -> Tenant:
    values = _from_model(Tenant, model)
    values["settings"] = dict(model.settings or {})
    return Tenant(**values)


def tenant_to_model(entity: Tenant) -> TenantModel:
    return apply_fields(TenantModel(), _field_values(entity))


# Category

def category_to_entity(model: CategoryModel) -> Category:
    return Category(**_from_model(Category, model))


def category_values(entity: Category) -> Dict[str, Any]:
    return _field_values(entity)


# Product

def product_to_entity(model: ProductModel) -> Product:
    return Product(**_from_model(Product, model))


def product_values(entity: Product) -> Dict[str, Any]:
    return _field_values(entity)


# Order

def order_line_to_entity(model: OrderLineModel) -> OrderLine:
    return OrderLine(
        id=model.id,
        product_id=model.product_id,
        product_name=model.product_name,
        product_sku=model.product_sku,
        unit_price=model.unit_price,
        quantity=model.quantity,
        total_price=model.total_price,
    )


def order_to_entity(model: OrderModel) -> Order:
    values = _from_model(Order, model, exclude=("lines",))
    values["lines"] = tuple(order_line_to_entity(line) for line in model.lines)
    return Order(**values)


def order_values(entity: Order) -> Dict[str, Any]:
    return _field_values(entity, exclude=("lines",))


def order_line_models(entity: Order) -> list[OrderLineModel]:
    return [
        OrderLineModel(
            id=line.id,
            tenant_id=entity.tenant_id,
            order_id=entity.id,
            position=position,
            product_id=line.product_id,
            product_name=line.product_name,
            product_sku=line.product_sku,
            quantity=line.quantity,
            unit_price=line.unit_price,
            total_price=line.total_price,
            created_at=entity.created_at,
        )
        for position, line in enumerate(entity.lines)
    ]


# Inventory

def inventory_transaction_to_entity(model: InventoryTransactionModel) -> InventoryTransaction:
    return InventoryTransaction(**_from_model(InventoryTransaction, model))


def inventory_transaction_to_model(entity: InventoryTransaction) -> InventoryTransactionModel:
    return apply_fields(InventoryTransactionModel(), _field_values(entity))
