"""Translation of SQLAlchemy / driver errors into domain errors."""
from __future__ import annotations

import re
from typing import Optional

from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError

from shopcore.errors import ConstraintViolationError, DataAccessError, DomainError

# constraint name -> offending field
_CONSTRAINT_FIELDS = {
    "uq_products_tenant_sku": "sku",
    "uq_categories_tenant_slug": "slug",
    "uq_orders_tenant_order_number": "order_number",
    "uq_inventory_transactions_product_sequence": "sequence",
    "ck_products_price_non_negative": "price",
    "ck_products_cost_price_non_negative": "cost_price",
    "ck_products_stock_non_negative": "stock_quantity",
    "ck_products_min_stock_non_negative": "min_stock_level",
    "ck_orders_total_non_negative": "total_amount",
    "ck_order_items_quantity_positive": "quantity",
}

# SQLite reports columns instead of constraint names: "UNIQUE constraint failed: products.tenant_id, products.sku"
_SQLITE_UNIQUE = re.compile(r"UNIQUE constraint failed: ([\w.]+(?:, [\w.]+)*)")


def constraint_name(error: IntegrityError) -> Optional[str]:
    orig = error.orig
    name = getattr(getattr(orig, "diag", None), "constraint_name", None) or getattr(orig, "constraint_name", None)
    if name:
        return str(name)
    message = str(orig)
    for candidate in _CONSTRAINT_FIELDS:
        if candidate in message:
            return candidate
    match = _SQLITE_UNIQUE.search(message)
    if match:
        columns = [c.split(".")[-1] for c in match.group(1).split(", ")]
        table = match.group(1).split(".")[0]
        return f"uq_{table}_{'_'.join(columns)}"
    if "FOREIGN KEY constraint failed" in message or "foreign key" in message.lower():
        return "foreign_key"
    return None


def is_sequence_conflict(error: IntegrityError) -> bool:
    name = constraint_name(error) or ""
    return name in ("uq_inventory_transactions_product_sequence", "uq_inventory_transactions_product_id_sequence")


def translate_db_error(error: SQLAlchemyError, *, operation: str) -> DomainError:
    """Map a raw store error onto the typed error set; nothing raw leaves the DAL."""
    if isinstance(error, IntegrityError):
        name = constraint_name(error)
        field = _CONSTRAINT_FIELDS.get(name or "")
        if field is None and name and name.startswith("uq_"):
            field = name.rsplit("_", 1)[-1]
        if name == "foreign_key":
            message = "Row is referenced by other rows or references a missing row"
        else:
            message = f"Constraint violated during {operation}"
        return ConstraintViolationError(message, constraint=name, conflict_field=field)
    if isinstance(error, DBAPIError):
        return DataAccessError(f"Store error during {operation}", operation=operation)
    return DataAccessError(f"Unexpected data access failure during {operation}", operation=operation)
