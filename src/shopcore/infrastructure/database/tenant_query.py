"""
Tenant-scoped statement builders.

Every builder takes the `ScopeHandle` first and always emits
`tenant_id = scope.tenant_id`; there is no way to build a DAL statement
without a scope.
"""
from __future__ import annotations

from typing import Any, Collection, List, Optional, Type

from sqlalchemy import Delete, Select, Update, delete, func, select, update
from sqlalchemy.sql.elements import ColumnElement

from shopcore.domain.query import FilterOp, OrderBy, QueryFilter
from shopcore.domain.scope import ScopeHandle
from shopcore.errors import InvalidFilterError, RlsNotSetError
from shopcore.infrastructure.database.base_model import TenantScopedMixin
from shopcore.infrastructure.database.rls import INCLUDE_FOREIGN_TENANTS


def _require_scope(scope: Any) -> ScopeHandle:
    if not isinstance(scope, ScopeHandle):
        raise RlsNotSetError("A ScopeHandle is required to build a tenant query", missing_context=["scope"])
    return scope


def _tenant_clause(scope: ScopeHandle, model: Type[TenantScopedMixin]) -> ColumnElement[bool]:
    return model.tenant_id == _require_scope(scope).tenant_id


def scoped_select(scope: ScopeHandle, model: Type[TenantScopedMixin], *criteria: Any) -> Select:
    return select(model).where(_tenant_clause(scope, model), *criteria)


def scoped_count(scope: ScopeHandle, model: Type[TenantScopedMixin], *criteria: Any) -> Select:
    return select(func.count()).select_from(model).where(_tenant_clause(scope, model), *criteria)


def scoped_update(scope: ScopeHandle, model: Type[TenantScopedMixin], *criteria: Any) -> Update:
    return update(model).where(_tenant_clause(scope, model), *criteria)


def scoped_delete(scope: ScopeHandle, model: Type[TenantScopedMixin], *criteria: Any) -> Delete:
    return delete(model).where(_tenant_clause(scope, model), *criteria)


def ownership_probe(scope: ScopeHandle, model: Type[TenantScopedMixin], entity_id: Any) -> Select:
    """
    `SELECT tenant_id FROM <model> WHERE id = :id` across tenants.

    The one statement allowed to look past the tenant filter, and it only
    returns the owner so the caller can tell "absent" from "foreign".
    """
    _require_scope(scope)
    return (
        select(model.tenant_id)
        .where(model.id == entity_id)  # type: ignore[attr-defined]
        .execution_options(**{INCLUDE_FOREIGN_TENANTS: True})
    )


def filter_criteria(model: Type[Any], query_filter: QueryFilter) -> List[ColumnElement[bool]]:
    """Translate validated predicates into column expressions (bound parameters only)."""
    criteria: List[ColumnElement[bool]] = []
    for predicate in query_filter.predicates:
        column = getattr(model, predicate.field, None)
        if column is None:
            raise InvalidFilterError(f"Unknown field '{predicate.field}'", field=predicate.field)
        value = predicate.value
        op = predicate.op
        if op is FilterOp.EQ:
            criteria.append(column.is_(None) if value is None else column == value)
        elif op is FilterOp.NE:
            criteria.append(column.is_not(None) if value is None else column != value)
        elif op is FilterOp.LT:
            criteria.append(column < value)
        elif op is FilterOp.LTE:
            criteria.append(column <= value)
        elif op is FilterOp.GT:
            criteria.append(column > value)
        elif op is FilterOp.GTE:
            criteria.append(column >= value)
        elif op is FilterOp.IN:
            criteria.append(column.in_(list(value)))
        elif op is FilterOp.CONTAINS:
            criteria.append(column.icontains(value, autoescape=True))
    return criteria


def apply_ordering(
    stmt: Select,
    model: Type[Any],
    order_by: Optional[OrderBy],
    sortable: Collection[str],
) -> Select:
    """Whitelisted ORDER BY, always tie-broken by id so pages are stable."""
    if order_by is not None:
        if order_by.field not in sortable:
            raise InvalidFilterError(f"Field '{order_by.field}' is not sortable", field=order_by.field)
        column = getattr(model, order_by.field)
        stmt = stmt.order_by(column.desc() if order_by.descending else column.asc())
    elif hasattr(model, "created_at"):
        stmt = stmt.order_by(model.created_at)
    return stmt.order_by(model.id)
