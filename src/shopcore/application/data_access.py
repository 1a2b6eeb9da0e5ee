"""
Data Access Layer.

The enforcement point for tenant isolation: every statement is built by the
scoped builders in `infrastructure.database.tenant_query`, writes and deletes
re-check row ownership first, and raw store errors are translated before they
leave this module.
"""
from __future__ import annotations

from typing import Any, Iterator, NoReturn, Optional, Tuple, Type, Union
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from shopcore.application.entity_registry import EntityDescriptor, descriptor_for, get_descriptor
from shopcore.application.tenant_context import TenantContextManager
from shopcore.config import Settings
from shopcore.domain.base_entity import utcnow
from shopcore.domain.entities import Category, InventoryTransaction, Order, Product
from shopcore.domain.events import ChangeEvent, entity_event
from shopcore.domain.query import Page, Pagination, QueryFilter
from shopcore.domain.scope import ScopeHandle
from shopcore.domain.value_objects import InventoryTransactionType
from shopcore.errors import (
    ConcurrencyConflictError,
    ConstraintViolationError,
    CrossTenantViolationError,
    NotFoundError,
    ValidationError,
)
from shopcore.infrastructure.database.errors import translate_db_error
from shopcore.infrastructure.database.mappers import (
    inventory_transaction_to_model,
    order_line_models,
)
from shopcore.infrastructure.database.models import CategoryModel, ProductModel
from shopcore.infrastructure.database.tenant_query import (
    apply_ordering,
    filter_criteria,
    ownership_probe,
    scoped_count,
    scoped_delete,
    scoped_select,
)
from shopcore.infrastructure.database.unit_of_work import SQLAlchemyUnitOfWork
from shopcore.logging import get_logger, log_security_event, time_block
from shopcore.utils.serialization import to_jsonable

logger = get_logger(__name__)

# Fields a write may never change on an existing row.
_IMMUTABLE_FIELDS = ("id", "tenant_id", "created_at")


def as_uuid(value: Union[UUID, str], field: str = "id") -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise ValidationError(f"{field} is not a valid UUID", field_errors={field: ["invalid uuid"]})


def _order_line_signature(order: Order) -> tuple:
    return tuple(
        (line.id, line.product_id, line.product_name, line.product_sku, line.unit_price, line.quantity)
        for line in order.lines
    )


def _references(entity: Any) -> Iterator[Tuple[str, Type[Any], UUID]]:
    """Rows of the same tenant an entity points at: (entity_type, model, id)."""
    if isinstance(entity, Product) and entity.category_id is not None:
        yield "category", CategoryModel, entity.category_id
    elif isinstance(entity, Category) and entity.parent_id is not None:
        yield "category", CategoryModel, entity.parent_id
    elif isinstance(entity, Order):
        seen = set()
        for line in entity.lines:
            if line.product_id not in seen:
                seen.add(line.product_id)
                yield "product", ProductModel, line.product_id


class DataAccessLayer:
    def __init__(self, contexts: TenantContextManager, settings: Settings) -> None:
        self._contexts = contexts
        self._settings = settings

    # ------------------------------------------------------------------ reads

    async def get_by_id(self, scope: ScopeHandle, entity_type: str, entity_id: Union[UUID, str]) -> Any:
        """
        Single-row lookup; rows of other tenants are reported as absent.

        Raises:
            NotFoundError: no row with this id for the scope's tenant
        """
        descriptor = get_descriptor(entity_type)
        eid = as_uuid(entity_id)
        try:
            async with self._contexts.unit_of_work(scope, mutating=False) as uow:
                result = await uow.session.execute(
                    scoped_select(scope, descriptor.model, descriptor.model.id == eid)
                )
                row = result.scalar_one_or_none()
                if row is None:
                    raise NotFoundError(entity_type, str(eid))
                return descriptor.to_entity(row)
        except SQLAlchemyError as e:
            raise translate_db_error(e, operation=f"get_by_id:{entity_type}") from None

    async def list(
        self,
        scope: ScopeHandle,
        entity_type: str,
        query_filter: Any = None,
        pagination: Optional[Pagination] = None,
    ) -> Page:
        descriptor = get_descriptor(entity_type)
        qf = QueryFilter.coerce(query_filter)
        qf.validate(descriptor.filterable)
        page = pagination or Pagination()
        page.validate(self._settings.max_page_size)

        criteria = filter_criteria(descriptor.model, qf)
        stmt = apply_ordering(
            scoped_select(scope, descriptor.model, *criteria),
            descriptor.model,
            page.order_by,
            descriptor.sortable,
        ).offset(page.offset).limit(page.limit)

        try:
            with time_block("dal.list", labels={"entity_type": entity_type}):
                async with self._contexts.unit_of_work(scope, mutating=False) as uow:
                    total = (await uow.session.execute(scoped_count(scope, descriptor.model, *criteria))).scalar_one()
                    rows = (await uow.session.execute(stmt)).scalars().all()
                    items = tuple(descriptor.to_entity(row) for row in rows)
        except SQLAlchemyError as e:
            raise translate_db_error(e, operation=f"list:{entity_type}") from None
        return Page(items=items, total=int(total), offset=page.offset, limit=page.limit)

    # ----------------------------------------------------------------- writes

    async def write(self, scope: ScopeHandle, entity: Any) -> Any:
        """
        Insert or update by id, after checking who owns the id.

        Raises:
            CrossTenantViolationError: the entity, the existing row or a row it references
                belongs to another tenant
            NotFoundError: a referenced category or product does not exist
            ConstraintViolationError: unique / check violations, append-only types,
                stock or order line changes on existing rows
            ConcurrencyConflictError: the row changed since the entity was read
        """
        descriptor = descriptor_for(entity)
        if not descriptor.writable:
            raise ConstraintViolationError(
                f"{descriptor.name} is append-only and cannot be written directly",
                constraint="append_only",
            )
        self._contexts.require_writable(scope)
        if entity.tenant_id != scope.tenant_id:
            self._security_violation(scope, descriptor.name, entity.id, entity.tenant_id, "write")

        try:
            async with self._contexts.unit_of_work(scope) as uow:
                owner = await self._owner_of(uow, scope, descriptor, entity.id)
                if owner is None:
                    stored = await self._insert(uow, scope, descriptor, entity)
                    action = "created"
                elif owner != scope.tenant_id:
                    self._security_violation(scope, descriptor.name, entity.id, owner, "write")
                else:
                    stored = await self._update(uow, scope, descriptor, entity)
                    action = "updated"

                uow.add_event(
                    ChangeEvent(
                        event_type=entity_event(descriptor.name, action),
                        tenant_id=scope.tenant_id,
                        entity_id=stored.id,
                        payload=to_jsonable(stored),
                        entity_type=descriptor.name,
                    )
                )
                await uow.commit()
        except StaleDataError:
            raise ConcurrencyConflictError(
                f"{descriptor.name} {entity.id} was modified concurrently",
                resource_id=str(entity.id),
            ) from None
        except SQLAlchemyError as e:
            raise translate_db_error(e, operation=f"write:{descriptor.name}") from None

        logger.info("Entity written", entity_type=descriptor.name, entity_id=str(stored.id), action=action)
        return stored

    async def delete(self, scope: ScopeHandle, entity_type: str, entity_id: Union[UUID, str]) -> None:
        descriptor = get_descriptor(entity_type)
        if not descriptor.deletable:
            raise ConstraintViolationError(
                f"{descriptor.name} rows are append-only and cannot be deleted",
                constraint="append_only",
            )
        self._contexts.require_writable(scope)
        eid = as_uuid(entity_id)

        try:
            async with self._contexts.unit_of_work(scope) as uow:
                owner = await self._owner_of(uow, scope, descriptor, eid)
                if owner is None:
                    raise NotFoundError(entity_type, str(eid))
                if owner != scope.tenant_id:
                    self._security_violation(scope, descriptor.name, eid, owner, "delete")

                if descriptor.name == "category":
                    await self._stage_category_detach(uow, scope, eid)

                await uow.session.execute(
                    scoped_delete(scope, descriptor.model, descriptor.model.id == eid).execution_options(
                        synchronize_session=False
                    )
                )
                uow.add_event(
                    ChangeEvent(
                        event_type=entity_event(descriptor.name, "deleted"),
                        tenant_id=scope.tenant_id,
                        entity_id=eid,
                        payload={},
                        entity_type=descriptor.name,
                    )
                )
                await uow.commit()
        except SQLAlchemyError as e:
            raise translate_db_error(e, operation=f"delete:{descriptor.name}") from None

        logger.info("Entity deleted", entity_type=descriptor.name, entity_id=str(eid))

    # ---------------------------------------------------------------- helpers

    async def _owner_of(
        self,
        uow: SQLAlchemyUnitOfWork,
        scope: ScopeHandle,
        descriptor: EntityDescriptor,
        entity_id: UUID,
    ) -> Optional[UUID]:
        result = await uow.session.execute(ownership_probe(scope, descriptor.model, entity_id))
        return result.scalar_one_or_none()

    async def _check_references(self, uow: SQLAlchemyUnitOfWork, scope: ScopeHandle, entity: Any) -> None:
        """Referenced rows must exist and belong to the scope's tenant."""
        for entity_type, model, ref_id in _references(entity):
            result = await uow.session.execute(ownership_probe(scope, model, ref_id))
            owner = result.scalar_one_or_none()
            if owner is None:
                raise NotFoundError(entity_type, str(ref_id))
            if owner != scope.tenant_id:
                self._security_violation(scope, entity_type, ref_id, owner, "reference")

    def _security_violation(
        self,
        scope: ScopeHandle,
        entity_type: str,
        entity_id: Any,
        owner: Any,
        operation: str,
    ) -> NoReturn:
        log_security_event(
            "cross_tenant_violation",
            tenant_id=str(scope.tenant_id),
            user_id=str(scope.user_id) if scope.user_id else None,
            details={
                "operation": operation,
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "owner_tenant_id": str(owner),
                "scope_id": str(scope.scope_id),
            },
        )
        raise CrossTenantViolationError(
            f"{entity_type} {entity_id} is not owned by this tenant",
            resource_type=entity_type,
            resource_id=str(entity_id),
            tenant_id=scope.tenant_id,
        )

    async def _insert(
        self,
        uow: SQLAlchemyUnitOfWork,
        scope: ScopeHandle,
        descriptor: EntityDescriptor,
        entity: Any,
    ) -> Any:
        await self._check_references(uow, scope, entity)
        values = descriptor.to_values(entity)  # type: ignore[misc]
        values["updated_at"] = utcnow()
        if isinstance(entity, Product):
            values.pop("version", None)
        model = descriptor.model(**values)
        if isinstance(entity, Order):
            model.lines = order_line_models(entity)
        uow.session.add(model)
        await uow.flush()

        stored = descriptor.to_entity(model)
        if isinstance(stored, Product) and stored.stock_quantity != 0:
            self._journal_initial_stock(uow, scope, stored)
        return stored

    def _journal_initial_stock(self, uow: SQLAlchemyUnitOfWork, scope: ScopeHandle, product: Product) -> None:
        quantity = product.stock_quantity
        reason = InventoryTransactionType.STOCK_IN if quantity > 0 else InventoryTransactionType.ADJUSTMENT
        uow.session.add(
            inventory_transaction_to_model(
                InventoryTransaction(
                    tenant_id=scope.tenant_id,
                    product_id=product.id,
                    transaction_type=reason,
                    quantity=quantity,
                    previous_quantity=0,
                    new_quantity=quantity,
                    sequence=product.version,
                    user_id=scope.user_id,
                    notes="initial stock",
                )
            )
        )

    async def _update(
        self,
        uow: SQLAlchemyUnitOfWork,
        scope: ScopeHandle,
        descriptor: EntityDescriptor,
        entity: Any,
    ) -> Any:
        result = await uow.session.execute(scoped_select(scope, descriptor.model, descriptor.model.id == entity.id))
        row = result.scalar_one()
        current = descriptor.to_entity(row)

        if isinstance(entity, Product):
            if entity.version != current.version:
                raise ConcurrencyConflictError(
                    f"product {entity.id} is at version {current.version}, write was based on {entity.version}",
                    resource_id=str(entity.id),
                )
            if entity.stock_quantity != current.stock_quantity:
                raise ConstraintViolationError(
                    "stock_quantity can only change through adjust_stock",
                    constraint="stock_via_engine",
                    conflict_field="stock_quantity",
                )
        if isinstance(entity, Order) and _order_line_signature(entity) != _order_line_signature(current):
            raise ConstraintViolationError(
                "order lines are immutable once created",
                constraint="order_lines_immutable",
                conflict_field="lines",
            )

        await self._check_references(uow, scope, entity)
        values = descriptor.to_values(entity)  # type: ignore[misc]
        for name in _IMMUTABLE_FIELDS + ("version",):
            values.pop(name, None)
        values["updated_at"] = utcnow()
        for name, value in values.items():
            setattr(row, name, value)
        await uow.flush()
        return descriptor.to_entity(row)

    async def _stage_category_detach(self, uow: SQLAlchemyUnitOfWork, scope: ScopeHandle, category_id: UUID) -> None:
        """Products pointing at a deleted category lose the link (ON DELETE SET NULL); evict them too."""
        result = await uow.session.execute(
            select(ProductModel.id).where(
                ProductModel.tenant_id == scope.tenant_id,
                ProductModel.category_id == category_id,
            )
        )
        for product_id in result.scalars().all():
            uow.add_event(
                ChangeEvent(
                    event_type=entity_event("product", "updated"),
                    tenant_id=scope.tenant_id,
                    entity_id=product_id,
                    payload={"category_id": None},
                    entity_type="product",
                )
            )
