"""
Stock/Inventory Consistency Engine.

A product's stock is the result of its journal: every change appends one
`InventoryTransaction` whose `sequence` is the product version it produced,
in the same transaction as the product row update.

Two mechanisms keep concurrent adjustments from interleaving:

1. a per-(tenant, product) `asyncio.Lock` in this process, with a timeout;
2. an optimistic `UPDATE ... WHERE version = :seen` that fails when another
   process got there first; that attempt is retried with backoff.
"""
from __future__ import annotations

from typing import List, Optional, Union
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from shopcore.application.data_access import as_uuid
from shopcore.application.tenant_context import TenantContextManager
from shopcore.config import Settings
from shopcore.domain.base_entity import utcnow
from shopcore.domain.entities import InventoryTransaction
from shopcore.domain.events import STOCK_ADJUSTED, STOCK_LOW, ChangeEvent
from shopcore.domain.scope import ScopeHandle
from shopcore.domain.value_objects import InventoryTransactionType
from shopcore.errors import (
    ConcurrencyConflictError,
    ConstraintViolationError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from shopcore.infrastructure.concurrency.product_locks import ProductLockRegistry
from shopcore.infrastructure.database.errors import is_sequence_conflict, translate_db_error
from shopcore.infrastructure.database.mappers import (
    inventory_transaction_to_entity,
    inventory_transaction_to_model,
    product_to_entity,
)
from shopcore.infrastructure.database.models import InventoryTransactionModel, ProductModel
from shopcore.infrastructure.database.tenant_query import scoped_select, scoped_update
from shopcore.infrastructure.database.unit_of_work import SQLAlchemyUnitOfWork
from shopcore.logging import get_logger
from shopcore.utils.retry import retry

logger = get_logger(__name__)


class StaleVersionError(Exception):
    """The product row changed between read and conditional update."""


def parse_reason(reason: Union[InventoryTransactionType, str], delta: int) -> InventoryTransactionType:
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise ValidationError("delta must be an integer", field_errors={"delta": ["not an integer"]})
    try:
        kind = InventoryTransactionType(reason)
    except ValueError:
        raise ValidationError(f"Unknown stock reason: {reason!r}", field_errors={"reason": ["unknown"]})
    if not kind.accepts(delta):
        raise ValidationError(
            f"delta {delta} is not allowed for {kind.value}",
            field_errors={"delta": ["zero" if delta == 0 else "sign does not match reason"]},
        )
    return kind


class StockEngine:
    def __init__(
        self,
        contexts: TenantContextManager,
        settings: Settings,
        locks: Optional[ProductLockRegistry] = None,
    ) -> None:
        self._contexts = contexts
        self._settings = settings
        self.locks = locks or ProductLockRegistry()

    async def adjust_stock(
        self,
        scope: ScopeHandle,
        product_id: Union[UUID, str],
        delta: int,
        reason: Union[InventoryTransactionType, str],
        *,
        notes: Optional[str] = None,
        reference_number: Optional[str] = None,
    ) -> int:
        """
        Apply a signed delta to a product's stock and journal it.

        Returns:
            The new stock quantity

        Raises:
            ValidationError: zero delta, unknown reason, or sign not matching the reason
            NotFoundError: no such product for this tenant
            InsufficientStockError: decrement below zero without backorder
            ConcurrencyConflictError: lock timeout, or version conflicts after all retries
        """
        kind = parse_reason(reason, delta)
        self._contexts.require_writable(scope)
        pid = as_uuid(product_id, "product_id")

        async def attempt() -> int:
            try:
                async with self._contexts.unit_of_work(scope) as uow:
                    entry = await self.apply_in(
                        uow, scope, pid, delta, kind, notes=notes, reference_number=reference_number
                    )
                    await uow.commit()
                    return entry.new_quantity
            except IntegrityError as e:
                if is_sequence_conflict(e):
                    raise StaleVersionError(str(pid)) from None
                raise translate_db_error(e, operation="adjust_stock") from None
            except SQLAlchemyError as e:
                raise translate_db_error(e, operation="adjust_stock") from None

        async with self.locks.hold(scope.tenant_id, pid, timeout=self._settings.stock_lock_timeout_seconds):
            try:
                new_quantity = await retry(
                    attempt,
                    attempts=self._settings.stock_retry_attempts,
                    base_ms=self._settings.stock_retry_base_ms,
                    jitter_ms=self._settings.stock_retry_base_ms,
                    retry_on=(StaleVersionError,),
                )
            except StaleVersionError:
                logger.warning(
                    "Stock adjustment gave up after version conflicts",
                    product_id=str(pid),
                    attempts=self._settings.stock_retry_attempts,
                )
                raise ConcurrencyConflictError(
                    f"product {pid} kept changing underneath the adjustment",
                    resource_id=str(pid),
                    attempts=self._settings.stock_retry_attempts,
                    tenant_id=scope.tenant_id,
                )

        logger.info(
            "Stock adjusted",
            product_id=str(pid),
            delta=delta,
            reason=kind.value,
            new_quantity=new_quantity,
        )
        return new_quantity

    async def apply_in(
        self,
        uow: SQLAlchemyUnitOfWork,
        scope: ScopeHandle,
        product_id: UUID,
        delta: int,
        kind: InventoryTransactionType,
        *,
        notes: Optional[str] = None,
        reference_number: Optional[str] = None,
        order_id: Optional[UUID] = None,
    ) -> InventoryTransaction:
        """
        One read-check-update-append cycle inside an open unit of work.

        The caller holds the product lock and commits. Raises `StaleVersionError`
        when the conditional update matched no row.
        """
        result = await uow.session.execute(
            scoped_select(scope, ProductModel, ProductModel.id == product_id).execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise NotFoundError("product", str(product_id))
        product = product_to_entity(row)

        previous = product.stock_quantity
        new_quantity = previous + delta
        if delta < 0 and new_quantity < 0 and not product.allow_backorder:
            raise InsufficientStockError(product.id, available=previous, requested=-delta, tenant_id=scope.tenant_id)

        next_version = product.version + 1
        updated = await uow.session.execute(
            scoped_update(scope, ProductModel, ProductModel.id == product_id, ProductModel.version == product.version)
            .values(stock_quantity=new_quantity, version=next_version, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if updated.rowcount != 1:
            raise StaleVersionError(str(product_id))

        entry = InventoryTransaction(
            tenant_id=scope.tenant_id,
            product_id=product_id,
            transaction_type=kind,
            quantity=delta,
            previous_quantity=previous,
            new_quantity=new_quantity,
            sequence=next_version,
            order_id=order_id,
            user_id=scope.user_id,
            notes=notes,
            reference_number=reference_number,
        )
        uow.session.add(inventory_transaction_to_model(entry))
        await uow.flush()

        uow.add_event(
            ChangeEvent(
                event_type=STOCK_ADJUSTED,
                tenant_id=scope.tenant_id,
                entity_id=product_id,
                entity_type="product",
                payload={
                    "product_id": str(product_id),
                    "sku": product.sku,
                    "reason": kind.value,
                    "delta": delta,
                    "previous_quantity": previous,
                    "new_quantity": new_quantity,
                    "transaction_id": str(entry.id),
                },
            )
        )
        # Edge-triggered: only the adjustment that goes below the threshold.
        if previous >= product.min_stock_level > new_quantity:
            uow.add_event(
                ChangeEvent(
                    event_type=STOCK_LOW,
                    tenant_id=scope.tenant_id,
                    entity_id=product_id,
                    entity_type="product",
                    payload={
                        "product_id": str(product_id),
                        "sku": product.sku,
                        "name": product.name,
                        "stock_quantity": new_quantity,
                        "min_stock_level": product.min_stock_level,
                    },
                )
            )
            logger.info(
                "Product stock below minimum",
                product_id=str(product_id),
                stock_quantity=new_quantity,
                min_stock_level=product.min_stock_level,
            )
        return entry

    async def stock_history(self, scope: ScopeHandle, product_id: Union[UUID, str]) -> List[InventoryTransaction]:
        pid = as_uuid(product_id, "product_id")
        try:
            async with self._contexts.unit_of_work(scope, mutating=False) as uow:
                _, history = await self._load_chain(uow, scope, pid)
                return history
        except SQLAlchemyError as e:
            raise translate_db_error(e, operation="stock_history") from None

    async def verify_stock_chain(self, scope: ScopeHandle, product_id: Union[UUID, str]) -> int:
        """
        Replay the journal from zero and compare with the stored quantity.

        Returns:
            The replayed (and stored) quantity

        Raises:
            ConstraintViolationError: a link does not continue from the previous one,
                sequences are not increasing, or the result differs from the product row
        """
        pid = as_uuid(product_id, "product_id")
        try:
            async with self._contexts.unit_of_work(scope, mutating=False) as uow:
                stored, history = await self._load_chain(uow, scope, pid)
        except SQLAlchemyError as e:
            raise translate_db_error(e, operation="verify_stock_chain") from None

        quantity = 0
        last_sequence = 0
        for entry in history:
            if entry.previous_quantity != quantity or entry.sequence <= last_sequence:
                raise ConstraintViolationError(
                    f"stock journal of product {pid} is broken at sequence {entry.sequence}",
                    constraint="stock_chain",
                    conflict_field="sequence",
                )
            quantity = entry.new_quantity
            last_sequence = entry.sequence

        if quantity != stored:
            raise ConstraintViolationError(
                f"stock journal of product {pid} replays to {quantity}, product row holds {stored}",
                constraint="stock_chain",
                conflict_field="stock_quantity",
            )
        return quantity

    async def _load_chain(
        self,
        uow: SQLAlchemyUnitOfWork,
        scope: ScopeHandle,
        product_id: UUID,
    ) -> tuple[int, List[InventoryTransaction]]:
        result = await uow.session.execute(scoped_select(scope, ProductModel, ProductModel.id == product_id))
        row = result.scalar_one_or_none()
        if row is None:
            raise NotFoundError("product", str(product_id))
        stored = row.stock_quantity

        result = await uow.session.execute(
            scoped_select(
                scope,
                InventoryTransactionModel,
                InventoryTransactionModel.product_id == product_id,
            ).order_by(InventoryTransactionModel.sequence)
        )
        return stored, [inventory_transaction_to_entity(r) for r in result.scalars().all()]
