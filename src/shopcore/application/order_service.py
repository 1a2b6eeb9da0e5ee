"""
Order placement and cancellation on top of the stock engine.

Placing an order takes the product locks of every line in sorted id order,
then decrements stock and inserts the order in one transaction: either every
line is reserved and the order exists, or nothing changed.
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Union
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from shopcore.application.data_access import as_uuid
from shopcore.application.stock_engine import StaleVersionError, StockEngine
from shopcore.application.tenant_context import TenantContextManager
from shopcore.config import Settings
from shopcore.domain.base_entity import utcnow
from shopcore.domain.entities import CustomerSnapshot, Order, OrderLine
from shopcore.domain.entities.order import ZERO
from shopcore.domain.events import ORDER_CANCELLED, ORDER_CREATED, ChangeEvent
from shopcore.domain.scope import ScopeHandle
from shopcore.domain.value_objects import InventoryTransactionType, OrderStatus
from shopcore.errors import (
    ConcurrencyConflictError,
    ConstraintViolationError,
    NotFoundError,
    ValidationError,
)
from shopcore.infrastructure.database.errors import is_sequence_conflict, translate_db_error
from shopcore.infrastructure.database.mappers import order_line_models, order_to_entity, order_values, product_to_entity
from shopcore.infrastructure.database.models import InventoryTransactionModel, OrderModel, ProductModel
from shopcore.infrastructure.database.tenant_query import scoped_select
from shopcore.infrastructure.database.unit_of_work import SQLAlchemyUnitOfWork
from shopcore.logging import get_logger
from shopcore.utils.retry import retry
from shopcore.utils.serialization import to_jsonable

logger = get_logger(__name__)


@dataclass(frozen=True)
class LineRequest:
    product_id: UUID
    quantity: int


def new_order_number() -> str:
    """ORD-YYYYMMDD-XXXXXXXX"""
    return f"ORD-{utcnow():%Y%m%d}-{secrets.token_hex(4).upper()}"


def _coerce_lines(lines: Iterable[Union[LineRequest, tuple]]) -> List[LineRequest]:
    requests: List[LineRequest] = []
    for line in lines:
        if not isinstance(line, LineRequest):
            product_id, quantity = line
            line = LineRequest(product_id=as_uuid(product_id, "product_id"), quantity=quantity)
        if isinstance(line.quantity, bool) or not isinstance(line.quantity, int) or line.quantity <= 0:
            raise ValidationError("line quantity must be a positive integer", field_errors={"quantity": ["invalid"]})
        requests.append(line)
    if not requests:
        raise ValidationError("order needs at least one line", field_errors={"lines": ["empty"]})
    return requests


class OrderService:
    def __init__(self, contexts: TenantContextManager, settings: Settings, stock: StockEngine) -> None:
        self._contexts = contexts
        self._settings = settings
        self._stock = stock

    async def place_order(
        self,
        scope: ScopeHandle,
        lines: Sequence[Union[LineRequest, tuple]],
        *,
        customer: Optional[CustomerSnapshot] = None,
        tax_amount: Decimal = ZERO,
        discount_amount: Decimal = ZERO,
        shipping_amount: Decimal = ZERO,
        order_number: Optional[str] = None,
        notes: Optional[str] = None,
        currency: str = "USD",
    ) -> Order:
        """
        Create an order and take its quantities out of stock atomically.

        `lines` holds `LineRequest`s or `(product_id, quantity)` pairs. Product
        name, sku and current price are copied into the order lines.

        Raises:
            NotFoundError: a product does not exist for this tenant
            ConstraintViolationError: a product is inactive, or the order number is taken
            InsufficientStockError: a line cannot be served from stock
            ConcurrencyConflictError: lock timeout or repeated version conflicts
        """
        requests = _coerce_lines(lines)
        self._contexts.require_writable(scope)
        customer = customer or CustomerSnapshot()
        number = order_number or new_order_number()
        order_id = uuid4()

        async def attempt() -> Order:
            try:
                async with self._contexts.unit_of_work(scope) as uow:
                    order = await self._build_order(
                        uow, scope, order_id, number, requests, customer,
                        tax_amount=tax_amount,
                        discount_amount=discount_amount,
                        shipping_amount=shipping_amount,
                        notes=notes,
                        currency=currency,
                    )
                    model = OrderModel(**order_values(order))
                    model.lines = order_line_models(order)
                    uow.session.add(model)
                    await uow.flush()

                    quantities = order.quantities_by_product()
                    for product_id in sorted(quantities, key=str):
                        quantity = quantities[product_id]
                        await self._stock.apply_in(
                            uow, scope, product_id, -quantity, InventoryTransactionType.STOCK_OUT,
                            order_id=order.id,
                            reference_number=order.order_number,
                        )
                    uow.add_event(self._order_event(ORDER_CREATED, order))
                    await uow.commit()
                    return order
            except IntegrityError as e:
                if is_sequence_conflict(e):
                    raise StaleVersionError(str(order_id)) from None
                raise translate_db_error(e, operation="place_order") from None
            except SQLAlchemyError as e:
                raise translate_db_error(e, operation="place_order") from None

        product_ids = [r.product_id for r in requests]
        async with self._stock.locks.hold_many(
            scope.tenant_id, product_ids, timeout=self._settings.stock_lock_timeout_seconds
        ):
            order = await self._with_retry(attempt, order_id)

        logger.info(
            "Order placed",
            order_id=str(order.id),
            order_number=order.order_number,
            lines=len(order.lines),
            total_amount=str(order.total_amount),
        )
        return order

    async def cancel_order(self, scope: ScopeHandle, order_id: Union[UUID, str]) -> Order:
        """
        Cancel a pending or confirmed order and put its stock back.

        Raises:
            NotFoundError: no such order for this tenant
            ConstraintViolationError: the order is past the cancellable states
        """
        self._contexts.require_writable(scope)
        oid = as_uuid(order_id, "order_id")
        current = await self._load_order(scope, oid)
        if not current.status.is_cancellable:
            raise ConstraintViolationError(
                f"order in status {current.status.value} cannot be cancelled",
                constraint="order_not_cancellable",
                conflict_field="status",
            )

        async def attempt() -> Order:
            try:
                async with self._contexts.unit_of_work(scope) as uow:
                    row = (
                        await uow.session.execute(scoped_select(scope, OrderModel, OrderModel.id == oid))
                    ).scalar_one_or_none()
                    if row is None:
                        raise NotFoundError("order", str(oid))
                    if not row.status.is_cancellable:
                        raise ConstraintViolationError(
                            f"order in status {row.status.value} cannot be cancelled",
                            constraint="order_not_cancellable",
                            conflict_field="status",
                        )

                    held = await self._taken_from_stock(uow, scope, oid)
                    for product_id in sorted(held, key=str):
                        quantity = held[product_id]
                        await self._stock.apply_in(
                            uow, scope, product_id, quantity, InventoryTransactionType.RETURN,
                            order_id=oid,
                            reference_number=row.order_number,
                            notes="order cancelled",
                        )

                    row.status = OrderStatus.CANCELLED
                    row.updated_at = utcnow()
                    await uow.flush()
                    order = order_to_entity(row)
                    uow.add_event(self._order_event(ORDER_CANCELLED, order))
                    await uow.commit()
                    return order
            except IntegrityError as e:
                if is_sequence_conflict(e):
                    raise StaleVersionError(str(oid)) from None
                raise translate_db_error(e, operation="cancel_order") from None
            except SQLAlchemyError as e:
                raise translate_db_error(e, operation="cancel_order") from None

        product_ids = [line.product_id for line in current.lines]
        async with self._stock.locks.hold_many(
            scope.tenant_id, product_ids, timeout=self._settings.stock_lock_timeout_seconds
        ):
            order = await self._with_retry(attempt, oid)

        logger.info("Order cancelled", order_id=str(oid), order_number=order.order_number)
        return order

    async def _with_retry(self, attempt, resource_id: UUID) -> Order:
        try:
            return await retry(
                attempt,
                attempts=self._settings.stock_retry_attempts,
                base_ms=self._settings.stock_retry_base_ms,
                jitter_ms=self._settings.stock_retry_base_ms,
                retry_on=(StaleVersionError,),
            )
        except StaleVersionError:
            raise ConcurrencyConflictError(
                f"stock of order {resource_id} kept changing underneath the request",
                resource_id=str(resource_id),
                attempts=self._settings.stock_retry_attempts,
            )

    async def _build_order(
        self,
        uow: SQLAlchemyUnitOfWork,
        scope: ScopeHandle,
        order_id: UUID,
        number: str,
        requests: List[LineRequest],
        customer: CustomerSnapshot,
        **amounts,
    ) -> Order:
        wanted = {r.product_id for r in requests}
        result = await uow.session.execute(
            scoped_select(scope, ProductModel, ProductModel.id.in_(list(wanted))).execution_options(
                populate_existing=True
            )
        )
        products = {row.id: product_to_entity(row) for row in result.scalars().all()}

        lines: List[OrderLine] = []
        for request in requests:
            product = products.get(request.product_id)
            if product is None:
                raise NotFoundError("product", str(request.product_id))
            if not product.is_active:
                raise ConstraintViolationError(
                    f"product {product.sku} is not active",
                    constraint="product_inactive",
                    conflict_field="product_id",
                )
            lines.append(
                OrderLine(
                    product_id=product.id,
                    product_name=product.name,
                    product_sku=product.sku,
                    unit_price=product.price,
                    quantity=request.quantity,
                )
            )

        now = utcnow()
        return Order(
            tenant_id=scope.tenant_id,
            order_number=number,
            lines=tuple(lines),
            id=order_id,
            customer_id=customer.customer_id,
            customer_name=customer.name,
            customer_email=customer.email,
            customer_phone=customer.phone,
            created_at=now,
            updated_at=now,
            **amounts,
        )

    async def _load_order(self, scope: ScopeHandle, order_id: UUID) -> Order:
        try:
            async with self._contexts.unit_of_work(scope, mutating=False) as uow:
                row = (
                    await uow.session.execute(scoped_select(scope, OrderModel, OrderModel.id == order_id))
                ).scalar_one_or_none()
                if row is None:
                    raise NotFoundError("order", str(order_id))
                return order_to_entity(row)
        except SQLAlchemyError as e:
            raise translate_db_error(e, operation="load_order") from None

    async def _taken_from_stock(self, uow: SQLAlchemyUnitOfWork, scope: ScopeHandle, order_id: UUID) -> Dict[UUID, int]:
        """Net quantity per product this order still holds, from its journal rows."""
        result = await uow.session.execute(
            scoped_select(scope, InventoryTransactionModel, InventoryTransactionModel.order_id == order_id)
        )
        held: Dict[UUID, int] = {}
        for entry in result.scalars().all():
            held[entry.product_id] = held.get(entry.product_id, 0) - entry.quantity
        return {pid: qty for pid, qty in held.items() if qty > 0}

    @staticmethod
    def _order_event(event_type: str, order: Order) -> ChangeEvent:
        return ChangeEvent(
            event_type=event_type,
            tenant_id=order.tenant_id,
            entity_id=order.id,
            entity_type="order",
            payload=to_jsonable(order),
        )
