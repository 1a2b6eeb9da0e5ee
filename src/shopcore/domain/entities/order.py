"""
Order aggregate with its immutable lines.

Lines snapshot product name, sku and unit price at order time so later product
edits never change a placed order. Customer data is a nullable reference plus a
denormalised snapshot; an order never requires the customer to exist.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import ClassVar, Optional, Tuple
from uuid import UUID, uuid4

from shopcore.domain.base_entity import EntityMixin, require_money, require_text, utcnow
from shopcore.domain.value_objects import OrderStatus, PaymentStatus
from shopcore.errors import ValidationError

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class OrderLine(EntityMixin):
    entity_type: ClassVar[str] = "order_line"

    product_id: UUID
    product_name: str
    product_sku: str
    unit_price: Decimal
    quantity: int
    id: UUID = field(default_factory=uuid4)
    total_price: Optional[Decimal] = None

    def __post_init__(self) -> None:
        require_text(self.product_name, "product_name")
        require_text(self.product_sku, "product_sku")
        require_money(self.unit_price, "unit_price")
        if self.quantity <= 0:
            raise ValidationError("line quantity must be > 0", field_errors={"quantity": ["not positive"]})
        expected = self.unit_price * self.quantity
        if self.total_price is None:
            object.__setattr__(self, "total_price", expected)
        elif self.total_price != expected:
            raise ValidationError(
                "line total_price must equal unit_price * quantity",
                field_errors={"total_price": ["mismatch"]},
            )


@dataclass(frozen=True)
class CustomerSnapshot:
    customer_id: Optional[UUID] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass(frozen=True)
class Order(EntityMixin):
    """
    Invariants (checked on construction):
        subtotal == sum(line.total_price)
        total_amount == subtotal + tax_amount + shipping_amount - discount_amount >= 0

    `subtotal` and `total_amount` are computed when omitted.
    """

    entity_type: ClassVar[str] = "order"

    tenant_id: UUID
    order_number: str
    lines: Tuple[OrderLine, ...]
    id: UUID = field(default_factory=uuid4)
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    customer_id: Optional[UUID] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    subtotal: Optional[Decimal] = None
    tax_amount: Decimal = ZERO
    discount_amount: Decimal = ZERO
    shipping_amount: Decimal = ZERO
    total_amount: Optional[Decimal] = None
    currency: str = "USD"
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        require_text(self.order_number, "order_number")
        object.__setattr__(self, "lines", tuple(self.lines))
        if not self.lines:
            raise ValidationError("order needs at least one line", field_errors={"lines": ["empty"]})
        if len(self.currency) != 3:
            raise ValidationError("currency must be an ISO 4217 code", field_errors={"currency": ["invalid"]})
        for name in ("tax_amount", "discount_amount", "shipping_amount"):
            require_money(getattr(self, name), name)

        lines_total = sum((line.total_price for line in self.lines), ZERO)
        if self.subtotal is None:
            object.__setattr__(self, "subtotal", lines_total)
        elif self.subtotal != lines_total:
            raise ValidationError(
                "subtotal must equal the sum of line totals",
                field_errors={"subtotal": ["mismatch"]},
            )

        expected_total = self.subtotal + self.tax_amount + self.shipping_amount - self.discount_amount
        if expected_total < 0:
            raise ValidationError("order total cannot be negative", field_errors={"total_amount": ["negative"]})
        if self.total_amount is None:
            object.__setattr__(self, "total_amount", expected_total)
        elif self.total_amount != expected_total:
            raise ValidationError(
                "total_amount must equal subtotal + tax + shipping - discount",
                field_errors={"total_amount": ["mismatch"]},
            )

    @property
    def customer(self) -> CustomerSnapshot:
        return CustomerSnapshot(
            customer_id=self.customer_id,
            name=self.customer_name,
            email=self.customer_email,
            phone=self.customer_phone,
        )

    def quantities_by_product(self) -> dict[UUID, int]:
        totals: dict[UUID, int] = {}
        for line in self.lines:
            totals[line.product_id] = totals.get(line.product_id, 0) + line.quantity
        return totals
