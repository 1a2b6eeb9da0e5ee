"""
InventoryTransaction: append-only journal row for one stock delta.

`sequence` is the product version after the change; ordering a product's rows
by it and replaying `quantity` from zero reproduces the stored stock.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar, Optional
from uuid import UUID, uuid4

from shopcore.domain.base_entity import EntityMixin, utcnow
from shopcore.domain.value_objects import InventoryTransactionType
from shopcore.errors import ValidationError


@dataclass(frozen=True)
class InventoryTransaction(EntityMixin):
    entity_type: ClassVar[str] = "inventory_transaction"

    tenant_id: UUID
    product_id: UUID
    transaction_type: InventoryTransactionType
    quantity: int
    previous_quantity: int
    new_quantity: int
    sequence: int
    id: UUID = field(default_factory=uuid4)
    order_id: Optional[UUID] = None
    user_id: Optional[UUID] = None
    notes: Optional[str] = None
    reference_number: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.new_quantity != self.previous_quantity + self.quantity:
            raise ValidationError(
                "new_quantity must equal previous_quantity + quantity",
                field_errors={"new_quantity": ["broken chain link"]},
            )
        if not self.transaction_type.accepts(self.quantity):
            raise ValidationError(
                f"quantity {self.quantity} not allowed for {self.transaction_type.value}",
                field_errors={"quantity": ["sign does not match transaction type"]},
            )
