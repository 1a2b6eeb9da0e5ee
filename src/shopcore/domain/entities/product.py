"""
Product entity.

`stock_quantity` is owned by the stock engine: the data access layer refuses to
change it on an existing product, so every stock movement is journaled.
`version` is the optimistic concurrency stamp bumped on every row update.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import ClassVar, Optional
from uuid import UUID, uuid4

from shopcore.domain.base_entity import EntityMixin, require_money, require_text, utcnow
from shopcore.errors import ValidationError


@dataclass(frozen=True)
class Product(EntityMixin):
    entity_type: ClassVar[str] = "product"

    tenant_id: UUID
    name: str
    sku: str
    price: Decimal
    id: UUID = field(default_factory=uuid4)
    category_id: Optional[UUID] = None
    description: Optional[str] = None
    cost_price: Optional[Decimal] = None
    stock_quantity: int = 0
    min_stock_level: int = 0
    allow_backorder: bool = False
    is_active: bool = True
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        require_text(self.name, "name")
        require_text(self.sku, "sku")
        require_money(self.price, "price")
        require_money(self.cost_price, "cost_price", allow_none=True)
        if self.min_stock_level < 0:
            raise ValidationError("min_stock_level must be >= 0", field_errors={"min_stock_level": ["negative"]})
        if self.stock_quantity < 0 and not self.allow_backorder:
            raise ValidationError(
                "stock_quantity must be >= 0 unless backorder is allowed",
                field_errors={"stock_quantity": ["negative"]},
            )

    @property
    def is_low_stock(self) -> bool:
        return self.stock_quantity < self.min_stock_level
