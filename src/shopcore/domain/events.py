"""
Change events emitted after committed writes.

Wire form (stable for external subscribers):
    {"eventType", "tenantId", "entityId", "payload", "timestamp"}
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from shopcore.domain.base_entity import utcnow
from shopcore.utils.serialization import to_jsonable

PRODUCT_CREATED = "product.created"
PRODUCT_UPDATED = "product.updated"
PRODUCT_DELETED = "product.deleted"
CATEGORY_CREATED = "category.created"
CATEGORY_UPDATED = "category.updated"
CATEGORY_DELETED = "category.deleted"
ORDER_CREATED = "order.created"
ORDER_UPDATED = "order.updated"
ORDER_DELETED = "order.deleted"
ORDER_CANCELLED = "order.cancelled"
STOCK_ADJUSTED = "stock.adjusted"
STOCK_LOW = "stock.low"
TENANT_STATUS_CHANGED = "tenant.status_changed"

ALL_EVENTS = "*"


def entity_event(entity_type: str, action: str) -> str:
    """`entity_event("product", "updated") -> "product.updated"`"""
    return f"{entity_type}.{action}"


@dataclass(frozen=True)
class ChangeEvent:
    event_type: str
    tenant_id: UUID
    entity_id: Optional[UUID]
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    event_id: UUID = field(default_factory=uuid4)
    entity_type: Optional[str] = None

    @property
    def subject_type(self) -> str:
        """Entity type the event is about (`product` for `product.updated`)."""
        return self.entity_type or self.event_type.split(".", 1)[0]

    def to_wire(self) -> Dict[str, Any]:
        return {
            "eventType": self.event_type,
            "tenantId": str(self.tenant_id),
            "entityId": str(self.entity_id) if self.entity_id else None,
            "payload": to_jsonable(self.payload),
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_wire(
        cls,
        data: Dict[str, Any],
        *,
        event_id: Optional[UUID] = None,
        entity_type: Optional[str] = None,
    ) -> "ChangeEvent":
        entity_id = data.get("entityId")
        timestamp = datetime.fromisoformat(data["timestamp"])
        return cls(
            event_type=data["eventType"],
            tenant_id=UUID(str(data["tenantId"])),
            entity_id=UUID(str(entity_id)) if entity_id else None,
            payload=dict(data.get("payload") or {}),
            timestamp=timestamp,
            event_id=event_id or uuid4(),
            entity_type=entity_type,
        )
