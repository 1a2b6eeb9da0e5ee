"""Category entity (static cache class)."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar, Optional
from uuid import UUID, uuid4

from shopcore.domain.base_entity import EntityMixin, require_text, utcnow
from shopcore.errors import ValidationError

_SLUG_RE = re.compile(r"^[a-z0-9-]+$")


@dataclass(frozen=True)
class Category(EntityMixin):
    entity_type: ClassVar[str] = "category"

    tenant_id: UUID
    name: str
    slug: str
    id: UUID = field(default_factory=uuid4)
    parent_id: Optional[UUID] = None
    description: Optional[str] = None
    is_active: bool = True
    sort_order: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        require_text(self.name, "name")
        if not _SLUG_RE.match(self.slug or ""):
            raise ValidationError("slug must match ^[a-z0-9-]+$", field_errors={"slug": ["invalid format"]})
        if self.parent_id is not None and self.parent_id == self.id:
            raise ValidationError("category cannot be its own parent", field_errors={"parent_id": ["self reference"]})
