"""
Tenant entity: the isolation boundary.

Tenants are provisioned elsewhere and never hard-deleted; only the status moves.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Dict
from uuid import UUID, uuid4

from shopcore.domain.base_entity import EntityMixin, require_text, utcnow
from shopcore.domain.value_objects import TenantStatus
from shopcore.errors import ValidationError

_SLUG_RE = re.compile(r"^[a-z0-9-]+$")


@dataclass(frozen=True)
class Tenant(EntityMixin):
    entity_type: ClassVar[str] = "tenant"

    name: str
    slug: str
    id: UUID = field(default_factory=uuid4)
    status: TenantStatus = TenantStatus.ACTIVE
    subscription_plan: str = "basic"
    settings: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        require_text(self.name, "name")
        if not _SLUG_RE.match(self.slug or ""):
            raise ValidationError("slug must match ^[a-z0-9-]+$", field_errors={"slug": ["invalid format"]})

    @property
    def is_active(self) -> bool:
        return self.status is TenantStatus.ACTIVE

    @property
    def tenant_id(self) -> UUID:
        # A tenant owns itself; lets tenant rows share the cache key path of owned entities.
        return self.id
