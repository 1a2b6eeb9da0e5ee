"""ScopeHandle: the bound lifetime of one tenant-bound unit of work."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple
from uuid import UUID, uuid4


@dataclass(frozen=True)
class ScopeHandle:
    tenant_id: UUID
    scope_id: UUID = field(default_factory=uuid4)
    read_only: bool = False
    user_id: Optional[UUID] = None
    roles: Tuple[str, ...] = ()
