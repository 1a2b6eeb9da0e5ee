"""
Base contract for domain entities.

Entities are frozen dataclasses; an update is expressed as `dataclasses.replace`.
Every tenant-owned entity carries exactly one `tenant_id`, fixed at creation.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, ClassVar, Dict, Type, TypeVar

from shopcore.errors import ValidationError
from shopcore.utils.serialization import from_jsonable, to_jsonable

E = TypeVar("E", bound="EntityMixin")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def require_money(value: Decimal | None, field_name: str, *, allow_none: bool = False) -> None:
    """Non-negative amount with at most two decimal places (DECIMAL(10,2))."""
    if value is None:
        if allow_none:
            return
        raise ValidationError(f"{field_name} is required", field_errors={field_name: ["required"]})
    if not isinstance(value, Decimal):
        raise ValidationError(f"{field_name} must be a Decimal", field_errors={field_name: ["not a decimal"]})
    if value < 0:
        raise ValidationError(f"{field_name} must be >= 0", field_errors={field_name: ["negative"]})
    exponent = value.as_tuple().exponent
    if isinstance(exponent, int) and exponent < -2:
        raise ValidationError(
            f"{field_name} has more than two decimal places",
            field_errors={field_name: ["too many decimal places"]},
        )


def require_text(value: str | None, field_name: str) -> None:
    if value is None or not value.strip():
        raise ValidationError(f"{field_name} cannot be empty", field_errors={field_name: ["required"]})


class EntityMixin:
    """Serialization shared by all entities (used by the cache tiers)."""

    entity_type: ClassVar[str] = ""

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls: Type[E], data: Dict[str, Any]) -> E:
        return from_jsonable(cls, data)
