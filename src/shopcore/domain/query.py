"""
Whitelisted query language for `list` operations.

A filter is a conjunction of `Predicate(field, op, value)`; free-form strings
are never accepted. `fingerprint()` gives the deterministic digest used in the
cache key of a list query.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Iterable, Mapping, Optional, Tuple, TypeVar, Union

from shopcore.errors import InvalidFilterError, ValidationError
from shopcore.utils.serialization import dumps, to_jsonable

T = TypeVar("T")


class FilterOp(str, Enum):
    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LTE = "lte"
    GT = "gt"
    GTE = "gte"
    IN = "in"
    CONTAINS = "contains"


COMPARISON_OPS = frozenset({FilterOp.EQ, FilterOp.NE, FilterOp.LT, FilterOp.LTE, FilterOp.GT, FilterOp.GTE, FilterOp.IN})
EQUALITY_OPS = frozenset({FilterOp.EQ, FilterOp.NE, FilterOp.IN})
TEXT_OPS = frozenset({FilterOp.EQ, FilterOp.NE, FilterOp.IN, FilterOp.CONTAINS})


@dataclass(frozen=True)
class Predicate:
    field: str
    op: FilterOp
    value: Any

    def __post_init__(self) -> None:
        if not isinstance(self.field, str) or not self.field.isidentifier():
            raise InvalidFilterError(f"Invalid filter field: {self.field!r}", field=str(self.field))
        try:
            op = FilterOp(self.op)
        except ValueError:
            raise InvalidFilterError(f"Unsupported filter operator: {self.op!r}", field=self.field, operator=str(self.op))
        object.__setattr__(self, "op", op)

        if op is FilterOp.IN:
            if isinstance(self.value, (str, bytes)) or not isinstance(self.value, (list, tuple, set, frozenset)):
                raise InvalidFilterError("'in' expects a list of values", field=self.field, operator=op.value)
            if not self.value:
                raise InvalidFilterError("'in' expects at least one value", field=self.field, operator=op.value)
            object.__setattr__(self, "value", tuple(self.value))
        elif op is FilterOp.CONTAINS:
            if not isinstance(self.value, str) or not self.value:
                raise InvalidFilterError("'contains' expects a non-empty string", field=self.field, operator=op.value)
        elif self.value is None and op not in (FilterOp.EQ, FilterOp.NE):
            raise InvalidFilterError("null only supports eq / ne", field=self.field, operator=op.value)

    def canonical(self) -> list:
        value = to_jsonable(self.value)
        if self.op is FilterOp.IN:
            value = sorted(value, key=dumps)
        return [self.field, self.op.value, value]


PredicateLike = Union[Predicate, Tuple[str, str, Any]]


@dataclass(frozen=True)
class QueryFilter:
    predicates: Tuple[Predicate, ...] = ()

    @classmethod
    def of(cls, *predicates: PredicateLike) -> "QueryFilter":
        return cls(tuple(_to_predicate(p) for p in predicates))

    @classmethod
    def coerce(cls, value: Any) -> "QueryFilter":
        """Accept None, a QueryFilter, or an iterable of predicates / (field, op, value) triples."""
        if value is None:
            return cls()
        if isinstance(value, QueryFilter):
            return value
        if isinstance(value, (str, bytes)):
            raise InvalidFilterError("Free-form string filters are not accepted")
        if isinstance(value, Mapping):
            return cls(tuple(Predicate(k, FilterOp.EQ, v) for k, v in value.items()))
        if isinstance(value, Iterable):
            return cls(tuple(_to_predicate(p) for p in value))
        raise InvalidFilterError(f"Unsupported filter type: {type(value).__name__}")

    def validate(self, allowed: Mapping[str, frozenset]) -> None:
        """Reject any field or operator outside the per-entity whitelist."""
        for predicate in self.predicates:
            ops = allowed.get(predicate.field)
            if ops is None:
                raise InvalidFilterError(
                    f"Field '{predicate.field}' is not filterable",
                    field=predicate.field,
                    operator=predicate.op.value,
                )
            if predicate.op not in ops:
                raise InvalidFilterError(
                    f"Operator '{predicate.op.value}' not allowed on '{predicate.field}'",
                    field=predicate.field,
                    operator=predicate.op.value,
                )

    def canonical(self) -> list:
        return sorted((p.canonical() for p in self.predicates), key=dumps)

    def __bool__(self) -> bool:
        return bool(self.predicates)


def _to_predicate(value: Any) -> Predicate:
    if isinstance(value, Predicate):
        return value
    if isinstance(value, tuple) and len(value) == 3:
        return Predicate(*value)
    if isinstance(value, (str, bytes)):
        raise InvalidFilterError("Free-form string filters are not accepted")
    raise InvalidFilterError(f"Unsupported predicate: {value!r}")


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


@dataclass(frozen=True)
class Pagination:
    offset: int = 0
    limit: int = 50
    order_by: Optional[OrderBy] = None

    def validate(self, max_page_size: int) -> None:
        if self.offset < 0:
            raise ValidationError("offset must be >= 0", field_errors={"offset": ["negative"]})
        if not 1 <= self.limit <= max_page_size:
            raise ValidationError(
                f"limit must be between 1 and {max_page_size}",
                field_errors={"limit": ["out of range"]},
            )

    def canonical(self) -> dict:
        return {
            "offset": self.offset,
            "limit": self.limit,
            "order_by": [self.order_by.field, self.order_by.descending] if self.order_by else None,
        }


@dataclass(frozen=True)
class Page(Generic[T]):
    items: Tuple[T, ...]
    total: int
    offset: int
    limit: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)


def fingerprint(query_filter: QueryFilter, pagination: Pagination) -> str:
    """Deterministic digest of a list query; equal queries always hash equal."""
    canonical = {"filter": query_filter.canonical(), "page": pagination.canonical()}
    return hashlib.sha256(dumps(canonical).encode("utf-8")).hexdigest()[:32]
