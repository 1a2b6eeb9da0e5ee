# src/shopcore/utils/serialization.py
"""
Safe JSON helpers with support for datetime, UUID, Decimal, Enum and dataclasses.

Decimals are encoded as strings so cached prices round-trip exactly.
"""

from __future__ import annotations

import dataclasses
import json
import types
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Type, TypeVar, Union, get_args, get_origin, get_type_hints
from uuid import UUID

T = TypeVar("T")


class SafeEncoder(json.JSONEncoder):
    def default(self, o: Any):
        if isinstance(o, datetime):
            return o.isoformat()
        if isinstance(o, UUID):
            return str(o)
        if isinstance(o, Decimal):
            return str(o)
        if isinstance(o, Enum):
            return o.value
        if dataclasses.is_dataclass(o) and not isinstance(o, type):
            return to_jsonable(o)
        return super().default(o)


def dumps(data: Any) -> str:
    return json.dumps(data, separators=(",", ":"), sort_keys=True, cls=SafeEncoder)


def loads(s: str | bytes) -> Any:
    return json.loads(s)


def to_jsonable(value: Any) -> Any:
    """Recursively convert a value into plain JSON types."""
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]
    raise TypeError(f"Value of type {type(value).__name__} is not JSON-serializable")


def _coerce(tp: Any, value: Any) -> Any:
    if value is None:
        return None
    origin = get_origin(tp)
    if origin is Union or origin is types.UnionType:
        args = [a for a in get_args(tp) if a is not type(None)]
        return _coerce(args[0], value) if len(args) == 1 else value
    if origin is tuple:
        args = get_args(tp)
        inner = args[0] if args else Any
        return tuple(_coerce(inner, v) for v in value)
    if origin is list:
        args = get_args(tp)
        inner = args[0] if args else Any
        return [_coerce(inner, v) for v in value]
    if origin is dict or tp is dict:
        return dict(value)
    if tp is Any:
        return value
    if dataclasses.is_dataclass(tp):
        return from_jsonable(tp, value)
    if tp is UUID:
        return value if isinstance(value, UUID) else UUID(str(value))
    if tp is Decimal:
        return value if isinstance(value, Decimal) else Decimal(str(value))
    if tp is datetime:
        parsed = value if isinstance(value, datetime) else datetime.fromisoformat(value)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    if isinstance(tp, type) and issubclass(tp, Enum):
        return tp(value)
    return value


def from_jsonable(cls: Type[T], data: Dict[str, Any]) -> T:
    """Rebuild a dataclass instance from the output of `to_jsonable`."""
    hints = get_type_hints(cls)
    kwargs = {}
    for f in dataclasses.fields(cls):  # type: ignore[arg-type]
        if not f.init or f.name not in data:
            continue
        kwargs[f.name] = _coerce(hints.get(f.name, Any), data[f.name])
    return cls(**kwargs)
