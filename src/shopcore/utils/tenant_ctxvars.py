# src/shopcore/utils/tenant_ctxvars.py
from __future__ import annotations

import contextvars
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

# Context variables, bound for the lifetime of a tenant scope

TENANT_ID_VAR = contextvars.ContextVar[Optional[str]]("tenant_id", default=None)
SCOPE_ID_VAR = contextvars.ContextVar[Optional[str]]("scope_id", default=None)
USER_ID_VAR = contextvars.ContextVar[Optional[str]]("user_id", default=None)
ROLES_VAR = contextvars.ContextVar[List[str]]("roles", default=[])


def snapshot() -> Dict[str, object]:
    """Return a simple snapshot of the current ctxvars."""
    return {
        "tenant_id": get_tenant_id(),
        "scope_id": get_scope_id(),
        "user_id": get_user_id(),
        "roles": get_roles(),
    }


# Typed accessors
def get_tenant_id() -> Optional[str]:
    return TENANT_ID_VAR.get()


def get_scope_id() -> Optional[str]:
    return SCOPE_ID_VAR.get()


def get_user_id() -> Optional[str]:
    return USER_ID_VAR.get()


def get_roles() -> List[str]:
    # Always return a copy so callers can't accidentally mutate the ctx list
    return list(ROLES_VAR.get() or [])


@contextmanager
def bind_tenant_ctx(
    *,
    tenant_id: str,
    scope_id: str,
    user_id: Optional[str] = None,
    roles: Optional[List[str]] = None,
) -> Iterator[None]:
    """
    Temporarily bind tenant context into ctxvars for the current task.
    Example:
        with bind_tenant_ctx(tenant_id=str(scope.tenant_id), scope_id=str(scope.scope_id)):
            await service.do_something()
    """
    tokens = [
        TENANT_ID_VAR.set(tenant_id),
        SCOPE_ID_VAR.set(scope_id),
        USER_ID_VAR.set(user_id),
        ROLES_VAR.set(list(roles or [])),
    ]
    try:
        yield
    finally:
        for tok in reversed(tokens):
            tok.var.reset(tok)
