# src/shopcore/errors.py
"""Exception hierarchy for the shop data core.

Callers only ever see these types; raw store / cache errors are translated at
the data-access and cache boundaries.
"""

import uuid
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(str, Enum):
    """Stable error codes surfaced to callers."""

    # Caller errors
    VALIDATION_ERROR = "validation_error"
    INVALID_FILTER = "invalid_filter"
    INVALID_TENANT = "invalid_tenant"
    READ_ONLY_SCOPE = "read_only_scope"
    NOT_FOUND = "not_found"

    # Integrity / business rejections
    CROSS_TENANT_VIOLATION = "cross_tenant_violation"
    CONSTRAINT_VIOLATION = "constraint_violation"
    INSUFFICIENT_STOCK = "insufficient_stock"

    # Retryable / infrastructure
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    CACHE_UNAVAILABLE = "cache_unavailable"
    RLS_NOT_SET = "rls_not_set"
    INTERNAL_ERROR = "internal_error"


ERROR_CODES: Dict[ErrorCode, Dict[str, str | int]] = {
    ErrorCode.VALIDATION_ERROR: {"http": 422, "code": "validation_error"},
    ErrorCode.INVALID_FILTER: {"http": 422, "code": "invalid_filter"},
    ErrorCode.INVALID_TENANT: {"http": 403, "code": "invalid_tenant"},
    ErrorCode.READ_ONLY_SCOPE: {"http": 403, "code": "read_only_scope"},
    ErrorCode.NOT_FOUND: {"http": 404, "code": "not_found"},
    ErrorCode.CROSS_TENANT_VIOLATION: {"http": 403, "code": "cross_tenant_violation"},
    ErrorCode.CONSTRAINT_VIOLATION: {"http": 409, "code": "constraint_violation"},
    ErrorCode.INSUFFICIENT_STOCK: {"http": 409, "code": "insufficient_stock"},
    ErrorCode.CONCURRENCY_CONFLICT: {"http": 409, "code": "concurrency_conflict"},
    ErrorCode.CACHE_UNAVAILABLE: {"http": 503, "code": "cache_unavailable"},
    ErrorCode.RLS_NOT_SET: {"http": 500, "code": "rls_not_set"},
    ErrorCode.INTERNAL_ERROR: {"http": 500, "code": "internal_error"},
}


class DomainError(Exception):
    """Base exception for all domain errors."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: ErrorCode,
        details: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
        tenant_id: Optional[uuid.UUID] = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.correlation_id = correlation_id
        self.tenant_id = tenant_id
        self.http_status = http_status or int(ERROR_CODES[code]["http"])

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a stable, serializable payload."""
        result: Dict[str, Any] = {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            result["details"] = self.details
        if self.correlation_id:
            result["correlation_id"] = self.correlation_id
        return result


class ValidationError(DomainError):
    """Validation failed on input data."""

    def __init__(
        self,
        message: str,
        field_errors: Optional[Dict[str, List[str]]] = None,
        **kwargs,
    ):
        super().__init__(
            message,
            ErrorCode.VALIDATION_ERROR,
            details={"field_errors": field_errors} if field_errors else None,
            **kwargs,
        )
        self.field_errors = field_errors or {}


class InvalidFilterError(DomainError):
    """A list filter used a field or operator outside the whitelist."""

    def __init__(self, message: str, field: Optional[str] = None, operator: Optional[str] = None, **kwargs):
        details = {}
        if field:
            details["field"] = field
        if operator:
            details["operator"] = operator
        super().__init__(message, ErrorCode.INVALID_FILTER, details=details or None, **kwargs)


class InvalidTenantError(DomainError):
    """Tenant id is malformed, unknown, or the tenant is not usable."""

    def __init__(
        self,
        message: str = "Invalid tenant",
        tenant_id: Optional[uuid.UUID] = None,
        status: Optional[str] = None,
        code: ErrorCode = ErrorCode.INVALID_TENANT,
        **kwargs,
    ):
        super().__init__(
            message,
            code,
            details={"status": status} if status else None,
            tenant_id=tenant_id,
            **kwargs,
        )


class ReadOnlyScopeError(InvalidTenantError):
    """A mutation was attempted through a read-only (suspended tenant) scope."""

    def __init__(self, message: str = "Scope is read-only", tenant_id: Optional[uuid.UUID] = None, **kwargs):
        super().__init__(
            message,
            tenant_id=tenant_id,
            status="suspended",
            code=ErrorCode.READ_ONLY_SCOPE,
            **kwargs,
        )


class NotFoundError(DomainError):
    """Requested resource was not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        **kwargs,
    ):
        message = f"{resource_type} not found"
        if resource_id:
            message += f" with ID: {resource_id}"

        super().__init__(
            message,
            ErrorCode.NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": resource_id},
            **kwargs,
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class CrossTenantViolationError(DomainError):
    """A scope tried to touch a row owned by another tenant.

    Security-significant: always logged, never retried, never auto-corrected.
    """

    def __init__(
        self,
        message: str = "Cross-tenant access rejected",
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        **kwargs,
    ):
        details = {}
        if resource_type:
            details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id
        super().__init__(message, ErrorCode.CROSS_TENANT_VIOLATION, details=details or None, **kwargs)


class ConstraintViolationError(DomainError):
    """Unique / check / reference constraint rejected the change."""

    def __init__(
        self,
        message: str,
        constraint: Optional[str] = None,
        conflict_field: Optional[str] = None,
        **kwargs,
    ):
        details = {}
        if constraint:
            details["constraint"] = constraint
        if conflict_field:
            details["conflict_field"] = conflict_field
        super().__init__(message, ErrorCode.CONSTRAINT_VIOLATION, details=details or None, **kwargs)


class InsufficientStockError(DomainError):
    """A decrement would drive stock below zero and backorder is disallowed."""

    def __init__(
        self,
        product_id: uuid.UUID,
        available: int,
        requested: int,
        **kwargs,
    ):
        super().__init__(
            f"Insufficient stock for product {product_id}: available={available}, requested={requested}",
            ErrorCode.INSUFFICIENT_STOCK,
            details={"product_id": str(product_id), "available": available, "requested": requested},
            **kwargs,
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class ConcurrencyConflictError(DomainError):
    """Lock timeout or repeated version conflict; the caller may retry."""

    retryable = True

    def __init__(
        self,
        message: str = "Concurrent modification conflict",
        resource_id: Optional[str] = None,
        attempts: Optional[int] = None,
        **kwargs,
    ):
        details: Dict[str, Any] = {}
        if resource_id:
            details["resource_id"] = resource_id
        if attempts is not None:
            details["attempts"] = attempts
        super().__init__(message, ErrorCode.CONCURRENCY_CONFLICT, details=details or None, **kwargs)


class CacheUnavailableError(DomainError):
    """Shared cache tier could not be reached. Absorbed by the coherence layer."""

    retryable = True

    def __init__(self, message: str = "Cache tier unavailable", operation: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            ErrorCode.CACHE_UNAVAILABLE,
            details={"operation": operation} if operation else None,
            **kwargs,
        )


class RlsNotSetError(DomainError):
    """Row Level Security context not properly set."""

    def __init__(
        self,
        message: str = "RLS context not set - tenant_id required",
        missing_context: Optional[List[str]] = None,
        **kwargs,
    ):
        super().__init__(
            message,
            ErrorCode.RLS_NOT_SET,
            details={"missing_context": missing_context} if missing_context else None,
            **kwargs,
        )


class DataAccessError(DomainError):
    """The relational store failed in a way that is not a business rejection."""

    def __init__(self, message: str = "Data store error", operation: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            ErrorCode.INTERNAL_ERROR,
            details={"operation": operation} if operation else None,
            **kwargs,
        )
