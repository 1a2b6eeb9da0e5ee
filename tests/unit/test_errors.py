import uuid

from shopcore.errors import (
    CacheUnavailableError,
    ConcurrencyConflictError,
    ConstraintViolationError,
    CrossTenantViolationError,
    DomainError,
    ErrorCode,
    InsufficientStockError,
    InvalidTenantError,
    NotFoundError,
    ReadOnlyScopeError,
)


def test_to_dict_is_stable():
    err = ConstraintViolationError("duplicate sku", constraint="uq_products_tenant_sku", conflict_field="sku")
    assert err.to_dict() == {
        "code": "constraint_violation",
        "message": "duplicate sku",
        "retryable": False,
        "details": {"constraint": "uq_products_tenant_sku", "conflict_field": "sku"},
    }
    assert err.http_status == 409


def test_only_conflicts_and_cache_outages_are_retryable():
    assert ConcurrencyConflictError().retryable
    assert CacheUnavailableError().retryable
    assert not CrossTenantViolationError().retryable
    assert not ConstraintViolationError("x").retryable


def test_read_only_scope_is_an_invalid_tenant_error():
    tid = uuid.uuid4()
    err = ReadOnlyScopeError(tenant_id=tid)
    assert isinstance(err, InvalidTenantError)
    assert err.code is ErrorCode.READ_ONLY_SCOPE
    assert err.tenant_id == tid
    assert err.details == {"status": "suspended"}


def test_insufficient_stock_details():
    pid = uuid.uuid4()
    err = InsufficientStockError(pid, available=2, requested=5)
    assert err.details == {"product_id": str(pid), "available": 2, "requested": 5}
    assert isinstance(err, DomainError)


def test_not_found_message():
    err = NotFoundError("product", "abc")
    assert str(err) == "product not found with ID: abc"
    assert err.http_status == 404
