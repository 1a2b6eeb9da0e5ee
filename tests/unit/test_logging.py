import uuid

import structlog

from shopcore.config import Settings
from shopcore.logging import PIIRedactionProcessor, bind_request_context, get_logger, setup_logging, time_block
from shopcore.utils.tenant_ctxvars import bind_tenant_ctx, get_tenant_id, snapshot


def test_pii_is_redacted():
    redact = PIIRedactionProcessor()
    event = redact(None, "info", {"event": "Order placed", "customer": "ada@example.com", "phone": "+4915112345678"})

    assert event["customer"] == "***@example.com"
    assert event["phone"].endswith("5678")
    assert "1234567" not in event["phone"]


def test_setup_logging_is_idempotent():
    settings = Settings(log_format="json", log_level="DEBUG")
    setup_logging(settings)
    setup_logging(settings)

    log = get_logger("shopcore.test")
    log.info("Logging configured", tenant_id=str(uuid.uuid4()))
    with time_block("test.block", logger=log):
        pass


def test_tenant_ctx_is_bound_for_the_block_only():
    tenant_id = str(uuid.uuid4())
    with bind_tenant_ctx(tenant_id=tenant_id, scope_id="s-1", roles=["admin"]):
        assert get_tenant_id() == tenant_id
        assert snapshot() == {"tenant_id": tenant_id, "scope_id": "s-1", "user_id": None, "roles": ["admin"]}

    assert get_tenant_id() is None


def test_request_context_restores_outer_bindings():
    with structlog.contextvars.bound_contextvars(correlation_id="req-1", tenant_id="outer"):
        with bind_request_context(tenant_id="inner", scope_id="s-2"):
            ctx = structlog.contextvars.get_contextvars()
            assert (ctx["tenant_id"], ctx["scope_id"], ctx["correlation_id"]) == ("inner", "s-2", "req-1")

        ctx = structlog.contextvars.get_contextvars()
        assert ctx["tenant_id"] == "outer"
        assert ctx["correlation_id"] == "req-1"
        assert "scope_id" not in ctx
