"""
Structured logging using structlog with:
- JSON/console switchable format
- Tenant / scope context from contextvars
- PII redaction (emails, phones, cards) outside local/dev
- Security event and perf timing helpers

"""

from __future__ import annotations

import contextlib
import datetime
import logging
import logging.config
import re
import sys
import time
from typing import Any, Dict, Iterable, Optional

import structlog

from shopcore.config import Settings, get_settings

# ---------------------------------------------------------------------
# PII redaction
# ---------------------------------------------------------------------


class PIIRedactionProcessor:
    """
    Structlog processor to redact PII from strings inside event_dict (recursively).
    - Email: keep domain, redact local-part.
    - Phone (E.164 preferred): keep CC and last 4.
    - Credit card: full redact.
    """
    P_EMAIL = re.compile(r"\b([A-Za-z0-9._%+-]+)@([A-Za-z0-9.-]+\.[A-Za-z]{2,})\b")
    P_PHONE = re.compile(r"\+[1-9]\d{7,14}\b")
    P_CC = re.compile(r"\b(?:\d[ -]?){13,19}\b")

    def __call__(self, logger, method_name, event_dict):
        return self._redact(event_dict)

    def _redact(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {k: self._redact(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._redact(v) for v in value]
        if isinstance(value, str):
            return self._redact_str(value)
        return value

    def _redact_str(self, s: str) -> str:
        s = self.P_EMAIL.sub(lambda m: f"***@{m.group(2)}", s)
        s = self.P_PHONE.sub(lambda m: f"{m.group(0)[:3]}****{m.group(0)[-4:]}", s)
        s = self.P_CC.sub("***REDACTED***", s)
        return s


# ---------------------------------------------------------------------
# Context processors
# ---------------------------------------------------------------------


def add_request_context(logger, method_name, event_dict):
    """Copy tenant/scope fields bound via `bind_request_context(...)` into the event."""
    ctx = structlog.contextvars.get_contextvars()
    for key in ("tenant_id", "scope_id", "user_id", "correlation_id"):
        if key in ctx and key not in event_dict:
            event_dict[key] = ctx[key]
    return event_dict


def add_timestamp(logger, method_name, event_dict):
    event_dict["timestamp"] = datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="milliseconds")
    return event_dict


def _passthrough(logger, method_name, event_dict):
    return event_dict


# ---------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------


@contextlib.contextmanager
def bind_request_context(
    *,
    tenant_id: Optional[str] = None,
    scope_id: Optional[str] = None,
    user_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    extras: Optional[Dict[str, Any]] = None,
):
    """
    Bind tenant/scope fields for every log line emitted in this task while the
    block runs. On exit the keys are unbound and any outer values restored.

    Usage:
        with bind_request_context(tenant_id=str(tenant_id), scope_id=str(scope_id)):
            ...
    """
    payload = {
        k: v
        for k, v in dict(
            tenant_id=tenant_id,
            scope_id=scope_id,
            user_id=user_id,
            correlation_id=correlation_id,
        ).items()
        if v is not None
    }
    if extras:
        payload.update(extras)
    with structlog.contextvars.bound_contextvars(**payload):
        yield


@contextlib.contextmanager
def time_block(name: str, *, logger: Optional[structlog.stdlib.BoundLogger] = None, labels: Optional[Dict[str, str]] = None):
    """
    Context manager to time a block and log as a performance metric.
    Usage:
        with time_block("dal.list", labels={"entity_type": "product"}):
            page = await dal.list(...)
    """
    _log = logger or performance_logger
    t0 = time.perf_counter()
    try:
        yield
    finally:
        ms = (time.perf_counter() - t0) * 1000.0
        _log.debug("Performance metric", metric_name=name, value=round(ms, 3), unit="ms", labels=labels or {})


# ---------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------

def _ensure_log_format(settings: Settings) -> str:
    """
    Determine output format:
      - settings.log_format if set ("json"|"console").
      - Else "console" for local/dev, "json" for staging/prod.
    """
    if settings.log_format in ("json", "console"):
        return settings.log_format
    return "console" if settings.is_local or settings.is_dev else "json"


def _level_name_to_int(level: str) -> int:
    return getattr(logging, level.upper(), logging.INFO)


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Idempotent structured logging configuration."""
    settings = settings or get_settings()
    log_format = _ensure_log_format(settings)
    is_prod_like = settings.is_prod or settings.is_staging

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                "format": "%(asctime)s %(name)s %(levelname)s %(message)s",
                "datefmt": "%Y-%m-%dT%H:%M:%S",
            },
            "console": {
                "format": "%(asctime)s - %(levelname)s - %(name)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "json" if log_format == "json" else "console",
                "stream": sys.stdout,
            },
        },
        "root": {
            "level": _level_name_to_int(settings.log_level),
            "handlers": ["console"],
        },
        "loggers": {
            "sqlalchemy.engine": {
                "level": "INFO" if settings.debug and not is_prod_like else "WARNING",
                "handlers": ["console"],
                "propagate": False,
            },
            "aiosqlite": {"level": "WARNING", "handlers": ["console"], "propagate": False},
        },
    }
    logging.config.dictConfig(logging_config)

    processors: Iterable[Any] = [
        structlog.contextvars.merge_contextvars,
        add_timestamp,
        add_request_context,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        # Redact only outside of local/dev to help debugging locally
        (PIIRedactionProcessor() if is_prod_like else _passthrough),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        (structlog.processors.JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer()),
    ]

    structlog.configure(
        processors=list(processors),
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


# Named loggers for common domains
security_logger = structlog.get_logger("security")
performance_logger = structlog.get_logger("performance")


def log_security_event(
    event_type: str,
    *,
    tenant_id: Optional[str] = None,
    user_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    **kwargs: Any,
) -> None:
    """Log security-relevant events (cross-tenant attempts, guard hits, etc.)."""
    security_logger.warning(
        "Security event",
        event_type=event_type,
        tenant_id=tenant_id,
        user_id=user_id,
        details=details or {},
        **kwargs,
    )
