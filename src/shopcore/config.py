"""
Centralized configuration for the shop data core.

- Pure dataclass settings, loaded from OS env (and a `.env` file via python-dotenv).
- Strong typing & validation in __post_init__.
- Immutable singleton via functools.lru_cache.
- Secrets never logged (masked).
"""

from __future__ import annotations

import functools
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Optional, cast
from urllib.parse import urlparse

from dotenv import load_dotenv


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------
def _mask_secret(value: Optional[str]) -> str:
    if not value:
        return "<unset>"
    if len(value) <= 8:
        return "***"
    return value[:2] + "…" + value[-2:]


def _mask_url(value: Optional[str]) -> str:
    if not value:
        return "<unset>"
    parsed = urlparse(value)
    if parsed.password:
        return value.replace(parsed.password, _mask_secret(parsed.password))
    return value


def _get_env_str(key: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
    v = os.getenv(key, default)
    if required and (v is None or str(v).strip() == ""):
        raise ValueError(f"Missing required env var: {key}")
    return v


def _get_env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    v = v.strip().lower()
    return v in {"1", "true", "t", "yes", "y", "on"}


def _get_env_int(key: str, default: int) -> int:
    v = os.getenv(key)
    if v is None or v.strip() == "":
        return default
    try:
        return int(v)
    except ValueError:
        raise ValueError(f"Env var {key} must be an integer")


def _get_env_float(key: str, default: float) -> float:
    v = os.getenv(key)
    if v is None or v.strip() == "":
        return default
    try:
        return float(v)
    except ValueError:
        raise ValueError(f"Env var {key} must be a number")


def _validate_choice(value: str, *, choices: tuple[str, ...], key: str) -> str:
    if value not in choices:
        raise ValueError(f"{key} must be one of {choices}, got {value!r}")
    return value


def _validate_url(value: Optional[str], *, key: str, allowed_schemes: tuple[str, ...]) -> Optional[str]:
    if value in (None, ""):
        return None
    parsed = urlparse(value)
    if parsed.scheme not in allowed_schemes or not parsed.netloc:
        raise ValueError(f"{key} must be a valid URL with scheme in {allowed_schemes}")
    return value


def _validate_database_url(value: str, *, key: str) -> str:
    if not value.startswith(("postgresql+asyncpg://", "postgresql://", "sqlite+aiosqlite://")):
        raise ValueError(f"{key} must start with postgresql+asyncpg:// or sqlite+aiosqlite://")
    # asyncpg is the only PostgreSQL driver wired for the async engine
    if value.startswith("postgresql://"):
        value = "postgresql+asyncpg://" + value[len("postgresql://"):]
    return value


def _require_positive(value: float, *, key: str) -> None:
    if value <= 0:
        raise ValueError(f"{key} must be > 0")


# ------------------------------------------------------------------------------
# Settings dataclass (immutable)
# ------------------------------------------------------------------------------
EnvName = Literal["local", "dev", "staging", "prod"]
LogFormat = Literal["json", "console"]


@dataclass(frozen=True)
class Settings:
    # Environment
    environment: EnvName = "local"
    debug: bool = False
    is_testing: bool = False

    # Relational store
    database_url: str = "sqlite+aiosqlite:///./dev.db"
    database_pool_size: int = 5
    database_max_overflow: int = 10

    # Shared cache tier (optional; hot tier only when unset)
    redis_url: Optional[str] = None
    cache_key_prefix: str = "shopcore"
    cache_ttl_static: int = 60 * 60
    cache_ttl_semi_dynamic: int = 60
    hot_cache_budget_bytes: int = 1024 * 1024

    # Stock consistency engine
    stock_lock_timeout_seconds: float = 2.0
    stock_retry_attempts: int = 3
    stock_retry_base_ms: int = 20

    # Tenancy / data access
    allow_suspended_read_only: bool = True
    max_page_size: int = 200

    # Observability
    log_level: str = "INFO"
    log_format: Optional[LogFormat] = None

    # Paths
    base_dir: Path = field(default_factory=lambda: Path(__file__).resolve().parent.parent.parent)

    # Derived/computed flags (filled in __post_init__)
    is_prod: bool = field(init=False)
    is_staging: bool = field(init=False)
    is_dev: bool = field(init=False)
    is_local: bool = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "environment",
            _validate_choice(self.environment, choices=("local", "dev", "staging", "prod"), key="ENVIRONMENT"),
        )
        object.__setattr__(self, "database_url", _validate_database_url(self.database_url, key="DATABASE_URL"))
        if self.redis_url:
            _validate_url(self.redis_url, key="REDIS_URL", allowed_schemes=("redis", "rediss"))

        if self.log_format is not None:
            _validate_choice(self.log_format, choices=("json", "console"), key="LOG_FORMAT")
        if not re.fullmatch(r"(?i)DEBUG|INFO|WARNING|ERROR|CRITICAL", self.log_level.strip()):
            raise ValueError("LOG_LEVEL must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL")

        if not re.fullmatch(r"[A-Za-z0-9_-]+", self.cache_key_prefix):
            raise ValueError("CACHE_KEY_PREFIX may only contain letters, digits, '-' and '_'")
        _require_positive(self.cache_ttl_static, key="CACHE_TTL_STATIC")
        _require_positive(self.cache_ttl_semi_dynamic, key="CACHE_TTL_SEMI_DYNAMIC")
        _require_positive(self.hot_cache_budget_bytes, key="HOT_CACHE_BUDGET_BYTES")
        _require_positive(self.stock_lock_timeout_seconds, key="STOCK_LOCK_TIMEOUT_SECONDS")
        _require_positive(self.stock_retry_attempts, key="STOCK_RETRY_ATTEMPTS")
        _require_positive(self.max_page_size, key="MAX_PAGE_SIZE")
        if self.stock_retry_base_ms < 0:
            raise ValueError("STOCK_RETRY_BASE_MS must be >= 0")

        env = self.environment
        object.__setattr__(self, "is_prod", env == "prod")
        object.__setattr__(self, "is_staging", env == "staging")
        object.__setattr__(self, "is_dev", env == "dev")
        object.__setattr__(self, "is_local", env == "local")

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    # Safe dict (for debug prints without secrets)
    def safe_dict(self) -> dict:
        return {
            "environment": self.environment,
            "debug": self.debug,
            "is_testing": self.is_testing,
            "database_url": _mask_url(self.database_url),
            "database_pool_size": self.database_pool_size,
            "database_max_overflow": self.database_max_overflow,
            "redis_url": _mask_url(self.redis_url),
            "cache_key_prefix": self.cache_key_prefix,
            "cache_ttl_static": self.cache_ttl_static,
            "cache_ttl_semi_dynamic": self.cache_ttl_semi_dynamic,
            "hot_cache_budget_bytes": self.hot_cache_budget_bytes,
            "stock_lock_timeout_seconds": self.stock_lock_timeout_seconds,
            "stock_retry_attempts": self.stock_retry_attempts,
            "stock_retry_base_ms": self.stock_retry_base_ms,
            "allow_suspended_read_only": self.allow_suspended_read_only,
            "max_page_size": self.max_page_size,
            "log_level": self.log_level,
            "log_format": self.log_format or "<auto>",
            "base_dir": str(self.base_dir),
        }


# ------------------------------------------------------------------------------
# Loader (singleton)
# ------------------------------------------------------------------------------
_logger = logging.getLogger(__name__)


def load_settings(env_file: Optional[Path] = None) -> Settings:
    """Build Settings from the process environment (after loading `.env`)."""
    env_file = env_file or Path.cwd() / ".env"
    if env_file.exists():
        load_dotenv(dotenv_path=str(env_file), override=False)

    log_format = _get_env_str("LOG_FORMAT", None)
    return Settings(
        environment=cast(EnvName, _get_env_str("ENVIRONMENT", "local") or "local"),
        debug=_get_env_bool("DEBUG", False),
        is_testing=_get_env_bool("IS_TESTING", False),
        database_url=_get_env_str("DATABASE_URL", "sqlite+aiosqlite:///./dev.db") or "",
        database_pool_size=_get_env_int("DATABASE_POOL_SIZE", 5),
        database_max_overflow=_get_env_int("DATABASE_MAX_OVERFLOW", 10),
        redis_url=_get_env_str("REDIS_URL", None) or None,
        cache_key_prefix=_get_env_str("CACHE_KEY_PREFIX", "shopcore") or "shopcore",
        cache_ttl_static=_get_env_int("CACHE_TTL_STATIC", 60 * 60),
        cache_ttl_semi_dynamic=_get_env_int("CACHE_TTL_SEMI_DYNAMIC", 60),
        hot_cache_budget_bytes=_get_env_int("HOT_CACHE_BUDGET_BYTES", 1024 * 1024),
        stock_lock_timeout_seconds=_get_env_float("STOCK_LOCK_TIMEOUT_SECONDS", 2.0),
        stock_retry_attempts=_get_env_int("STOCK_RETRY_ATTEMPTS", 3),
        stock_retry_base_ms=_get_env_int("STOCK_RETRY_BASE_MS", 20),
        allow_suspended_read_only=_get_env_bool("ALLOW_SUSPENDED_READ_ONLY", True),
        max_page_size=_get_env_int("MAX_PAGE_SIZE", 200),
        log_level=_get_env_str("LOG_LEVEL", "INFO") or "INFO",
        log_format=cast(Optional[LogFormat], log_format or None),
    )


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = load_settings()
    _logger.info("Settings loaded", extra={"settings": settings.safe_dict()})
    return settings
