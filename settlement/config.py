from __future__ import annotations

import os
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional


# =============================================================================
# Utils
# =============================================================================

_TRUTHY = {"1", "true", "yes", "y", "on"}
_FALSY = {"0", "false", "no", "n", "off"}


def truthy(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    v = value.strip().lower()
    if v in _TRUTHY:
        return True
    if v in _FALSY:
        return False
    return default


def env_str(key: str, default: str = "") -> str:
    return (os.getenv(key) or default).strip()


def env_int(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def env_decimal(key: str, default: str) -> Decimal:
    raw = os.getenv(key)
    try:
        return Decimal((raw or default).strip())
    except InvalidOperation:
        return Decimal(default)


def normalize_database_url(raw: Optional[str]) -> str:
    """
    Hosted Postgres often hands out 'postgres://'; SQLAlchemy wants 'postgresql://'.
    """
    if not raw or not raw.strip():
        return "sqlite:///settlement_local.db"

    url = raw.strip()
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)

    return url


def celery_settings(broker_url: str, result_backend: str = "") -> Dict[str, Any]:
    """No broker: tasks run inline (eager)."""
    out: Dict[str, Any] = {
        "broker_url": broker_url or "memory://",
        "task_always_eager": not broker_url,
        "task_ignore_result": True,
        "task_acks_late": True,
        "task_serializer": "json",
        "accept_content": ["json"],
        "timezone": "UTC",
        "enable_utc": True,
    }
    if result_backend:
        out["result_backend"] = result_backend
    return out


# =============================================================================
# Config Base
# =============================================================================

class BaseConfig:
    """
    Settlement engine configuration.
    Everything is overridable by env vars; create_app() accepts a mapping on top.
    """

    # -------------------------------------------------------------------------
    # Environment
    # -------------------------------------------------------------------------
    ENV: str = env_str("ENV", env_str("FLASK_ENV", "production")).lower()
    DEBUG: bool = False
    TESTING: bool = False

    SECRET_KEY: str = env_str("SECRET_KEY", "dev-settlement-fallback")
    JSON_SORT_KEYS: bool = False

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------
    LOG_LEVEL: str = env_str("LOG_LEVEL", "INFO").upper()

    # -------------------------------------------------------------------------
    # Database (SQLAlchemy)
    # -------------------------------------------------------------------------
    SQLALCHEMY_DATABASE_URI: str = normalize_database_url(os.getenv("DATABASE_URL"))
    SQLALCHEMY_TRACK_MODIFICATIONS: bool = False
    SQLALCHEMY_ENGINE_OPTIONS: Dict[str, Any] = {
        "pool_pre_ping": True,
        "pool_recycle": env_int("DB_POOL_RECYCLE", 280),
    }
    AUTO_CREATE_TABLES: bool = truthy(os.getenv("AUTO_CREATE_TABLES"), default=False)

    # -------------------------------------------------------------------------
    # Cache (Flask-Caching): advisory wallet snapshots + sweep lock
    # -------------------------------------------------------------------------
    CACHE_TYPE: str = env_str("CACHE_TYPE", "SimpleCache")
    CACHE_DEFAULT_TIMEOUT: int = env_int("CACHE_DEFAULT_TIMEOUT", 300)
    WALLET_CACHE_TTL: int = env_int("WALLET_CACHE_TTL", 30)
    SWEEP_LOCK_TTL: int = env_int("SWEEP_LOCK_TTL", 300)

    # -------------------------------------------------------------------------
    # Settlement policy
    # -------------------------------------------------------------------------
    # online: SALE posted on gateway confirmation, cleared after N days
    # cod: SALE posted on delivery, cleared after N days
    CLEARANCE_HOLD_DAYS_ONLINE: int = env_int("CLEARANCE_HOLD_DAYS_ONLINE", 7)
    CLEARANCE_HOLD_DAYS_COD: int = env_int("CLEARANCE_HOLD_DAYS_COD", 0)
    CLEARANCE_BATCH_SIZE: int = env_int("CLEARANCE_BATCH_SIZE", 500)

    DEFAULT_COMMISSION_BPS: int = env_int("DEFAULT_COMMISSION_BPS", 1000)
    DEFAULT_MIN_WITHDRAWAL: Decimal = env_decimal("DEFAULT_MIN_WITHDRAWAL", "500.00")

    PAYOUT_MAX_RETRIES: int = env_int("PAYOUT_MAX_RETRIES", 3)
    PAYOUT_ONE_IN_FLIGHT: bool = truthy(os.getenv("PAYOUT_ONE_IN_FLIGHT"), default=False)

    LEDGER_PAGE_SIZE: int = env_int("LEDGER_PAGE_SIZE", 20)
    LEDGER_MAX_PAGE_SIZE: int = env_int("LEDGER_MAX_PAGE_SIZE", 100)

    # -------------------------------------------------------------------------
    # Admin / cron gates (empty = open, dev only)
    # -------------------------------------------------------------------------
    ADMIN_API_TOKEN: str = env_str("ADMIN_API_TOKEN", "")
    CRON_SECRET: str = env_str("CRON_SECRET", "")

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------
    NOTIFICATIONS_ENABLED: bool = truthy(os.getenv("NOTIFICATIONS_ENABLED"), default=True)
    NOTIFICATIONS_SYNC: bool = truthy(os.getenv("NOTIFICATIONS_SYNC"), default=False)
    NOTIFICATION_MAX_RETRIES: int = env_int("NOTIFICATION_MAX_RETRIES", 5)

    # -------------------------------------------------------------------------
    # Celery: notification delivery
    # -------------------------------------------------------------------------
    CELERY: Dict[str, Any] = celery_settings(
        env_str("CELERY_BROKER_URL", ""),
        env_str("CELERY_RESULT_BACKEND", ""),
    )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------
    @classmethod
    def is_production(cls) -> bool:
        return cls.ENV == "production"

    @classmethod
    def is_development(cls) -> bool:
        return cls.ENV == "development"


class DevelopmentConfig(BaseConfig):
    ENV = "development"
    DEBUG = True
    LOG_LEVEL = env_str("LOG_LEVEL", "DEBUG").upper()
    AUTO_CREATE_TABLES = truthy(os.getenv("AUTO_CREATE_TABLES"), default=True)

    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}


class TestingConfig(BaseConfig):
    ENV = "testing"
    TESTING = True
    LOG_LEVEL = "DEBUG"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS: Dict[str, Any] = {}
    CACHE_TYPE = "SimpleCache"
    ADMIN_API_TOKEN = ""
    CRON_SECRET = ""
    NOTIFICATIONS_SYNC = True
    CELERY: Dict[str, Any] = celery_settings("")


class ProductionConfig(BaseConfig):
    ENV = "production"
    DEBUG = False
    LOG_LEVEL = env_str("LOG_LEVEL", "INFO").upper()
    SECRET_KEY = env_str("SECRET_KEY", "")


def get_config(env_name: Optional[str] = None):
    """
    Priority:
      1) env_name argument
      2) ENV / FLASK_ENV
    """
    env = (env_name or env_str("ENV", env_str("FLASK_ENV", "production"))).lower()
    if env in {"dev", "development"}:
        return DevelopmentConfig
    if env in {"test", "testing"}:
        return TestingConfig
    return ProductionConfig


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
}
