# backend/tenantgate/config.py
from __future__ import annotations
import os


def _int_env(name: str, fallback: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return fallback
    try:
        return int(raw)
    except ValueError:
        return fallback


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/tenantgate.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///tenantgate.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Password hashing cost (bcrypt log rounds)
    BCRYPT_ROUNDS = _int_env("BCRYPT_ROUNDS", 12)

    # Session lifetimes
    SESSION_ACCESS_TTL_MINUTES = _int_env("SESSION_ACCESS_TTL_MINUTES", 60)
    SESSION_REFRESH_TTL_DAYS = _int_env("SESSION_REFRESH_TTL_DAYS", 30)
    EXCHANGE_TOKEN_TTL_SECONDS = _int_env("EXCHANGE_TOKEN_TTL_SECONDS", 120)
    IMPERSONATION_TTL_MINUTES = _int_env("IMPERSONATION_TTL_MINUTES", 60)

    # Billing defaults for newly created tenants
    DEFAULT_MAX_DEVICES = _int_env("DEFAULT_MAX_DEVICES", 2)
    DEFAULT_GRACE_DAYS = _int_env("DEFAULT_GRACE_DAYS", 7)
    APP_ONLY_GRACE_DAYS = _int_env("APP_ONLY_GRACE_DAYS", 5)

    # Demo provisioning
    DEMO_IP_HASH_SALT = os.environ.get("DEMO_IP_HASH_SALT", "")
    DEMO_RATE_LIMIT_MAX = _int_env("DEMO_RATE_LIMIT_MAX", 3)
    DEMO_RATE_LIMIT_WINDOW_MINUTES = _int_env("DEMO_RATE_LIMIT_WINDOW_MINUTES", 24 * 60)
    DEMO_TTL_HOURS = _int_env("DEMO_TTL_HOURS", 24)
    DEMO_MAX_DEVICES = _int_env("DEMO_MAX_DEVICES", 10)
    DEMO_SWEEP_BATCH = _int_env("DEMO_SWEEP_BATCH", 10)

    # Credential verification throttling (disabled when no salt is configured)
    AUTH_IP_HASH_SALT = os.environ.get("AUTH_IP_HASH_SALT", "")
    AUTH_RATE_LIMIT_WINDOW_MINUTES = _int_env("AUTH_RATE_LIMIT_WINDOW_MINUTES", 15)
    AUTH_RATE_LIMIT_MAX_PER_IP = _int_env("AUTH_RATE_LIMIT_MAX_PER_IP", 60)
    AUTH_RATE_LIMIT_MAX_PER_IP_USER = _int_env("AUTH_RATE_LIMIT_MAX_PER_IP_USER", 12)

    # Honor CF-Connecting-IP / X-Forwarded-For / X-Real-IP (only behind a trusted proxy)
    TRUST_PROXY_HEADERS = (os.environ.get("TRUST_PROXY_HEADERS") or "").strip().lower() in ("1", "true", "yes")

    # Browser origins allowed to call the API (comma-separated)
    CORS_ALLOWED_ORIGINS = tuple(
        o.strip() for o in (os.environ.get("CORS_ALLOWED_ORIGINS") or "").split(",") if o.strip()
    )
