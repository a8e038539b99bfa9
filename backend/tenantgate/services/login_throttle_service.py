"""
Credential Verification Throttling Service

WHY: Prevent brute-force password attacks against the verify endpoint.
Attempts are counted per hashed origin and per hashed origin + username
within a rolling window.

SECURITY FEATURES:
- Origins are stored only as salted SHA-256 (AUTH_IP_HASH_SALT, falling back
  to DEMO_IP_HASH_SALT); raw IPs are never persisted
- Throttling is disabled when no salt is configured
- Every attempt counts, successful or not
- Limits: AUTH_RATE_LIMIT_MAX_PER_IP (60) and AUTH_RATE_LIMIT_MAX_PER_IP_USER (12)
  per AUTH_RATE_LIMIT_WINDOW_MINUTES (15)
"""

from __future__ import annotations

from datetime import timedelta

from flask import current_app

from ..errors import RateLimited
from ..extensions import db
from ..models import AuthAttempt
from ..time_utils import utcnow
from ..validation import clamp_int, hash_origin


def _salt() -> str:
    cfg = current_app.config
    return str(cfg.get("AUTH_IP_HASH_SALT") or cfg.get("DEMO_IP_HASH_SALT") or "")


def origin_hash(ip_address: str | None) -> str | None:
    return hash_origin(ip_address, _salt())


def check_rate_limit(ip_hash: str | None, username: str) -> None:
    """
    Raise RateLimited if this origin (or origin + username) is over quota.

    No-op when ip_hash is None (throttling disabled).
    """
    if not ip_hash:
        return

    cfg = current_app.config
    window = clamp_int(cfg.get("AUTH_RATE_LIMIT_WINDOW_MINUTES"), 1, 24 * 60, 15)
    max_per_ip = clamp_int(cfg.get("AUTH_RATE_LIMIT_MAX_PER_IP"), 1, 2000, 60)
    max_per_ip_user = clamp_int(cfg.get("AUTH_RATE_LIMIT_MAX_PER_IP_USER"), 1, 500, 12)
    cutoff = utcnow() - timedelta(minutes=window)

    per_ip = db.session.query(AuthAttempt).filter(
        AuthAttempt.ip_hash == ip_hash,
        AuthAttempt.occurred_at >= cutoff,
    ).count()
    if per_ip >= max_per_ip:
        raise RateLimited("Too many attempts. Try again later.")

    per_ip_user = db.session.query(AuthAttempt).filter(
        AuthAttempt.ip_hash == ip_hash,
        AuthAttempt.username == username,
        AuthAttempt.occurred_at >= cutoff,
    ).count()
    if per_ip_user >= max_per_ip_user:
        raise RateLimited("Too many attempts. Try again later.")


def record_attempt(ip_hash: str | None, username: str, success: bool) -> None:
    if not ip_hash:
        return
    db.session.add(AuthAttempt(
        ip_hash=ip_hash,
        username=username[:64],
        success=success,
        occurred_at=utcnow(),
    ))
    db.session.commit()
