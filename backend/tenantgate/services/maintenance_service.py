# Overview: Service-layer operations for maintenance; retention cleanup.

from __future__ import annotations

from datetime import timedelta

from ..extensions import db
from ..models import AuthAttempt, ExchangeToken, SecurityEvent, SessionToken
from ..time_utils import utcnow


def cleanup_security_events(*, retention_days: int = 90) -> int:
    """Delete security events older than retention_days."""
    cutoff = utcnow() - timedelta(days=retention_days)
    deleted = db.session.query(SecurityEvent).filter(
        SecurityEvent.occurred_at < cutoff
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted


def cleanup_auth_attempts(*, retention_days: int = 2) -> int:
    """Rate-limit rows are only useful inside the throttling window."""
    cutoff = utcnow() - timedelta(days=retention_days)
    deleted = db.session.query(AuthAttempt).filter(
        AuthAttempt.occurred_at < cutoff
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted


def cleanup_expired_tokens() -> dict:
    """Drop exchange tokens past expiry and sessions past refresh expiry."""
    now = utcnow()
    exchange = db.session.query(ExchangeToken).filter(
        ExchangeToken.expires_at < now
    ).delete(synchronize_session=False)
    sessions = db.session.query(SessionToken).filter(
        SessionToken.refresh_expires_at < now
    ).delete(synchronize_session=False)
    db.session.commit()
    return {"exchange_tokens": exchange, "sessions": sessions}
