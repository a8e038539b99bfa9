from __future__ import annotations

from ..extensions import db
from ..time_utils import utcnow, to_utc_z


class DemoSession(db.Model):
    """
    A provisioned sandbox tenant.

    PRIVACY: ip_hash is a salted SHA-256 of the caller's network origin.
    The raw IP is never stored.

    tenant_id/account_id are plain integers: the row outlives the purged
    tenant so the rate limit window and purge history stay intact.
    """
    __tablename__ = "demo_sessions"
    __table_args__ = (
        db.Index("ix_demo_sessions_ip_created", "ip_hash", "created_at"),
        db.Index("ix_demo_sessions_expiry", "purged_at", "expires_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, nullable=True)
    account_id = db.Column(db.Integer, nullable=True)
    ip_hash = db.Column(db.String(64), nullable=True)
    email = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    purged_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_error = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "account_id": self.account_id,
            "created_at": to_utc_z(self.created_at),
            "expires_at": to_utc_z(self.expires_at),
            "purged_at": to_utc_z(self.purged_at),
            "last_error": self.last_error,
        }


class AuthAttempt(db.Model):
    """
    Credential verification attempts keyed by hashed origin.

    WHY: Rate limits credential verification per origin and per
    origin+username. Like DemoSession, stores only the salted hash.
    """
    __tablename__ = "auth_attempts"
    __table_args__ = (
        db.Index("ix_auth_attempts_ip_occurred", "ip_hash", "occurred_at"),
        db.Index("ix_auth_attempts_ip_user_occurred", "ip_hash", "username", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    ip_hash = db.Column(db.String(64), nullable=False)
    username = db.Column(db.String(64), nullable=False)
    success = db.Column(db.Boolean, nullable=False, default=False)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class DemoOriginLock(db.Model):
    """
    One row per hashed origin; the serialization point for demo rate checks.

    Provisioning bumps `seq` before counting recent sessions, so concurrent
    requests from the same origin queue up behind each other.
    """
    __tablename__ = "demo_origin_locks"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    ip_hash = db.Column(db.String(64), nullable=False, unique=True)
    seq = db.Column(db.Integer, nullable=False, default=0)
