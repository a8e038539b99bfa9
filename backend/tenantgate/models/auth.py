from __future__ import annotations

from ..extensions import db
from ..time_utils import utcnow, to_utc_z


ROLE_PLATFORM_OPERATOR = "platform_operator"
ROLE_TENANT_ADMIN = "tenant_admin"
ROLE_CASHIER = "cashier"
ROLES = (ROLE_PLATFORM_OPERATOR, ROLE_TENANT_ADMIN, ROLE_CASHIER)

# Roles an impersonation session may assume inside a tenant
TENANT_ROLES = (ROLE_TENANT_ADMIN, ROLE_CASHIER)

DEFAULT_PERMISSIONS = {
    ROLE_PLATFORM_OPERATOR: {
        "sell": True,
        "refund": True,
        "view_reports": True,
        "manage_products": True,
        "manage_staff": True,
        "manage_devices": True,
        "manage_billing": True,
    },
    ROLE_TENANT_ADMIN: {
        "sell": True,
        "refund": True,
        "view_reports": True,
        "manage_products": True,
        "manage_staff": True,
        "manage_devices": True,
        "manage_billing": False,
    },
    ROLE_CASHIER: {
        "sell": True,
        "refund": False,
        "view_reports": False,
        "manage_products": False,
        "manage_staff": False,
        "manage_devices": False,
        "manage_billing": False,
    },
}


def default_permissions(role: str) -> dict:
    return dict(DEFAULT_PERMISSIONS.get(role, DEFAULT_PERMISSIONS[ROLE_CASHIER]))


class Account(db.Model):
    """
    Identity of a human operator.

    MULTI-TENANT: tenant_id is NULL only for platform operators. Every other
    account belongs to exactly one tenant, and every authority operation
    re-derives role and tenant from the account behind the verified session;
    a client-claimed role/tenant is never trusted.

    SECURITY:
    - password_hash is bcrypt; the plaintext is never stored
    - is_support marks the per-tenant accounts used by impersonation sessions;
      they cannot log in with a password
    - usernames are unique across the platform (login is by username alone)
    """
    __tablename__ = "accounts"
    __table_args__ = (
        db.Index("ix_accounts_tenant_role", "tenant_id", "role"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=True, index=True)

    username = db.Column(db.String(64), nullable=False, unique=True, index=True)
    display_name = db.Column(db.String(128), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    role = db.Column(db.String(32), nullable=False, default=ROLE_CASHIER)
    permissions = db.Column(db.JSON, nullable=False, default=dict)

    password_hash = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    is_support = db.Column(db.Boolean, nullable=False, default=False)

    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    tenant = db.relationship("Tenant", backref=db.backref("accounts", lazy=True))

    @property
    def is_platform_operator(self) -> bool:
        return self.role == ROLE_PLATFORM_OPERATOR

    def __repr__(self) -> str:
        return f"<Account id={self.id} username={self.username!r} role={self.role}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "username": self.username,
            "display_name": self.display_name,
            "role": self.role,
            "permissions": dict(self.permissions or {}),
            "is_active": self.is_active,
            "is_support": self.is_support,
            "last_login_at": to_utc_z(self.last_login_at),
            "created_at": to_utc_z(self.created_at),
        }


class SessionToken(db.Model):
    """
    Authenticated session (access + refresh token pair).

    WHY: The access token authorizes API calls for a short window; the refresh
    token lets a device restore the session later without the password.
    Both are stored only as SHA-256 hashes.

    MULTI-TENANT: tenant_id is captured at issue time and is immutable for the
    session lifetime. Impersonation sessions carry the audit record id and
    expire at the impersonation time box regardless of refresh.
    """
    __tablename__ = "session_tokens"
    __table_args__ = (
        db.Index("ix_session_tokens_account_revoked", "account_id", "is_revoked"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False, index=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=True, index=True)

    access_token_hash = db.Column(db.String(64), nullable=False, unique=True, index=True)
    refresh_token_hash = db.Column(db.String(64), nullable=False, unique=True, index=True)
    access_expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    refresh_expires_at = db.Column(db.DateTime(timezone=True), nullable=False)

    impersonation_audit_id = db.Column(
        db.Integer, db.ForeignKey("impersonation_audit_records.id"), nullable=True, index=True
    )

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    is_revoked = db.Column(db.Boolean, nullable=False, default=False, index=True)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    revoked_reason = db.Column(db.String(255), nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)

    account = db.relationship("Account", backref=db.backref("sessions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "tenant_id": self.tenant_id,
            "access_expires_at": to_utc_z(self.access_expires_at),
            "refresh_expires_at": to_utc_z(self.refresh_expires_at),
            "impersonation_audit_id": self.impersonation_audit_id,
            "created_at": to_utc_z(self.created_at),
            "is_revoked": self.is_revoked,
        }


EXCHANGE_PURPOSE_LOGIN = "login"
EXCHANGE_PURPOSE_IMPERSONATION = "impersonation"


class ExchangeToken(db.Model):
    """
    One-time token exchanged for a real session.

    WHY: Credential verification and impersonation both hand the client a
    short-lived, single-use token instead of a session directly. The session
    is only minted when the client redeems it, so a token that is never
    redeemed grants nothing.

    SECURITY: stored hashed; consumed_at is set exactly once.
    """
    __tablename__ = "exchange_tokens"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    token_hash = db.Column(db.String(64), nullable=False, unique=True, index=True)
    purpose = db.Column(db.String(32), nullable=False, default=EXCHANGE_PURPOSE_LOGIN)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False, index=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=True)
    impersonation_audit_id = db.Column(
        db.Integer, db.ForeignKey("impersonation_audit_records.id"), nullable=True
    )

    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    # Hard cap for the minted session (impersonation time box)
    session_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    consumed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
