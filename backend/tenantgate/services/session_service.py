# Overview: Service-layer operations for sessions and one-time exchange tokens.

"""
Session Token Management Service with Multi-Tenant Support

WHY: Devices hold an access + refresh token pair. The access token authorizes
API calls for a short window; the refresh token restores the session later
(after an app restart or when an impersonation ends) without the password.

MULTI-TENANT: Sessions capture tenant_id at creation time. The tenant context
is immutable for the session lifetime and is re-checked on every request.

SECURITY FEATURES:
- Cryptographically secure random tokens (32 bytes)
- Tokens hashed with SHA-256 before storage (fast, one-way)
- Access TTL SESSION_ACCESS_TTL_MINUTES, refresh TTL SESSION_REFRESH_TTL_DAYS
- Sessions die with their account, their tenant's soft delete, or their
  impersonation audit being closed
- Sessions are only minted by redeeming a one-time exchange token, so a
  verified credential or an impersonation grant is useless until redeemed
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import update

from ..errors import SessionRestoreFailed
from ..extensions import db
from ..models import Account, ExchangeToken, ImpersonationAuditRecord, SessionToken, Tenant
from ..models.auth import EXCHANGE_PURPOSE_IMPERSONATION, EXCHANGE_PURPOSE_LOGIN
from ..time_utils import utcnow


@dataclass
class SessionContext:
    """
    Complete session context returned by validate_session.

    MULTI-TENANT: tenant_id is taken from the immutable session record,
    never from the request.
    """
    account: Account
    session: SessionToken
    tenant_id: int | None
    impersonation_audit_id: int | None = None


@dataclass
class IssuedSession:
    """A session row plus the plaintext tokens (returned to the client once)."""
    session: SessionToken
    access_token: str
    refresh_token: str

    def to_dict(self) -> dict:
        session = self.session.to_dict()
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": session["access_expires_at"],
            "refresh_expires_at": session["refresh_expires_at"],
            "session": session,
        }


def generate_token() -> str:
    """
    Generate cryptographically secure random token.

    Returns 64-character hex string (32 bytes of entropy).
    """
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """
    Hash token for database storage using SHA-256.

    WHY SHA-256 not bcrypt: Tokens are already high-entropy (unlike passwords).
    """
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _access_ttl() -> timedelta:
    return timedelta(minutes=int(current_app.config.get("SESSION_ACCESS_TTL_MINUTES", 60)))


def _refresh_ttl() -> timedelta:
    return timedelta(days=int(current_app.config.get("SESSION_REFRESH_TTL_DAYS", 30)))


def _cap(value: datetime, hard_cap: datetime | None) -> datetime:
    if hard_cap is not None and hard_cap < value:
        return hard_cap
    return value


def _audit_is_open(audit_id: int | None, now: datetime) -> bool:
    if audit_id is None:
        return True
    audit = db.session.get(ImpersonationAuditRecord, audit_id)
    if audit is None or audit.ended_at is not None:
        return False
    if audit.expires_at is not None and audit.expires_at < now:
        return False
    return True


def _account_usable(account: Account | None) -> bool:
    if account is None or not account.is_active:
        return False
    if account.tenant_id is not None:
        tenant = db.session.get(Tenant, account.tenant_id)
        if tenant is None or tenant.deleted_at is not None:
            return False
    return True


def issue_session(
    account: Account,
    *,
    impersonation_audit_id: int | None = None,
    hard_expires_at: datetime | None = None,
    user_agent: str | None = None,
    ip_address: str | None = None,
    commit: bool = True,
) -> IssuedSession:
    """
    Create a new session for an account.

    MULTI-TENANT: Captures the account's tenant_id. Platform operators have no
    tenant. hard_expires_at caps both tokens (impersonation time box).

    Client receives the plaintext tokens; the database stores only hashes.
    """
    access_token = generate_token()
    refresh_token = generate_token()
    now = utcnow()

    session = SessionToken(
        account_id=account.id,
        tenant_id=account.tenant_id,
        access_token_hash=hash_token(access_token),
        refresh_token_hash=hash_token(refresh_token),
        access_expires_at=_cap(now + _access_ttl(), hard_expires_at),
        refresh_expires_at=_cap(now + _refresh_ttl(), hard_expires_at),
        impersonation_audit_id=impersonation_audit_id,
        created_at=now,
        last_used_at=now,
        user_agent=user_agent[:512] if user_agent else None,
        ip_address=ip_address,
        is_revoked=False,
    )
    db.session.add(session)

    account.last_login_at = now
    if commit:
        db.session.commit()
    else:
        db.session.flush()

    return IssuedSession(session=session, access_token=access_token, refresh_token=refresh_token)


def _revoke(session: SessionToken, reason: str, now: datetime) -> None:
    session.is_revoked = True
    session.revoked_at = now
    session.revoked_reason = reason


def validate_session(access_token: str) -> SessionContext | None:
    """
    Validate an access token and return its SessionContext if valid.

    Returns None if:
    - Token is unknown, expired, or revoked
    - Account is deactivated or its tenant soft-deleted
    - The impersonation audit behind the session is closed or past its time box

    Updates last_used_at on success.
    """
    if not access_token:
        return None

    now = utcnow()
    session = db.session.query(SessionToken).filter_by(
        access_token_hash=hash_token(access_token),
        is_revoked=False,
    ).first()

    if not session:
        return None

    if session.access_expires_at < now:
        return None

    account = db.session.get(Account, session.account_id)
    if not _account_usable(account):
        _revoke(session, "Account deactivated", now)
        db.session.commit()
        return None

    if not _audit_is_open(session.impersonation_audit_id, now):
        _revoke(session, "Impersonation ended", now)
        db.session.commit()
        return None

    session.last_used_at = now
    db.session.commit()

    return SessionContext(
        account=account,
        session=session,
        tenant_id=session.tenant_id,
        impersonation_audit_id=session.impersonation_audit_id,
    )


def restore_session(access_token: str, refresh_token: str) -> IssuedSession:
    """
    Restore a session from a stored token pair.

    The pair must belong to the same, unrevoked session row and the refresh
    token must be unexpired. The session row is kept (same session identity);
    if the access token has expired a fresh access token is minted for it.

    Raises SessionRestoreFailed otherwise.
    """
    if not access_token or not refresh_token:
        raise SessionRestoreFailed()

    now = utcnow()
    session = db.session.query(SessionToken).filter_by(
        refresh_token_hash=hash_token(refresh_token),
    ).first()

    if (
        session is None
        or session.is_revoked
        or session.access_token_hash != hash_token(access_token)
        or session.refresh_expires_at < now
    ):
        raise SessionRestoreFailed()

    account = db.session.get(Account, session.account_id)
    if not _account_usable(account):
        _revoke(session, "Account deactivated", now)
        db.session.commit()
        raise SessionRestoreFailed()

    if not _audit_is_open(session.impersonation_audit_id, now):
        _revoke(session, "Impersonation ended", now)
        db.session.commit()
        raise SessionRestoreFailed()

    if session.access_expires_at < now:
        access_token = generate_token()
        session.access_token_hash = hash_token(access_token)
        session.access_expires_at = _cap(now + _access_ttl(), session.refresh_expires_at)

    session.last_used_at = now
    db.session.commit()

    return IssuedSession(session=session, access_token=access_token, refresh_token=refresh_token)


def revoke_session(access_token: str, reason: str = "User logout") -> bool:
    """
    Revoke session token.

    Returns True if session was revoked, False if not found.
    """
    session = db.session.query(SessionToken).filter_by(
        access_token_hash=hash_token(access_token),
        is_revoked=False,
    ).first()

    if not session:
        return False

    _revoke(session, reason, utcnow())
    db.session.commit()
    return True


def revoke_sessions_for_audit(audit_id: int, reason: str, commit: bool = True) -> int:
    """Revoke every session minted under an impersonation audit."""
    count = db.session.query(SessionToken).filter(
        SessionToken.impersonation_audit_id == audit_id,
        SessionToken.is_revoked.is_(False),
    ).update(
        {
            SessionToken.is_revoked: True,
            SessionToken.revoked_at: utcnow(),
            SessionToken.revoked_reason: reason,
        },
        synchronize_session=False,
    )
    if commit:
        db.session.commit()
    return count


def mint_exchange_token(
    account: Account,
    *,
    purpose: str = EXCHANGE_PURPOSE_LOGIN,
    impersonation_audit_id: int | None = None,
    session_expires_at: datetime | None = None,
    commit: bool = True,
) -> tuple[ExchangeToken, str]:
    """
    Mint a one-time token redeemable for a session.

    Returns (record, plaintext). Valid for EXCHANGE_TOKEN_TTL_SECONDS.
    """
    plaintext = generate_token()
    now = utcnow()
    ttl = timedelta(seconds=int(current_app.config.get("EXCHANGE_TOKEN_TTL_SECONDS", 120)))

    record = ExchangeToken(
        token_hash=hash_token(plaintext),
        purpose=purpose,
        account_id=account.id,
        tenant_id=account.tenant_id,
        impersonation_audit_id=impersonation_audit_id,
        expires_at=now + ttl,
        session_expires_at=session_expires_at,
        created_at=now,
    )
    db.session.add(record)
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return record, plaintext


def redeem_exchange_token(
    token: str,
    *,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> IssuedSession:
    """
    Exchange a one-time token for a real session.

    The token is consumed with a conditional UPDATE so two concurrent
    redemptions cannot both succeed.

    Raises SessionRestoreFailed for unknown, expired or already-used tokens,
    and when the account or impersonation audit is no longer valid.
    """
    if not token:
        raise SessionRestoreFailed("Login token is invalid or expired")

    now = utcnow()
    record = db.session.query(ExchangeToken).filter_by(token_hash=hash_token(token)).first()
    if record is None or record.consumed_at is not None or record.expires_at < now:
        raise SessionRestoreFailed("Login token is invalid or expired")

    claimed = db.session.execute(
        update(ExchangeToken)
        .where(ExchangeToken.id == record.id, ExchangeToken.consumed_at.is_(None))
        .values(consumed_at=now)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        db.session.rollback()
        raise SessionRestoreFailed("Login token is invalid or expired")

    account = db.session.get(Account, record.account_id)
    if not _account_usable(account):
        db.session.commit()
        raise SessionRestoreFailed("Login token is invalid or expired")

    if record.purpose == EXCHANGE_PURPOSE_IMPERSONATION and not _audit_is_open(
        record.impersonation_audit_id, now
    ):
        db.session.commit()
        raise SessionRestoreFailed("Impersonation has ended")

    return issue_session(
        account,
        impersonation_audit_id=record.impersonation_audit_id,
        hard_expires_at=record.session_expires_at,
        user_agent=user_agent,
        ip_address=ip_address,
    )
