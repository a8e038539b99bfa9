# Overview: Service-layer operations for support impersonation; audited, time-boxed sessions.

"""
Impersonation Service

WHY: Platform operators sometimes need to see a tenant exactly as its staff
do. Impersonation hands them a session scoped to one tenant and one role,
bounded in time, and always audited.

RECORD-THEN-ACT: start() inserts the ImpersonationAuditRecord and mints the
one-time exchange token in the same transaction. An audit row therefore
exists before any impersonated session can, even if the operator's client
crashes immediately afterwards.

SCOPE:
- Sessions run as a per-tenant, per-role support account (is_support=True,
  no password) so tenant data is never attributed to a real staff member
- The minted session carries the audit id; closing the audit (end or
  force-close) invalidates it on the next request
- Sessions expire at the time box (IMPERSONATION_TTL_MINUTES) regardless of
  refresh
- Impersonation cannot be nested and never works offline
"""

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app

from ..errors import NotAuthorized, ValidationFailed
from ..extensions import db
from ..models import Account, ImpersonationAuditRecord
from ..models.auth import EXCHANGE_PURPOSE_IMPERSONATION, TENANT_ROLES, default_permissions
from ..time_utils import utcnow
from ..validation import require_text
from .security_service import log_security_event
from .session_service import mint_exchange_token, revoke_sessions_for_audit
from .tenant_service import get_tenant, require_platform_operator


def _support_username(tenant_id: int, role: str) -> str:
    return f"support_{tenant_id}_{role}"


def get_or_create_support_account(tenant_id: int, role: str) -> Account:
    """Support accounts are created on demand and reactivated if needed."""
    username = _support_username(tenant_id, role)
    account = db.session.query(Account).filter_by(username=username).first()
    if account is None:
        account = Account(
            username=username,
            display_name=f"Support ({role})",
            role=role,
            permissions=default_permissions(role),
            tenant_id=tenant_id,
            password_hash=None,
            is_active=True,
            is_support=True,
        )
        db.session.add(account)
        db.session.flush()
    elif not account.is_active:
        account.is_active = True
    return account


def start_impersonation(
    operator: Account,
    operator_audit_id: int | None,
    target_tenant_id: int,
    target_role: str,
    reason: str,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> tuple[ImpersonationAuditRecord, str]:
    """
    Open an impersonation audit and mint its one-time exchange token.

    Returns (audit, plaintext_exchange_token).

    Raises NotAuthorized for non-operators or nested impersonation,
    ValidationFailed for a short reason, unknown role or deleted tenant.
    """
    require_platform_operator(operator)
    if operator_audit_id is not None:
        raise NotAuthorized("Already impersonating; return to your account first")

    reason = require_text(reason, "Reason", min_length=3)
    target_role = str(target_role or "").strip().lower()
    if target_role not in TENANT_ROLES:
        raise ValidationFailed(f"Role must be one of: {', '.join(TENANT_ROLES)}")

    tenant = get_tenant(target_tenant_id)
    if tenant.deleted_at is not None:
        raise ValidationFailed("Business is deleted; restore it before impersonating")

    now = utcnow()
    ttl = timedelta(minutes=int(current_app.config.get("IMPERSONATION_TTL_MINUTES", 60)))
    expires_at = now + ttl

    support = get_or_create_support_account(tenant.id, target_role)

    audit = ImpersonationAuditRecord(
        operator_id=operator.id,
        target_tenant_id=tenant.id,
        target_role=target_role,
        support_account_id=support.id,
        reason=reason,
        started_at=now,
        expires_at=expires_at,
    )
    db.session.add(audit)
    db.session.flush()

    _, token = mint_exchange_token(
        support,
        purpose=EXCHANGE_PURPOSE_IMPERSONATION,
        impersonation_audit_id=audit.id,
        session_expires_at=expires_at,
        commit=False,
    )

    log_security_event(
        account_id=operator.id,
        event_type="IMPERSONATION_STARTED",
        success=True,
        resource=f"audit:{audit.id}",
        action=target_role,
        reason=reason,
        ip_address=ip_address,
        user_agent=user_agent,
        tenant_id=tenant.id,
        commit=False,
    )
    db.session.commit()
    return audit, token


def _close(audit: ImpersonationAuditRecord, end_reason: str, now: datetime) -> None:
    audit.ended_at = now
    audit.end_reason = end_reason
    revoke_sessions_for_audit(audit.id, f"Impersonation {end_reason}", commit=False)


def end_impersonation(operator: Account, audit_id: int, ip_address: str | None = None) -> ImpersonationAuditRecord:
    """
    Mark an impersonation as ended by the operator who started it.

    Idempotent: ending an already-ended audit returns it unchanged.
    """
    require_platform_operator(operator)
    audit = db.session.get(ImpersonationAuditRecord, audit_id)
    if audit is None or audit.operator_id != operator.id:
        raise NotAuthorized("Not allowed")

    if audit.ended_at is None:
        _close(audit, "returned", utcnow())
        log_security_event(
            account_id=operator.id,
            event_type="IMPERSONATION_ENDED",
            success=True,
            resource=f"audit:{audit.id}",
            ip_address=ip_address,
            tenant_id=audit.target_tenant_id,
            commit=False,
        )
        db.session.commit()
    return audit


def force_close(audit_id: int, end_reason: str = "force_closed") -> ImpersonationAuditRecord | None:
    """Close one audit regardless of operator (ops tooling)."""
    audit = db.session.get(ImpersonationAuditRecord, audit_id)
    if audit is None:
        return None
    if audit.ended_at is None:
        _close(audit, end_reason, utcnow())
        log_security_event(
            account_id=None,
            event_type="IMPERSONATION_FORCE_CLOSED",
            success=True,
            resource=f"audit:{audit.id}",
            reason=end_reason,
            tenant_id=audit.target_tenant_id,
            commit=False,
        )
        db.session.commit()
    return audit


def force_close_expired(now: datetime | None = None) -> int:
    """Close every open audit past its time box. Returns the count closed."""
    now = now or utcnow()
    stale = db.session.query(ImpersonationAuditRecord).filter(
        ImpersonationAuditRecord.ended_at.is_(None),
        ImpersonationAuditRecord.expires_at.isnot(None),
        ImpersonationAuditRecord.expires_at < now,
    ).all()
    for audit in stale:
        _close(audit, "expired", now)
    db.session.commit()
    return len(stale)


def list_audits(tenant_id: int | None = None, open_only: bool = False, limit: int = 100) -> list[ImpersonationAuditRecord]:
    query = db.session.query(ImpersonationAuditRecord)
    if tenant_id is not None:
        query = query.filter(ImpersonationAuditRecord.target_tenant_id == tenant_id)
    if open_only:
        query = query.filter(ImpersonationAuditRecord.ended_at.is_(None))
    return query.order_by(ImpersonationAuditRecord.started_at.desc()).limit(limit).all()
