# Overview: Service-layer operations for billing; payments, limits, locks and reactivation codes.

"""
Billing Service

WHY: BillingRecord is the single shared fact the access state is derived
from, so every write to it goes through here and is serialized per tenant.

SECURITY:
- Payments, limit edits and lock toggles are platform-operator only
- Reactivation codes are issued by operators for one tenant, stored hashed,
  and redeemed by that tenant's admin exactly once
- Redemption consumes the code and extends paid_through in one transaction
"""

from __future__ import annotations

import hashlib
import secrets
from datetime import datetime

from sqlalchemy import update

from ..errors import NotAuthorized, ValidationFailed
from ..extensions import db
from ..models import Account, BillingPayment, BillingRecord, ReactivationCode
from ..models.auth import ROLE_TENANT_ADMIN
from ..models.tenancy import PAYMENT_KINDS
from ..time_utils import add_months, utcnow
from .concurrency import lock_for_update, lock_tenant_billing_row
from .security_service import log_security_event
from .tenant_service import get_tenant, require_platform_operator


# No 0/O/1/I to keep codes readable over the phone
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

MAX_DEVICES_LIMIT = 50
MAX_GRACE_DAYS = 60
MAX_PAYMENT_MONTHS = 36


def _locked_billing(tenant_id: int) -> BillingRecord:
    get_tenant(tenant_id)
    lock_tenant_billing_row(tenant_id)
    billing = lock_for_update(
        db.session.query(BillingRecord)
        .filter_by(tenant_id=tenant_id)
        .execution_options(populate_existing=True)
    ).first()
    if billing is None:
        raise ValidationFailed("Business has no billing record")
    return billing


def _extend(billing: BillingRecord, months: int, now: datetime) -> tuple[datetime, datetime]:
    """Extend paid_through by `months` from max(now, paid_through)."""
    before = billing.paid_through
    base = before if before is not None and before > now else now
    billing.paid_through = add_months(base, months)
    billing.updated_at = now
    return before, billing.paid_through


def record_payment(
    actor: Account,
    tenant_id: int,
    kind: str,
    amount_cents: int,
    months: int = 0,
    note: str | None = None,
) -> BillingPayment:
    """
    Record a payment and optionally extend paid_through.

    months > 0 extends from max(now, paid_through), so paying early never
    loses days and paying late never back-dates coverage.
    """
    require_platform_operator(actor)
    if kind not in PAYMENT_KINDS:
        raise ValidationFailed(f"Unknown payment kind: {kind}")
    if amount_cents <= 0:
        raise ValidationFailed("amount_cents must be positive")
    if months < 0 or months > MAX_PAYMENT_MONTHS:
        raise ValidationFailed(f"months must be between 0 and {MAX_PAYMENT_MONTHS}")

    now = utcnow()
    billing = _locked_billing(tenant_id)

    before = after = billing.paid_through
    if months:
        before, after = _extend(billing, months, now)

    payment = BillingPayment(
        tenant_id=tenant_id,
        kind=kind,
        amount_cents=amount_cents,
        months=months,
        paid_through_before=before,
        paid_through_after=after,
        note=(note or "").strip() or None,
        recorded_by=actor.id,
        created_at=now,
    )
    db.session.add(payment)
    db.session.commit()
    return payment


def update_billing(
    actor: Account,
    tenant_id: int,
    *,
    grace_days: int | None = None,
    max_devices: int | None = None,
    locked_override: bool | None = None,
    paid_through: datetime | None = None,
) -> BillingRecord:
    """
    Edit billing limits.

    Lowering max_devices never ejects active devices; it only blocks new
    admissions until the active count drops below the new limit.
    """
    require_platform_operator(actor)
    if grace_days is not None and not 0 <= grace_days <= MAX_GRACE_DAYS:
        raise ValidationFailed(f"grace_days must be between 0 and {MAX_GRACE_DAYS}")
    if max_devices is not None and not 1 <= max_devices <= MAX_DEVICES_LIMIT:
        raise ValidationFailed(f"max_devices must be between 1 and {MAX_DEVICES_LIMIT}")

    billing = _locked_billing(tenant_id)
    changes = []

    if grace_days is not None:
        billing.grace_days = grace_days
        changes.append(f"grace_days={grace_days}")
    if max_devices is not None:
        billing.max_devices = max_devices
        changes.append(f"max_devices={max_devices}")
    if locked_override is not None:
        billing.locked_override = bool(locked_override)
        changes.append(f"locked_override={bool(locked_override)}")
    if paid_through is not None:
        billing.paid_through = paid_through
        changes.append(f"paid_through={paid_through.isoformat()}")

    billing.updated_at = utcnow()
    log_security_event(
        account_id=actor.id,
        event_type="BILLING_UPDATED",
        success=True,
        reason=", ".join(changes) or "no changes",
        tenant_id=tenant_id,
        commit=False,
    )
    db.session.commit()
    return billing


def _hash_code(code: str) -> str:
    normalized = "".join(ch for ch in code.upper() if ch.isalnum())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def _generate_code() -> str:
    raw = "".join(secrets.choice(CODE_ALPHABET) for _ in range(12))
    return f"{raw[0:4]}-{raw[4:8]}-{raw[8:12]}"


def issue_reactivation_code(actor: Account, tenant_id: int, months: int = 1) -> tuple[ReactivationCode, str]:
    """
    Issue a one-time reactivation code for a tenant.

    Returns (record, plaintext). The plaintext is never stored.
    """
    require_platform_operator(actor)
    get_tenant(tenant_id)
    if not 1 <= months <= 24:
        raise ValidationFailed("months must be between 1 and 24")

    code = _generate_code()
    record = ReactivationCode(
        tenant_id=tenant_id,
        code_hash=_hash_code(code),
        code_prefix=code[:4],
        months=months,
        is_active=True,
        issued_by=actor.id,
        issued_at=utcnow(),
    )
    db.session.add(record)
    db.session.commit()
    return record, code


def redeem_reactivation_code(account: Account, code: str) -> BillingRecord:
    """
    Redeem a reactivation code for the caller's own tenant.

    MULTI-TENANT: A code only redeems for the tenant it was issued to; the
    tenant comes from the caller's account, never the request.
    The conditional UPDATE makes the code single-use under concurrency.
    """
    if account.role != ROLE_TENANT_ADMIN or account.tenant_id is None:
        raise NotAuthorized("Only a business admin can redeem a reactivation code")

    code = (code or "").strip()
    if not code:
        raise ValidationFailed("Reactivation code is required")

    record = db.session.query(ReactivationCode).filter_by(code_hash=_hash_code(code)).first()
    if (
        record is None
        or record.tenant_id != account.tenant_id
        or not record.is_active
        or record.redeemed_at is not None
    ):
        log_security_event(
            account_id=account.id,
            event_type="REACTIVATION_CODE_REJECTED",
            success=False,
            tenant_id=account.tenant_id,
        )
        raise ValidationFailed("Invalid or already used reactivation code")

    now = utcnow()
    billing = _locked_billing(account.tenant_id)

    claimed = db.session.execute(
        update(ReactivationCode)
        .where(ReactivationCode.id == record.id, ReactivationCode.redeemed_at.is_(None))
        .values(redeemed_at=now, redeemed_by=account.id, is_active=False)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        db.session.rollback()
        raise ValidationFailed("Invalid or already used reactivation code")

    before, after = _extend(billing, record.months, now)
    db.session.add(BillingPayment(
        tenant_id=account.tenant_id,
        kind="reactivation",
        amount_cents=0,
        months=record.months,
        paid_through_before=before,
        paid_through_after=after,
        note=f"Reactivation code {record.code_prefix}",
        recorded_by=account.id,
        created_at=now,
    ))
    log_security_event(
        account_id=account.id,
        event_type="REACTIVATION_CODE_REDEEMED",
        success=True,
        reason=f"months={record.months}",
        tenant_id=account.tenant_id,
        commit=False,
    )
    db.session.commit()
    return billing


def list_payments(tenant_id: int) -> list[BillingPayment]:
    return (
        db.session.query(BillingPayment)
        .filter_by(tenant_id=tenant_id)
        .order_by(BillingPayment.created_at.desc(), BillingPayment.id.desc())
        .all()
    )
