"""
Multi-Tenant Service: Tenant Lifecycle, Scoping and Platform Views

WHY: Centralize tenant validation logic for reuse across services and routes.
Every request is scoped to the tenant captured in the caller's session, and
cross-tenant access is explicitly denied and logged.

SECURITY INVARIANTS:
1. Tenant context comes from the verified session, never the request body
2. Only platform operators act across tenants
3. Cross-tenant attempts are logged as CROSS_TENANT_ACCESS_DENIED
4. Platform views exclude demo tenants
"""

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import case, func, select

from ..access_state import ACCESS_GRACE, ACCESS_LOCKED, evaluate_access_state
from ..errors import NotAuthorized, ValidationFailed
from ..extensions import db
from ..models import (
    Account,
    BillingPayment,
    BillingRecord,
    DeviceRecord,
    Feedback,
    Order,
    Tenant,
)
from ..models.auth import ROLE_PLATFORM_OPERATOR
from ..models.tenancy import (
    PLAN_APP_ONLY,
    PLAN_BUSINESS_SYSTEM,
    PLAN_TYPES,
    TENANT_STATUS_ACTIVE,
    TENANT_STATUS_SUSPENDED,
)
from ..time_utils import to_utc_z, utcnow
from .concurrency import lock_for_update
from .security_service import log_security_event


def require_platform_operator(account: Account) -> None:
    if account is None or account.role != ROLE_PLATFORM_OPERATOR:
        raise NotAuthorized("Platform operators only")


def require_tenant_scope(
    account: Account,
    session_tenant_id: int | None,
    tenant_id: int,
    resource: str | None = None,
    ip_address: str | None = None,
) -> None:
    """
    Validate that the caller may act on `tenant_id`.

    SECURITY: Core tenant isolation check. Platform operators pass; everyone
    else must match the tenant captured in their session.
    """
    if account.role == ROLE_PLATFORM_OPERATOR:
        return
    if session_tenant_id is not None and session_tenant_id == tenant_id:
        return

    log_security_event(
        account_id=account.id,
        event_type="CROSS_TENANT_ACCESS_DENIED",
        success=False,
        resource=resource,
        reason=f"Session tenant {session_tenant_id} attempted access to tenant {tenant_id}",
        ip_address=ip_address,
        tenant_id=session_tenant_id,
    )
    raise NotAuthorized("Not allowed")


def get_tenant(tenant_id: int) -> Tenant:
    tenant = db.session.get(Tenant, tenant_id)
    if tenant is None:
        raise ValidationFailed("Business not found")
    return tenant


def default_billing_terms(plan_type: str, now: datetime) -> dict:
    """
    Starting billing facts for a new tenant.

    - app_only: 30 day trial paid up front, 5 grace days
    - business_system: paid_through starts at creation (grace applies), 7 grace days
    """
    cfg = current_app.config
    if plan_type == PLAN_APP_ONLY:
        return {
            "paid_through": now + timedelta(days=30),
            "grace_days": int(cfg.get("APP_ONLY_GRACE_DAYS", 5)),
            "max_devices": int(cfg.get("DEFAULT_MAX_DEVICES", 2)),
        }
    return {
        "paid_through": now,
        "grace_days": int(cfg.get("DEFAULT_GRACE_DAYS", 7)),
        "max_devices": int(cfg.get("DEFAULT_MAX_DEVICES", 2)),
    }


def create_tenant(
    name: str,
    plan_type: str = PLAN_BUSINESS_SYSTEM,
    *,
    is_demo: bool = False,
    paid_through: datetime | None = None,
    grace_days: int | None = None,
    max_devices: int | None = None,
    commit: bool = True,
) -> Tenant:
    """
    Create a tenant together with its billing record.

    Explicit billing arguments override the plan defaults (demo provisioning
    uses this to pin paid_through to the sandbox expiry with no grace).
    """
    name = (name or "").strip()
    if not name:
        raise ValidationFailed("Business name is required")
    if plan_type not in PLAN_TYPES:
        raise ValidationFailed(f"Unknown plan type: {plan_type}")

    now = utcnow()
    terms = default_billing_terms(plan_type, now)
    if paid_through is not None:
        terms["paid_through"] = paid_through
    if grace_days is not None:
        terms["grace_days"] = grace_days
    if max_devices is not None:
        terms["max_devices"] = max_devices

    if terms["max_devices"] < 1:
        raise ValidationFailed("max_devices must be at least 1")
    if terms["grace_days"] < 0:
        raise ValidationFailed("grace_days must be >= 0")

    tenant = Tenant(name=name, plan_type=plan_type, is_demo=is_demo, status=TENANT_STATUS_ACTIVE)
    db.session.add(tenant)
    db.session.flush()

    db.session.add(BillingRecord(tenant_id=tenant.id, locked_override=False, **terms))

    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return tenant


def soft_delete_tenant(actor: Account, tenant_id: int, reason: str | None = None) -> Tenant:
    """
    Soft-delete a tenant.

    Suspends the tenant, locks billing, deactivates every non-operator
    account and every device, and records reason/actor/timestamp.
    Rows are kept so the tenant can be restored.
    """
    require_platform_operator(actor)
    tenant = lock_for_update(db.session.query(Tenant).filter_by(id=tenant_id)).first()
    if tenant is None:
        raise ValidationFailed("Business not found")

    now = utcnow()
    tenant.status = TENANT_STATUS_SUSPENDED
    tenant.deleted_at = now
    tenant.deleted_reason = (reason or "").strip() or None
    tenant.deleted_by = actor.id

    db.session.query(BillingRecord).filter_by(tenant_id=tenant_id).update(
        {BillingRecord.locked_override: True, BillingRecord.updated_at: now},
        synchronize_session=False,
    )
    db.session.query(Account).filter(
        Account.tenant_id == tenant_id,
        Account.role != ROLE_PLATFORM_OPERATOR,
    ).update({Account.is_active: False, Account.updated_at: now}, synchronize_session=False)
    db.session.query(DeviceRecord).filter(
        DeviceRecord.tenant_id == tenant_id,
        DeviceRecord.is_active.is_(True),
    ).update(
        {
            DeviceRecord.is_active: False,
            DeviceRecord.deactivated_at: now,
            DeviceRecord.deactivated_by: actor.id,
        },
        synchronize_session=False,
    )

    log_security_event(
        account_id=actor.id,
        event_type="TENANT_SOFT_DELETED",
        success=True,
        reason=tenant.deleted_reason,
        tenant_id=tenant_id,
        commit=False,
    )
    db.session.commit()
    return tenant


def restore_tenant(actor: Account, tenant_id: int) -> Tenant:
    """
    Undo a soft delete: reactivate the tenant and clear the billing lock.

    Accounts and devices stay deactivated; admins re-enable them explicitly.
    """
    require_platform_operator(actor)
    tenant = lock_for_update(db.session.query(Tenant).filter_by(id=tenant_id)).first()
    if tenant is None:
        raise ValidationFailed("Business not found")

    now = utcnow()
    tenant.status = TENANT_STATUS_ACTIVE
    tenant.deleted_at = None
    tenant.deleted_reason = None
    tenant.deleted_by = None

    db.session.query(BillingRecord).filter_by(tenant_id=tenant_id).update(
        {BillingRecord.locked_override: False, BillingRecord.updated_at: now},
        synchronize_session=False,
    )

    log_security_event(
        account_id=actor.id,
        event_type="TENANT_RESTORED",
        success=True,
        tenant_id=tenant_id,
        commit=False,
    )
    db.session.commit()
    return tenant


def list_tenant_health(now: datetime | None = None) -> list[dict]:
    """
    Per-tenant health for the platform console (demo tenants excluded).

    Newest tenants first.
    """
    now = now or utcnow()

    devices = dict(
        (row.tenant_id, row)
        for row in db.session.query(
            DeviceRecord.tenant_id,
            func.sum(case((DeviceRecord.is_active.is_(True), 1), else_=0)).label("active_devices"),
            func.max(DeviceRecord.last_seen_at).label("last_seen_at"),
        ).group_by(DeviceRecord.tenant_id)
    )
    last_orders = dict(
        db.session.query(Order.tenant_id, func.max(Order.created_at)).group_by(Order.tenant_id).all()
    )

    rows = (
        db.session.query(Tenant, BillingRecord)
        .outerjoin(BillingRecord, BillingRecord.tenant_id == Tenant.id)
        .filter(Tenant.is_demo.is_(False))
        .order_by(Tenant.created_at.desc(), Tenant.id.desc())
        .all()
    )

    result = []
    for tenant, billing in rows:
        dev = devices.get(tenant.id)
        if billing is None:
            state = ACCESS_LOCKED
        else:
            state = evaluate_access_state(
                tenant.status, billing.locked_override, billing.paid_through, billing.grace_days, now
            )
        result.append({
            "tenant_id": tenant.id,
            "name": tenant.name,
            "status": tenant.status,
            "plan_type": tenant.plan_type or PLAN_BUSINESS_SYSTEM,
            "paid_through": to_utc_z(billing.paid_through) if billing else None,
            "grace_days": billing.grace_days if billing else None,
            "locked_override": billing.locked_override if billing else None,
            "max_devices": billing.max_devices if billing else None,
            "active_devices": int(dev.active_devices or 0) if dev else 0,
            "last_seen_at": to_utc_z(dev.last_seen_at) if dev else None,
            "last_order_at": to_utc_z(last_orders.get(tenant.id)),
            "deleted_at": to_utc_z(tenant.deleted_at),
            "access_state": state,
        })
    return result


def platform_kpis(now: datetime | None = None) -> dict:
    """Aggregate counters for the platform console (demo tenants excluded)."""
    now = now or utcnow()
    health = list_tenant_health(now)

    real_tenants = db.session.query(Tenant.id).filter(Tenant.is_demo.is_(False)).subquery()

    payments = db.session.query(
        func.coalesce(func.sum(BillingPayment.amount_cents), 0),
        func.count(BillingPayment.id),
    ).filter(
        BillingPayment.tenant_id.in_(select(real_tenants.c.id)),
        BillingPayment.created_at >= now - timedelta(days=30),
    ).one()

    orders = db.session.query(
        func.count(Order.id),
        func.coalesce(func.sum(Order.total_cents), 0),
    ).filter(
        Order.tenant_id.in_(select(real_tenants.c.id)),
        Order.created_at >= now - timedelta(days=7),
    ).one()

    feedback_new = db.session.query(func.count(Feedback.id)).filter(
        Feedback.tenant_id.in_(select(real_tenants.c.id)),
        Feedback.status == "new",
    ).scalar()
    feedback_open = db.session.query(func.count(Feedback.id)).filter(
        Feedback.tenant_id.in_(select(real_tenants.c.id)),
        Feedback.status.in_(("new", "triaged", "in_progress")),
    ).scalar()

    seen_24h = db.session.query(func.count(DeviceRecord.id)).filter(
        DeviceRecord.tenant_id.in_(select(real_tenants.c.id)),
        DeviceRecord.last_seen_at >= now - timedelta(hours=24),
    ).scalar()

    return {
        "tenants": {
            "total": len(health),
            "active": sum(1 for h in health if h["status"] == TENANT_STATUS_ACTIVE),
            "suspended": sum(1 for h in health if h["status"] == TENANT_STATUS_SUSPENDED),
            "locked": sum(1 for h in health if h["access_state"] == ACCESS_LOCKED),
            "grace": sum(1 for h in health if h["access_state"] == ACCESS_GRACE),
        },
        "payments_30d": {"total_cents": int(payments[0] or 0), "count": int(payments[1] or 0)},
        "orders_7d": {"count": int(orders[0] or 0), "total_cents": int(orders[1] or 0)},
        "feedback": {"new": int(feedback_new or 0), "open": int(feedback_open or 0)},
        "devices": {
            "active": sum(h["active_devices"] for h in health),
            "seen_24h": int(seen_24h or 0),
        },
    }
