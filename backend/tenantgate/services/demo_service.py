# Overview: Service-layer operations for demo tenants; rate-limited provisioning and purge sweeps.

"""
Demo Tenant Lifecycle Service

WHY: Prospects get a fully working, seeded sandbox business without signing
up. Sandboxes must be cheap to abuse-proof and must disappear on their own.

PROVISIONING (provision_demo):
1. Hash the caller's origin with DEMO_IP_HASH_SALT (raw IPs are never stored)
2. Serialize on the origin's DemoOriginLock row, count sessions created in the
   rolling window, and reserve a DemoSession row in the same transaction
   (max DEMO_RATE_LIMIT_MAX, or 1 when the origin is unknown)
3. Opportunistically sweep a few expired sandboxes (never blocks provisioning)
4. Create tenant (is_demo), billing (paid_through = expiry, no grace), one
   tenant_admin account with a random password, and seed data, in one
   transaction
5. Return username/password/expiry once; the password is never logged

On failure the transaction rolls back, any committed tenant data is purged
best-effort, and the reservation is released.

SWEEP (sweep_expired): purges expired sandboxes whose tenant is still flagged
is_demo. A tenant that was promoted to a real business is never touched.
Each sandbox is purged in its own transaction; a failure is recorded on the
DemoSession row and retried on the next sweep.
"""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from ..errors import RateLimited
from ..extensions import db
from ..models import (
    AcceptedOperation,
    Account,
    BillingPayment,
    BillingRecord,
    DemoOriginLock,
    DemoSession,
    DeviceRecord,
    ExchangeToken,
    Expense,
    Feedback,
    ImpersonationAuditRecord,
    Order,
    OrderItem,
    Product,
    ReactivationCode,
    SecurityEvent,
    ServiceBooking,
    SessionToken,
    StoreSettings,
    Tenant,
)
from ..models.auth import ROLE_TENANT_ADMIN
from ..models.tenancy import PLAN_BUSINESS_SYSTEM
from ..time_utils import to_utc_z, utcnow
from ..validation import clamp_int, hash_origin
from . import seed_data
from .auth_service import create_account, detach_account_references
from .concurrency import run_with_retry
from .security_service import log_security_event
from .tenant_service import create_tenant


SHORT_ID_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
USERNAME_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"
PASSWORD_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnpqrstuvwxyz23456789!@#$%^&*"


class DemoConfigurationError(RuntimeError):
    """Raised when demo provisioning is not configured on this server."""


@dataclass
class DemoCredentials:
    username: str
    password: str
    expires_at: datetime
    tenant_id: int

    def to_dict(self) -> dict:
        return {
            "username": self.username,
            "password": self.password,
            "expires_at": to_utc_z(self.expires_at),
        }


@dataclass
class SweepReport:
    purged: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"purged": list(self.purged), "failed": list(self.failed)}


def _random_string(length: int, alphabet: str) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


def _generate_password() -> str:
    while True:
        candidate = _random_string(18, PASSWORD_ALPHABET)
        if re.search(r"[A-Za-z]", candidate) and re.search(r"\d", candidate):
            return candidate


def sanitize_email(raw) -> str | None:
    value = str(raw or "").strip().lower()
    if not value or len(value) > 254:
        return None
    if "@" not in value or "." not in value:
        return None
    return value


def _limits() -> dict:
    cfg = current_app.config
    return {
        "window_minutes": clamp_int(cfg.get("DEMO_RATE_LIMIT_WINDOW_MINUTES"), 1, 24 * 60, 24 * 60),
        "max_per_window": clamp_int(cfg.get("DEMO_RATE_LIMIT_MAX"), 1, 50, 3),
        "ttl_hours": clamp_int(cfg.get("DEMO_TTL_HOURS"), 1, 72, 24),
        "max_devices": clamp_int(cfg.get("DEMO_MAX_DEVICES"), 1, 50, 10),
        "sweep_batch": clamp_int(cfg.get("DEMO_SWEEP_BATCH"), 1, 100, 10),
    }


def _lock_origin(ip_hash: str) -> None:
    """Take the per-origin write lock, creating the lock row on first use."""
    bumped = db.session.execute(
        update(DemoOriginLock)
        .where(DemoOriginLock.ip_hash == ip_hash)
        .values(seq=DemoOriginLock.seq + 1)
        .execution_options(synchronize_session=False)
    )
    if bumped.rowcount:
        return
    try:
        with db.session.begin_nested():
            db.session.add(DemoOriginLock(ip_hash=ip_hash, seq=1))
    except IntegrityError:
        # Another request created it first; queue behind it
        db.session.execute(
            update(DemoOriginLock)
            .where(DemoOriginLock.ip_hash == ip_hash)
            .values(seq=DemoOriginLock.seq + 1)
            .execution_options(synchronize_session=False)
        )


def reserve_demo_slot(
    ip_hash: str,
    origin_known: bool,
    email: str | None,
    now: datetime,
) -> DemoSession:
    """
    Atomic rate-limit check and insert.

    Counts this origin's sessions in the window under the origin lock and
    inserts the reservation in the same transaction. Raises RateLimited.
    """
    limits = _limits()
    effective_max = limits["max_per_window"] if origin_known else min(limits["max_per_window"], 1)
    since = now - timedelta(minutes=limits["window_minutes"])
    expires_at = now + timedelta(hours=limits["ttl_hours"])

    def _reserve() -> DemoSession:
        _lock_origin(ip_hash)
        recent = db.session.query(DemoSession).filter(
            DemoSession.ip_hash == ip_hash,
            DemoSession.created_at >= since,
        ).count()
        if recent >= effective_max:
            db.session.rollback()
            log_security_event(
                account_id=None,
                event_type="DEMO_RATE_LIMITED",
                success=False,
                reason=f"{recent} demo sessions in {limits['window_minutes']} minutes",
            )
            raise RateLimited("Too many demo sessions from this network. Try again later.")

        reservation = DemoSession(ip_hash=ip_hash, email=email, created_at=now, expires_at=expires_at)
        db.session.add(reservation)
        db.session.commit()
        return reservation

    return run_with_retry(_reserve, attempts=5)


def purge_tenant_data(tenant_id: int) -> None:
    """
    Delete a tenant and everything that hangs off it (no commit).

    Order matters for FK constraints: children before parents.
    """
    account_ids = [row.id for row in db.session.query(Account.id).filter(Account.tenant_id == tenant_id)]
    order_ids = db.session.query(Order.id).filter(Order.tenant_id == tenant_id)

    db.session.query(OrderItem).filter(OrderItem.order_id.in_(order_ids.scalar_subquery())).delete(
        synchronize_session=False
    )
    for model in (
        Order,
        ServiceBooking,
        Expense,
        Feedback,
        AcceptedOperation,
        Product,
        StoreSettings,
        DeviceRecord,
        BillingPayment,
        ReactivationCode,
    ):
        db.session.query(model).filter(model.tenant_id == tenant_id).delete(synchronize_session=False)

    detach_account_references(account_ids)
    db.session.query(SessionToken).filter(SessionToken.tenant_id == tenant_id).delete(synchronize_session=False)
    db.session.query(ExchangeToken).filter(ExchangeToken.tenant_id == tenant_id).delete(synchronize_session=False)
    db.session.query(ImpersonationAuditRecord).filter(
        ImpersonationAuditRecord.target_tenant_id == tenant_id
    ).delete(synchronize_session=False)
    db.session.query(SecurityEvent).filter(SecurityEvent.tenant_id == tenant_id).update(
        {SecurityEvent.tenant_id: None}, synchronize_session=False
    )
    if account_ids:
        db.session.query(Account).filter(Account.id.in_(account_ids)).delete(synchronize_session=False)
    db.session.query(BillingRecord).filter(BillingRecord.tenant_id == tenant_id).delete(synchronize_session=False)
    db.session.query(Tenant).filter(Tenant.id == tenant_id).delete(synchronize_session=False)


def _create_demo_admin(tenant_id: int, password: str) -> Account:
    # Random collisions are astronomically unlikely; retry a few times anyway
    for _ in range(6):
        candidate = f"demo_{_random_string(8, USERNAME_ALPHABET)}"
        if db.session.query(Account.id).filter_by(username=candidate).first():
            continue
        return create_account(
            username=candidate,
            password=password,
            role=ROLE_TENANT_ADMIN,
            tenant_id=tenant_id,
            display_name="Demo Admin",
            commit=False,
            allow_reserved=True,
        )
    raise RuntimeError("Failed to provision demo user")


def _seed_best_effort(label: str, fn, *args) -> None:
    try:
        with db.session.begin_nested():
            fn(*args)
    except Exception:
        current_app.logger.warning("Demo seed step %s failed; continuing", label, exc_info=True)


def provision_demo(
    ip_address: str | None,
    email: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> DemoCredentials:
    """
    Provision a sandbox tenant for an anonymous caller.

    Raises RateLimited when the origin is over quota, DemoConfigurationError
    when DEMO_IP_HASH_SALT is not set.
    """
    salt = str(current_app.config.get("DEMO_IP_HASH_SALT") or "").strip()
    if not salt:
        raise DemoConfigurationError("Server misconfigured (missing DEMO_IP_HASH_SALT)")

    now = now or utcnow()
    origin_known = bool((ip_address or "").strip())
    ip_hash = hash_origin(ip_address, salt)
    email = sanitize_email(email)

    reservation = reserve_demo_slot(ip_hash, origin_known, email, now)
    reservation_id = reservation.id
    expires_at = reservation.expires_at

    try:
        sweep_expired(now=now)
    except Exception:
        db.session.rollback()
        current_app.logger.warning("Opportunistic demo sweep failed", exc_info=True)

    limits = _limits()
    tenant_id = None
    try:
        store_name = f"Demo Business {_random_string(6, SHORT_ID_ALPHABET)}"
        tenant = create_tenant(
            store_name,
            PLAN_BUSINESS_SYSTEM,
            is_demo=True,
            paid_through=expires_at,
            grace_days=0,
            max_devices=limits["max_devices"],
            commit=False,
        )
        tenant_id = tenant.id

        password = _generate_password()
        account = _create_demo_admin(tenant.id, password)

        seed_data.seed_store(tenant.id, store_name)
        products = seed_data.seed_catalog(tenant.id)
        seed_data.seed_orders(tenant.id, account.id, products, now)
        _seed_best_effort("expenses", seed_data.seed_expenses, tenant.id, now)
        _seed_best_effort("bookings", seed_data.seed_bookings, tenant.id, products, now)

        session_row = db.session.get(DemoSession, reservation_id)
        session_row.tenant_id = tenant.id
        session_row.account_id = account.id

        log_security_event(
            account_id=account.id,
            event_type="DEMO_PROVISIONED",
            success=True,
            user_agent=user_agent,
            tenant_id=tenant.id,
            commit=False,
        )
        db.session.commit()

        return DemoCredentials(
            username=account.username,
            password=password,
            expires_at=expires_at,
            tenant_id=tenant.id,
        )
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Demo provisioning failed; rolling back")
        _rollback_provisioning(tenant_id, reservation_id)
        raise


def _rollback_provisioning(tenant_id: int | None, reservation_id: int) -> None:
    """Best-effort cleanup after a failed provision."""
    try:
        if tenant_id is not None and db.session.get(Tenant, tenant_id) is not None:
            purge_tenant_data(tenant_id)
        db.session.query(DemoSession).filter(DemoSession.id == reservation_id).delete(
            synchronize_session=False
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.warning("Demo rollback incomplete for reservation %s", reservation_id, exc_info=True)


def sweep_expired(now: datetime | None = None, limit: int | None = None) -> SweepReport:
    """
    Purge expired, unpurged sandboxes (bounded batch, oldest expiry first).

    Sessions whose tenant is no longer flagged is_demo are excluded and left
    untouched.
    """
    now = now or utcnow()
    limit = limit or _limits()["sweep_batch"]
    report = SweepReport()

    candidates = (
        db.session.query(DemoSession.id, DemoSession.tenant_id)
        .outerjoin(Tenant, Tenant.id == DemoSession.tenant_id)
        .filter(
            DemoSession.purged_at.is_(None),
            DemoSession.expires_at <= now,
            or_(Tenant.id.is_(None), Tenant.is_demo.is_(True)),
        )
        .order_by(DemoSession.expires_at.asc())
        .limit(limit)
        .all()
    )

    for session_id, tenant_id in candidates:
        try:
            if tenant_id is not None:
                tenant = db.session.get(Tenant, tenant_id)
                if tenant is not None:
                    if not tenant.is_demo:
                        # Promoted to a real business: never delete
                        continue
                    purge_tenant_data(tenant_id)

            db.session.query(DemoSession).filter(DemoSession.id == session_id).update(
                {DemoSession.purged_at: now, DemoSession.last_error: None},
                synchronize_session=False,
            )
            log_security_event(
                account_id=None,
                event_type="DEMO_PURGED",
                success=True,
                resource=f"demo_session:{session_id}",
                commit=False,
            )
            db.session.commit()
            report.purged.append(session_id)
        except Exception as exc:
            db.session.rollback()
            report.failed.append(session_id)
            current_app.logger.warning("Demo sweep failed for session %s: %s", session_id, exc)
            _record_sweep_error(session_id, str(exc))

    return report


def _record_sweep_error(session_id: int, message: str) -> None:
    try:
        db.session.query(DemoSession).filter(DemoSession.id == session_id).update(
            {DemoSession.last_error: message[:2000]}, synchronize_session=False
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.warning("Could not record sweep error for session %s", session_id)
