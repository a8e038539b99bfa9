# Overview: Service-layer operations for device licensing; atomic count-and-admit.

"""
Device License Service

WHY: Each tenant may run at most BillingRecord.max_devices concurrently
active devices. Registration is the authority's count-and-admit operation.

CONCURRENCY: Count-then-admit is a read-then-write sequence. It runs inside
one transaction that first takes the tenant's billing-row write lock
(concurrency.lock_tenant_billing_row), so two simultaneous registrations for
the same tenant are serialized and can never both pass the cap.

POLICY:
- First-come-first-served; an older device is never ejected automatically
- A device that is already active is re-admitted (last_seen refreshed) without
  counting against the cap twice
- Deactivation clears is_active but keeps the row (history)
- Platform operators, and impersonation sessions acting for them, bypass
  the cap and create no device rows
"""

from __future__ import annotations

from dataclasses import dataclass

from ..errors import NotAuthorized, ValidationFailed
from ..extensions import db
from ..models import Account, BillingRecord, DeviceRecord
from ..models.auth import ROLE_PLATFORM_OPERATOR, ROLE_TENANT_ADMIN
from ..time_utils import utcnow
from .concurrency import lock_for_update, lock_tenant_billing_row, run_with_retry
from .security_service import log_security_event
from .tenant_service import require_tenant_scope


MAX_DEVICE_ID_LENGTH = 128


@dataclass
class RegistrationResult:
    allowed: bool
    device: DeviceRecord | None
    active_devices: int
    max_devices: int
    bypass: bool = False

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "bypass": self.bypass,
            "active_devices": self.active_devices,
            "max_devices": self.max_devices,
            "device": self.device.to_dict() if self.device else None,
        }


def _clean_device_id(device_id: str | None) -> str:
    device_id = str(device_id or "").strip()
    if not device_id:
        raise ValidationFailed("device_id is required")
    if len(device_id) > MAX_DEVICE_ID_LENGTH:
        raise ValidationFailed(f"device_id must be at most {MAX_DEVICE_ID_LENGTH} characters")
    return device_id


def bypasses_device_cap(account: Account, impersonation_audit_id: int | None = None) -> bool:
    return (
        account.role == ROLE_PLATFORM_OPERATOR
        or account.is_support
        or impersonation_audit_id is not None
    )


def count_active_devices(tenant_id: int) -> int:
    return db.session.query(DeviceRecord).filter(
        DeviceRecord.tenant_id == tenant_id,
        DeviceRecord.is_active.is_(True),
    ).count()


def register_device(
    account: Account,
    tenant_id: int | None,
    device_id: str,
    platform: str | None = None,
    label: str | None = None,
    *,
    impersonation_audit_id: int | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> RegistrationResult:
    """
    Count currently active devices for the tenant and admit or reject.

    Returns RegistrationResult(allowed=False) when admitting this device
    would exceed max_devices; nothing is written for the device in that case.

    MULTI-TENANT: tenant_id is the caller's session tenant.
    """
    device_id = _clean_device_id(device_id)
    platform = (platform or "").strip()[:32] or None
    label = (label or "").strip()[:128] or None

    if bypasses_device_cap(account, impersonation_audit_id):
        return RegistrationResult(allowed=True, device=None, active_devices=0, max_devices=0, bypass=True)

    if tenant_id is None:
        raise NotAuthorized("Session has no business")

    def _admit() -> RegistrationResult:
        if not lock_tenant_billing_row(tenant_id):
            raise ValidationFailed("Business has no billing record")

        billing = (
            db.session.query(BillingRecord)
            .filter_by(tenant_id=tenant_id)
            .execution_options(populate_existing=True)
            .one()
        )
        device = lock_for_update(
            db.session.query(DeviceRecord)
            .filter_by(tenant_id=tenant_id, device_id=device_id)
            .execution_options(populate_existing=True)
        ).first()
        now = utcnow()

        if device is not None and device.is_active:
            device.last_seen_at = now
            device.platform = platform or device.platform
            device.label = label or device.label
            active = count_active_devices(tenant_id)
            db.session.commit()
            return RegistrationResult(True, device, active, billing.max_devices)

        active = count_active_devices(tenant_id)
        if active >= billing.max_devices:
            log_security_event(
                account_id=account.id,
                event_type="DEVICE_LIMIT_REACHED",
                success=False,
                resource=device_id,
                reason=f"{active} of {billing.max_devices} devices active",
                ip_address=ip_address,
                user_agent=user_agent,
                tenant_id=tenant_id,
                commit=False,
            )
            db.session.commit()
            return RegistrationResult(False, None, active, billing.max_devices)

        if device is None:
            device = DeviceRecord(
                tenant_id=tenant_id,
                device_id=device_id,
                registered_at=now,
            )
            db.session.add(device)

        device.is_active = True
        device.platform = platform or device.platform
        device.label = label or device.label
        device.registered_by = account.id
        device.last_seen_at = now
        device.deactivated_at = None
        device.deactivated_by = None

        log_security_event(
            account_id=account.id,
            event_type="DEVICE_REGISTERED",
            success=True,
            resource=device_id,
            ip_address=ip_address,
            user_agent=user_agent,
            tenant_id=tenant_id,
            commit=False,
        )
        db.session.commit()
        return RegistrationResult(True, device, active + 1, billing.max_devices)

    return run_with_retry(_admit, attempts=5)


def list_devices(tenant_id: int, include_inactive: bool = True) -> list[DeviceRecord]:
    query = db.session.query(DeviceRecord).filter(DeviceRecord.tenant_id == tenant_id)
    if not include_inactive:
        query = query.filter(DeviceRecord.is_active.is_(True))
    return query.order_by(DeviceRecord.is_active.desc(), DeviceRecord.last_seen_at.desc()).all()


def deactivate_device(
    account: Account,
    session_tenant_id: int | None,
    record_id: int,
    ip_address: str | None = None,
) -> DeviceRecord:
    """
    Free a device slot. Tenant admins may deactivate devices of their own
    tenant; platform operators any tenant. The row is kept.
    """
    device = db.session.get(DeviceRecord, record_id)
    if device is None:
        raise ValidationFailed("Device not found")

    if account.role not in (ROLE_PLATFORM_OPERATOR, ROLE_TENANT_ADMIN):
        raise NotAuthorized("Admins only")
    require_tenant_scope(account, session_tenant_id, device.tenant_id, f"device:{record_id}", ip_address)

    if device.is_active:
        device.is_active = False
        device.deactivated_at = utcnow()
        device.deactivated_by = account.id
        log_security_event(
            account_id=account.id,
            event_type="DEVICE_DEACTIVATED",
            success=True,
            resource=device.device_id,
            ip_address=ip_address,
            tenant_id=device.tenant_id,
            commit=False,
        )
        db.session.commit()

    return device
