# Overview: Service-layer operations for security events; append-only audit writes.

from __future__ import annotations

from ..extensions import db
from ..models import SecurityEvent
from ..time_utils import utcnow


def log_security_event(
    account_id: int | None,
    event_type: str,
    success: bool,
    resource: str | None = None,
    action: str | None = None,
    reason: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    tenant_id: int | None = None,
    commit: bool = True,
) -> SecurityEvent:
    """
    Log security event to audit trail with tenant context.

    MULTI-TENANT: Includes tenant_id for tenant-scoped auditing.

    Pass commit=False when the event must land in the caller's transaction
    (e.g. recorded together with a device-limit rejection or an
    impersonation audit).

    event_type examples:
    - LOGIN_SUCCESS / LOGIN_FAILED
    - AUTH_RATE_LIMITED
    - CROSS_TENANT_ACCESS_DENIED
    - DEVICE_REGISTERED / DEVICE_LIMIT_REACHED / DEVICE_DEACTIVATED
    - IMPERSONATION_STARTED / IMPERSONATION_ENDED
    - DEMO_PROVISIONED / DEMO_RATE_LIMITED / DEMO_PURGED
    """
    event = SecurityEvent(
        account_id=account_id,
        tenant_id=tenant_id,
        event_type=event_type,
        resource=resource,
        action=action,
        success=success,
        reason=reason,
        ip_address=ip_address,
        user_agent=user_agent[:512] if user_agent else None,
        occurred_at=utcnow(),
    )

    db.session.add(event)
    if commit:
        db.session.commit()

    return event
