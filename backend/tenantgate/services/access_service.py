# Overview: Service-layer access checks; loads billing facts and applies the evaluator.

"""
Access Service

WHY: Every session-gated operation must know whether the tenant may operate
*right now*. This module loads the billing facts and delegates to the pure
evaluator in access_state, using the authority's clock as trusted time.

Grace is an allowed state (the UI warns); only `locked` refuses.
"""

from __future__ import annotations

from datetime import datetime

from ..access_state import ACCESS_LOCKED, AccessSnapshot
from ..errors import AccessLocked, NotAuthorized
from ..extensions import db
from ..models import BillingRecord, Tenant
from ..time_utils import utcnow


def get_access_snapshot(tenant_id: int, now: datetime | None = None) -> AccessSnapshot:
    """
    Load the tenant's billing facts as an AccessSnapshot evaluated at `now`.

    Raises NotAuthorized if the tenant does not exist.
    """
    tenant = db.session.get(Tenant, tenant_id)
    if tenant is None:
        raise NotAuthorized("Business not found")

    billing = db.session.query(BillingRecord).filter_by(tenant_id=tenant_id).first()
    now = now or utcnow()

    if billing is None:
        # No billing row means nothing was ever paid: locked
        return AccessSnapshot(
            tenant_id=tenant.id,
            status=tenant.status,
            locked_override=True,
            paid_through=None,
            grace_days=0,
            max_devices=1,
            evaluated_at=now,
        )

    return AccessSnapshot(
        tenant_id=tenant.id,
        status=tenant.status,
        locked_override=bool(billing.locked_override),
        paid_through=billing.paid_through,
        grace_days=int(billing.grace_days or 0),
        max_devices=int(billing.max_devices or 1),
        evaluated_at=now,
    )


def require_access(tenant_id: int, now: datetime | None = None) -> AccessSnapshot:
    """
    Return the snapshot if the tenant may operate; raise AccessLocked otherwise.
    """
    snapshot = get_access_snapshot(tenant_id, now)
    if snapshot.state == ACCESS_LOCKED:
        raise AccessLocked()
    return snapshot
