from __future__ import annotations

from ..extensions import db
from ..time_utils import utcnow, to_utc_z


class SecurityEvent(db.Model):
    """
    Security event audit log with tenant context.

    WHY: Track login outcomes, cross-tenant denials, device-limit rejections,
    impersonation start/end and demo rate-limit hits. Critical for detecting
    abuse and for support investigations.

    IMMUTABLE: Never update. Append-only; only a tenant purge detaches rows
    from a deleted tenant.
    """
    __tablename__ = "security_events"
    __table_args__ = (
        db.Index("ix_security_events_account_type", "account_id", "event_type"),
        db.Index("ix_security_events_tenant_occurred", "tenant_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Nullable for pre-auth and platform-level events
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=True, index=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=True, index=True)

    event_type = db.Column(db.String(64), nullable=False, index=True)  # LOGIN_FAILED, DEVICE_LIMIT_REACHED, ...
    resource = db.Column(db.String(128), nullable=True)  # e.g. "/api/devices/register"
    action = db.Column(db.String(64), nullable=True)
    success = db.Column(db.Boolean, nullable=False, index=True)
    reason = db.Column(db.Text, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "account_id": self.account_id,
            "event_type": self.event_type,
            "resource": self.resource,
            "action": self.action,
            "success": self.success,
            "reason": self.reason,
            "ip_address": self.ip_address,
            "occurred_at": to_utc_z(self.occurred_at),
        }
