from __future__ import annotations

from ..extensions import db
from ..time_utils import utcnow, to_utc_z


class DeviceRecord(db.Model):
    """
    A physical device licensed to a tenant.

    WHY: Enforces "at most max_devices concurrently active devices per tenant".
    Activation is first-come-first-served; nothing ejects an older device.
    A human deactivates one to free a slot.

    HISTORY: Rows are never hard-deleted while the tenant exists. Deactivation
    clears is_active and stamps who/when; re-registering the same device id
    later reactivates the same row (subject to the cap).
    """
    __tablename__ = "device_records"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "device_id", name="uq_device_records_tenant_device"),
        db.Index("ix_device_records_tenant_active", "tenant_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    device_id = db.Column(db.String(128), nullable=False)
    platform = db.Column(db.String(32), nullable=True)
    label = db.Column(db.String(128), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    registered_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    registered_by = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=True)
    last_seen_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    deactivated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    deactivated_by = db.Column(db.Integer, nullable=True)

    def __repr__(self) -> str:
        return f"<DeviceRecord tenant_id={self.tenant_id} device_id={self.device_id!r} active={self.is_active}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "device_id": self.device_id,
            "platform": self.platform,
            "label": self.label,
            "is_active": self.is_active,
            "registered_at": to_utc_z(self.registered_at),
            "last_seen_at": to_utc_z(self.last_seen_at),
            "deactivated_at": to_utc_z(self.deactivated_at),
        }
