from __future__ import annotations

from ..extensions import db
from ..time_utils import utcnow, to_utc_z


TENANT_STATUS_ACTIVE = "active"
TENANT_STATUS_SUSPENDED = "suspended"
TENANT_STATUSES = (TENANT_STATUS_ACTIVE, TENANT_STATUS_SUSPENDED)

PLAN_BUSINESS_SYSTEM = "business_system"
PLAN_APP_ONLY = "app_only"
PLAN_DEMO = "demo"
PLAN_TYPES = (PLAN_BUSINESS_SYSTEM, PLAN_APP_ONLY, PLAN_DEMO)


class Tenant(db.Model):
    """
    Multi-tenant root: every business is a Tenant.

    WHY: Accounts, devices, billing and business data all belong to exactly
    one tenant. No data may cross tenant boundaries.

    LIFECYCLE:
    - status is `active` or `suspended`; suspended tenants are always locked
    - soft delete keeps the row and records when, why and by whom
    - is_demo marks sandbox tenants; the demo sweep refuses to purge any
      tenant that is no longer flagged (a promoted tenant is never deleted)
    """
    __tablename__ = "tenants"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    plan_type = db.Column(db.String(32), nullable=False, default=PLAN_BUSINESS_SYSTEM)
    status = db.Column(db.String(16), nullable=False, default=TENANT_STATUS_ACTIVE, index=True)
    is_demo = db.Column(db.Boolean, nullable=False, default=False, index=True)

    # Soft-delete metadata (no FK on the actor: accounts may be purged later)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    deleted_reason = db.Column(db.Text, nullable=True)
    deleted_by = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    billing = db.relationship("BillingRecord", uselist=False, back_populates="tenant")

    def __repr__(self) -> str:
        return f"<Tenant id={self.id} name={self.name!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "plan_type": self.plan_type,
            "status": self.status,
            "is_demo": self.is_demo,
            "deleted_at": to_utc_z(self.deleted_at),
            "deleted_reason": self.deleted_reason,
            "deleted_by": self.deleted_by,
            "created_at": to_utc_z(self.created_at),
        }


class BillingRecord(db.Model):
    """
    Billing facts for a tenant (1:1).

    WHY: The derived access state (active / grace / locked) is a pure function
    of these facts plus trusted time. Nothing else decides access.

    INVARIANTS:
    - max_devices >= 1
    - grace_days >= 0

    SECURITY: Mutated only by platform operators (payments, limit edits,
    locks) or by automated demo provisioning. The row doubles as the per-tenant
    serialization point for device admission (see device_service).
    """
    __tablename__ = "billing_records"
    __table_args__ = (
        db.CheckConstraint("max_devices >= 1", name="ck_billing_max_devices_positive"),
        db.CheckConstraint("grace_days >= 0", name="ck_billing_grace_days_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, unique=True, index=True)

    paid_through = db.Column(db.DateTime(timezone=True), nullable=False)
    grace_days = db.Column(db.Integer, nullable=False, default=7)
    locked_override = db.Column(db.Boolean, nullable=False, default=False)
    max_devices = db.Column(db.Integer, nullable=False, default=2)

    # Bumped on every admission attempt so concurrent writers serialize on this row
    admission_seq = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    tenant = db.relationship("Tenant", back_populates="billing")

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "paid_through": to_utc_z(self.paid_through),
            "grace_days": self.grace_days,
            "locked_override": self.locked_override,
            "max_devices": self.max_devices,
            "updated_at": to_utc_z(self.updated_at),
        }


PAYMENT_KINDS = ("setup", "subscription", "annual", "reactivation", "manual")


class BillingPayment(db.Model):
    """
    Append-only ledger of recorded payments.

    Each row captures paid_through before and after the payment so billing
    history can be reconstructed without trusting the current record.
    """
    __tablename__ = "billing_payments"
    __table_args__ = (
        db.Index("ix_billing_payments_tenant_created", "tenant_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False)
    kind = db.Column(db.String(32), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False, default=0)
    months = db.Column(db.Integer, nullable=False, default=0)
    paid_through_before = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_through_after = db.Column(db.DateTime(timezone=True), nullable=True)
    note = db.Column(db.Text, nullable=True)
    recorded_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "kind": self.kind,
            "amount_cents": self.amount_cents,
            "months": self.months,
            "paid_through_before": to_utc_z(self.paid_through_before),
            "paid_through_after": to_utc_z(self.paid_through_after),
            "note": self.note,
            "recorded_by": self.recorded_by,
            "created_at": to_utc_z(self.created_at),
        }


class ReactivationCode(db.Model):
    """
    One-time reactivation code issued by a platform operator for one tenant.

    SECURITY: Only the SHA-256 of the code is stored (plus a short prefix for
    support lookups). The plaintext is shown once at issue time. Redemption
    and the paid_through extension commit in the same transaction, and a code
    only redeems for the tenant it was issued to.
    """
    __tablename__ = "reactivation_codes"
    __table_args__ = (
        db.CheckConstraint("months >= 1 AND months <= 24", name="ck_reactivation_codes_months"),
        db.Index("ix_reactivation_codes_tenant_issued", "tenant_id", "issued_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False)
    code_hash = db.Column(db.String(64), nullable=False, unique=True, index=True)
    code_prefix = db.Column(db.String(8), nullable=True)
    months = db.Column(db.Integer, nullable=False, default=1)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    issued_by = db.Column(db.Integer, nullable=True)
    issued_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    redeemed_by = db.Column(db.Integer, nullable=True)
    redeemed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "code_prefix": self.code_prefix,
            "months": self.months,
            "is_active": self.is_active,
            "issued_at": to_utc_z(self.issued_at),
            "redeemed_at": to_utc_z(self.redeemed_at),
        }
