from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class ImpersonationAuditRecord(db.Model):
    """
    Audit trail for support impersonation.

    RECORD-THEN-ACT: The row is inserted in the same transaction that mints
    the one-time exchange token, so an audit exists even if the operator's
    client crashes right after. ended_at stays NULL until the operator returns
    or the record is force-closed.

    IMMUTABLE apart from ended_at / end_reason.
    """
    __tablename__ = "impersonation_audit_records"
    __table_args__ = (
        db.Index("ix_impersonation_audit_open", "operator_id", "ended_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    operator_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False, index=True)
    target_tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    target_role = db.Column(db.String(32), nullable=False)
    support_account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=True)
    reason = db.Column(db.Text, nullable=False)

    started_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ended_at = db.Column(db.DateTime(timezone=True), nullable=True)
    end_reason = db.Column(db.String(64), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operator_id": self.operator_id,
            "target_tenant_id": self.target_tenant_id,
            "target_role": self.target_role,
            "reason": self.reason,
            "started_at": to_utc_z(self.started_at),
            "expires_at": to_utc_z(self.expires_at),
            "ended_at": to_utc_z(self.ended_at),
            "end_reason": self.end_reason,
        }
