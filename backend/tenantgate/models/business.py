from __future__ import annotations

from ..extensions import db
from ..time_utils import utcnow, to_utc_z


class StoreSettings(db.Model):
    """Per-tenant store profile shown on receipts and the dashboard."""
    __tablename__ = "store_settings"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, unique=True)
    store_name = db.Column(db.String(255), nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="USD")
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)  # Basis points
    receipt_footer = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "store_name": self.store_name,
            "currency": self.currency,
            "tax_rate_bps": self.tax_rate_bps,
            "receipt_footer": self.receipt_footer,
        }


class Product(db.Model):
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "sku", name="uq_products_tenant_sku"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    kind = db.Column(db.String(16), nullable=False, default="good")  # good | service
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    stock_qty = db.Column(db.Integer, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "sku": self.sku,
            "name": self.name,
            "kind": self.kind,
            "price_cents": self.price_cents,
            "stock_qty": self.stock_qty,
            "is_active": self.is_active,
        }


class Order(db.Model):
    """
    A completed sale.

    client_operation_id is the device-generated receipt id; it makes replayed
    sales idempotent (see AcceptedOperation).
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_tenant_created", "tenant_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=True)
    client_operation_id = db.Column(db.String(64), nullable=True)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    payment_method = db.Column(db.String(32), nullable=False, default="cash")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    items = db.relationship("OrderItem", backref="order", lazy=True, cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "account_id": self.account_id,
            "client_operation_id": self.client_operation_id,
            "total_cents": self.total_cents,
            "payment_method": self.payment_method,
            "created_at": to_utc_z(self.created_at),
            "items": [item.to_dict() for item in self.items],
        }


class OrderItem(db.Model):
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)
    name = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price_cents = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
        }


class Expense(db.Model):
    __tablename__ = "expenses"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    category = db.Column(db.String(64), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    note = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class ServiceBooking(db.Model):
    __tablename__ = "service_bookings"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=True)
    client_operation_id = db.Column(db.String(64), nullable=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)
    customer_name = db.Column(db.String(255), nullable=False)
    scheduled_at = db.Column(db.DateTime(timezone=True), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="booked")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "customer_name": self.customer_name,
            "scheduled_at": to_utc_z(self.scheduled_at),
            "status": self.status,
        }


class Feedback(db.Model):
    __tablename__ = "feedback"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=True)
    client_operation_id = db.Column(db.String(64), nullable=True)
    message = db.Column(db.Text, nullable=False)
    rating = db.Column(db.Integer, nullable=True)
    status = db.Column(db.String(16), nullable=False, default="new")  # new | triaged | in_progress | done
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class AcceptedOperation(db.Model):
    """
    Idempotency ledger for operations replayed from device queues.

    WHY: Devices deliver queued operations at-least-once. A retry of an
    operation whose acknowledgment was lost must not create a second sale.
    (tenant_id, operation_id) is unique; a replay returns the original result.
    """
    __tablename__ = "accepted_operations"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "operation_id", name="uq_accepted_operations_tenant_op"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=True)
    operation_id = db.Column(db.String(64), nullable=False)
    kind = db.Column(db.String(16), nullable=False)
    result_ref = db.Column(db.String(64), nullable=True)  # e.g. "order:12"
    accepted_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "operation_id": self.operation_id,
            "kind": self.kind,
            "result_ref": self.result_ref,
            "accepted_at": to_utc_z(self.accepted_at),
        }
