# Overview: Service-layer operations for replayed device operations; idempotent acceptance.

"""
Operation Acceptance Service

WHY: Devices queue sales, feedback and service bookings while offline and
replay them later. Delivery is at-least-once: a device may resend an
operation whose earlier attempt succeeded but whose acknowledgment was lost.

IDEMPOTENCE: Each operation carries a device-generated operation_id.
(tenant_id, operation_id) is unique in accepted_operations; a replay returns
the original result instead of writing a second sale.

MULTI-TENANT: tenant and account come from the caller's session. Product ids
in a payload must belong to that tenant.

Payload problems raise ValidationFailed, which devices treat as a definitive
per-entry rejection.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from ..errors import NotAuthorized, ValidationFailed
from ..extensions import db
from ..models import AcceptedOperation, Account, Feedback, Order, OrderItem, Product, ServiceBooking
from ..time_utils import parse_iso_datetime, utcnow
from ..validation import parse_bounded_int, require_text
from .access_service import require_access


OPERATION_KINDS = ("sale", "feedback", "booking")
PAYMENT_METHODS = ("cash", "card", "mobile", "other")
MAX_SALE_LINES = 200


@dataclass
class AcceptResult:
    operation: AcceptedOperation
    replayed: bool

    def to_dict(self) -> dict:
        data = self.operation.to_dict()
        data["replayed"] = self.replayed
        return data


def _client_time(value, now: datetime) -> datetime:
    """Client timestamps are informational; never in the future."""
    if not value:
        return now
    try:
        parsed = parse_iso_datetime(str(value))
    except ValueError:
        raise ValidationFailed("created_at must be an ISO-8601 timestamp")
    if parsed is None or parsed > now:
        return now
    return parsed


def _tenant_product(tenant_id: int, product_id) -> Product | None:
    if product_id is None:
        return None
    pid = parse_bounded_int(product_id, "product_id", 1, 2**31 - 1)
    product = db.session.query(Product).filter_by(id=pid, tenant_id=tenant_id).first()
    if product is None:
        raise ValidationFailed(f"Unknown product {pid}")
    return product


def _apply_sale(account: Account, tenant_id: int, operation_id: str, payload: dict, now: datetime) -> str:
    items = payload.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationFailed("Sale must have at least one item")
    if len(items) > MAX_SALE_LINES:
        raise ValidationFailed(f"Sale has more than {MAX_SALE_LINES} lines")

    method = str(payload.get("payment_method") or "cash").strip().lower()
    if method not in PAYMENT_METHODS:
        raise ValidationFailed(f"Unknown payment method: {method}")

    order = Order(
        tenant_id=tenant_id,
        account_id=account.id,
        client_operation_id=operation_id,
        payment_method=method,
        created_at=_client_time(payload.get("created_at"), now),
    )
    total = 0
    for raw in items:
        if not isinstance(raw, dict):
            raise ValidationFailed("Sale items must be objects")
        product = _tenant_product(tenant_id, raw.get("product_id"))
        quantity = parse_bounded_int(raw.get("quantity", 1), "quantity", 1, 10_000)
        unit_price = parse_bounded_int(
            raw.get("unit_price_cents", product.price_cents if product else None),
            "unit_price_cents",
            0,
            999_999_999,
        )
        name = require_text(raw.get("name") or (product.name if product else ""), "Item name", max_length=255)

        if product is not None and product.kind == "good" and product.stock_qty is not None:
            product.stock_qty = max(0, product.stock_qty - quantity)

        order.items.append(OrderItem(
            product_id=product.id if product else None,
            name=name,
            quantity=quantity,
            unit_price_cents=unit_price,
        ))
        total += quantity * unit_price

    order.total_cents = total
    db.session.add(order)
    db.session.flush()
    return f"order:{order.id}"


def _apply_feedback(account: Account, tenant_id: int, operation_id: str, payload: dict, now: datetime) -> str:
    message = require_text(payload.get("message"), "Message", max_length=2000)
    rating = payload.get("rating")
    if rating is not None:
        rating = parse_bounded_int(rating, "rating", 1, 5)

    feedback = Feedback(
        tenant_id=tenant_id,
        account_id=account.id,
        client_operation_id=operation_id,
        message=message,
        rating=rating,
        created_at=_client_time(payload.get("created_at"), now),
    )
    db.session.add(feedback)
    db.session.flush()
    return f"feedback:{feedback.id}"


def _apply_booking(account: Account, tenant_id: int, operation_id: str, payload: dict, now: datetime) -> str:
    customer = require_text(payload.get("customer_name"), "Customer name", max_length=255)
    try:
        scheduled_at = parse_iso_datetime(str(payload.get("scheduled_at") or ""))
    except ValueError:
        scheduled_at = None
    if scheduled_at is None:
        raise ValidationFailed("scheduled_at must be an ISO-8601 timestamp")

    product = _tenant_product(tenant_id, payload.get("product_id"))
    booking = ServiceBooking(
        tenant_id=tenant_id,
        account_id=account.id,
        client_operation_id=operation_id,
        product_id=product.id if product else None,
        customer_name=customer,
        scheduled_at=scheduled_at,
        status="booked",
    )
    db.session.add(booking)
    db.session.flush()
    return f"booking:{booking.id}"


_HANDLERS = {
    "sale": _apply_sale,
    "feedback": _apply_feedback,
    "booking": _apply_booking,
}


def _existing(tenant_id: int, operation_id: str) -> AcceptedOperation | None:
    return db.session.query(AcceptedOperation).filter_by(
        tenant_id=tenant_id, operation_id=operation_id
    ).first()


def accept_operation(
    account: Account,
    tenant_id: int | None,
    operation_id: str,
    kind: str,
    payload: dict,
) -> AcceptResult:
    """
    Durably accept one queued operation, exactly once per operation_id.

    Raises ValidationFailed for a malformed operation, AccessLocked when the
    tenant may not operate, NotAuthorized without a tenant.
    """
    if tenant_id is None:
        raise NotAuthorized("Operations require a business session")

    operation_id = require_text(operation_id, "operation_id", max_length=64)
    kind = str(kind or "").strip().lower()
    if kind not in OPERATION_KINDS:
        raise ValidationFailed(f"Unknown operation kind: {kind or '(missing)'}")
    if not isinstance(payload, dict):
        raise ValidationFailed("payload must be an object")

    existing = _existing(tenant_id, operation_id)
    if existing is not None:
        if existing.kind != kind:
            raise ValidationFailed("operation_id was already used for a different kind")
        return AcceptResult(existing, replayed=True)

    require_access(tenant_id)

    now = utcnow()
    try:
        result_ref = _HANDLERS[kind](account, tenant_id, operation_id, payload, now)
        accepted = AcceptedOperation(
            tenant_id=tenant_id,
            account_id=account.id,
            operation_id=operation_id,
            kind=kind,
            result_ref=result_ref,
            accepted_at=now,
        )
        db.session.add(accepted)
        db.session.commit()
    except IntegrityError:
        # Concurrent replay of the same operation won the insert
        db.session.rollback()
        existing = _existing(tenant_id, operation_id)
        if existing is None:
            raise
        return AcceptResult(existing, replayed=True)
    except Exception:
        db.session.rollback()
        raise

    return AcceptResult(accepted, replayed=False)
