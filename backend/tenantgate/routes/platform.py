# Overview: Flask API routes for platform operators (tenants, billing, impersonation, demo ops); parses input and returns JSON responses.

"""
Platform Console API Routes

WHY: Platform operators own billing facts, device limits, tenant lifecycle
and support impersonation. Nothing here is reachable by a tenant session.

SECURITY:
- Every route requires a platform operator session that is not itself an
  impersonation (support accounts are tenant roles and fail the role check)
- Billing writes lock the tenant's billing row
- Impersonation start writes the audit record and the one-time exchange
  token in one transaction
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import client_ip, json_body, require_auth, require_platform_operator
from ..errors import AccessError, ValidationFailed
from ..extensions import db
from ..models.auth import ROLE_TENANT_ADMIN
from ..models.tenancy import PLAN_BUSINESS_SYSTEM
from ..services import (
    auth_service,
    billing_service,
    demo_service,
    impersonation_service,
    tenant_service,
)
from ..services.access_service import get_access_snapshot
from ..time_utils import parse_iso_datetime, to_utc_z
from ..validation import clamp_int, parse_bounded_int, parse_strict_int


platform_bp = Blueprint("platform", __name__, url_prefix="/api/platform")


def _failed(e: AccessError):
    db.session.rollback()
    return jsonify(e.to_dict()), e.http_status


def _internal(message: str, *args):
    db.session.rollback()
    current_app.logger.exception(message, *args)
    return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# TENANTS
# =============================================================================

@platform_bp.get("/tenants")
@require_auth
@require_platform_operator
def tenant_health_route():
    """Tenant health listing: access state, device usage, last activity."""
    return jsonify({"tenants": tenant_service.list_tenant_health()}), 200


@platform_bp.get("/kpis")
@require_auth
@require_platform_operator
def kpis_route():
    return jsonify(tenant_service.platform_kpis()), 200


@platform_bp.post("/tenants")
@require_auth
@require_platform_operator
def create_tenant_route():
    """
    Create a tenant with plan-default billing and (optionally) its first admin.

    Request body:
    {
        "name": "Corner Shop",
        "plan_type": "business_system",   (business_system | app_only)
        "admin": {"username": "...", "password": "...", "display_name": "..."}   (optional)
    }
    """
    data = json_body()
    try:
        tenant = tenant_service.create_tenant(
            data.get("name"),
            str(data.get("plan_type") or PLAN_BUSINESS_SYSTEM).strip().lower(),
            commit=False,
        )

        admin = None
        admin_data = data.get("admin")
        if isinstance(admin_data, dict):
            admin = auth_service.create_account(
                username=admin_data.get("username"),
                password=admin_data.get("password") or "",
                role=ROLE_TENANT_ADMIN,
                tenant_id=tenant.id,
                display_name=admin_data.get("display_name"),
                commit=False,
            )
        db.session.commit()

        return jsonify({
            "tenant": tenant.to_dict(),
            "admin": admin.to_dict() if admin else None,
            "access": get_access_snapshot(tenant.id).to_dict(),
        }), 201

    except AccessError as e:
        return _failed(e)
    except Exception:
        return _internal("Failed to create tenant")


@platform_bp.post("/tenants/<int:tenant_id>/delete")
@require_auth
@require_platform_operator
def soft_delete_tenant_route(tenant_id: int):
    """Soft-delete: suspend, lock billing, deactivate accounts and devices."""
    data = json_body()
    try:
        tenant = tenant_service.soft_delete_tenant(g.current_account, tenant_id, data.get("reason"))
        return jsonify({"tenant": tenant.to_dict()}), 200
    except AccessError as e:
        return _failed(e)
    except Exception:
        return _internal("Failed to soft-delete tenant %s", tenant_id)


@platform_bp.post("/tenants/<int:tenant_id>/restore")
@require_auth
@require_platform_operator
def restore_tenant_route(tenant_id: int):
    try:
        tenant = tenant_service.restore_tenant(g.current_account, tenant_id)
        return jsonify({"tenant": tenant.to_dict()}), 200
    except AccessError as e:
        return _failed(e)
    except Exception:
        return _internal("Failed to restore tenant %s", tenant_id)


# =============================================================================
# BILLING
# =============================================================================

@platform_bp.get("/tenants/<int:tenant_id>/payments")
@require_auth
@require_platform_operator
def list_payments_route(tenant_id: int):
    try:
        tenant_service.get_tenant(tenant_id)
        return jsonify({"payments": [p.to_dict() for p in billing_service.list_payments(tenant_id)]}), 200
    except AccessError as e:
        return _failed(e)


@platform_bp.post("/tenants/<int:tenant_id>/payments")
@require_auth
@require_platform_operator
def record_payment_route(tenant_id: int):
    """
    Record a payment.

    Request body:
    {
        "kind": "subscription",     (setup | subscription | annual | reactivation | manual)
        "amount_cents": 2500,
        "months": 1,                (0 = no extension)
        "note": "..."               (optional)
    }
    """
    data = json_body()
    try:
        payment = billing_service.record_payment(
            g.current_account,
            tenant_id,
            str(data.get("kind") or "").strip().lower(),
            parse_strict_int(data.get("amount_cents"), "amount_cents"),
            months=parse_strict_int(data.get("months", 0), "months"),
            note=data.get("note"),
        )
        return jsonify({
            "payment": payment.to_dict(),
            "access": get_access_snapshot(tenant_id).to_dict(),
        }), 201
    except AccessError as e:
        return _failed(e)
    except Exception:
        return _internal("Failed to record payment for tenant %s", tenant_id)


@platform_bp.patch("/tenants/<int:tenant_id>/billing")
@require_auth
@require_platform_operator
def update_billing_route(tenant_id: int):
    """
    Edit billing limits. Every field is optional.

    Request body:
    {
        "grace_days": 7,            (0..60)
        "max_devices": 3,           (1..50)
        "locked_override": false,
        "paid_through": "2026-01-31T00:00:00Z"
    }
    """
    data = json_body()
    try:
        kwargs = {}
        if data.get("grace_days") is not None:
            kwargs["grace_days"] = parse_strict_int(data["grace_days"], "grace_days")
        if data.get("max_devices") is not None:
            kwargs["max_devices"] = parse_strict_int(data["max_devices"], "max_devices")
        if data.get("locked_override") is not None:
            if not isinstance(data["locked_override"], bool):
                raise ValidationFailed("locked_override must be true or false")
            kwargs["locked_override"] = data["locked_override"]
        if data.get("paid_through") is not None:
            try:
                paid_through = parse_iso_datetime(str(data["paid_through"]))
            except ValueError:
                paid_through = None
            if paid_through is None:
                raise ValidationFailed("paid_through must be an ISO-8601 datetime")
            kwargs["paid_through"] = paid_through

        billing = billing_service.update_billing(g.current_account, tenant_id, **kwargs)
        return jsonify({
            "billing": billing.to_dict(),
            "access": get_access_snapshot(tenant_id).to_dict(),
        }), 200
    except AccessError as e:
        return _failed(e)
    except Exception:
        return _internal("Failed to update billing for tenant %s", tenant_id)


@platform_bp.post("/tenants/<int:tenant_id>/reactivation-codes")
@require_auth
@require_platform_operator
def issue_reactivation_code_route(tenant_id: int):
    """
    Issue a one-time reactivation code. The plaintext is returned once.

    Request body: {"months": 1}   (1..24)
    """
    data = json_body()
    try:
        months = parse_bounded_int(data.get("months", 1), "months", 1, 24)
        record, code = billing_service.issue_reactivation_code(g.current_account, tenant_id, months)
        body = record.to_dict()
        body["code"] = code
        return jsonify({"reactivation_code": body}), 201
    except AccessError as e:
        return _failed(e)
    except Exception:
        return _internal("Failed to issue reactivation code for tenant %s", tenant_id)


# =============================================================================
# IMPERSONATION
# =============================================================================

@platform_bp.get("/impersonations")
@require_auth
@require_platform_operator
def list_impersonations_route():
    """Query: tenant_id (optional), open_only (default false), limit (1..500)."""
    audits = impersonation_service.list_audits(
        tenant_id=request.args.get("tenant_id", type=int),
        open_only=request.args.get("open_only", "false").lower() == "true",
        limit=clamp_int(request.args.get("limit"), 1, 500, 100),
    )
    return jsonify({"impersonations": [a.to_dict() for a in audits]}), 200


@platform_bp.post("/impersonations")
@require_auth
@require_platform_operator
def start_impersonation_route():
    """
    Open an audited, time-boxed impersonation of a tenant role.

    Request body:
    {
        "tenant_id": 3,
        "role": "tenant_admin",      (tenant_admin | cashier)
        "reason": "Customer asked for help with refunds"
    }

    Returns the audit record and a one-time exchange token. The caller
    redeems it at /api/auth/exchange after backing up its own session.
    """
    data = json_body()
    try:
        audit, token = impersonation_service.start_impersonation(
            g.current_account,
            g.impersonation_audit_id,
            parse_strict_int(data.get("tenant_id"), "tenant_id"),
            data.get("role"),
            data.get("reason"),
            ip_address=client_ip(),
            user_agent=request.headers.get("User-Agent"),
        )
        return jsonify({
            "audit": audit.to_dict(),
            "exchange_token": token,
            "expires_at": to_utc_z(audit.expires_at),
        }), 201
    except AccessError as e:
        return _failed(e)
    except Exception:
        return _internal("Failed to start impersonation")


@platform_bp.post("/impersonations/<int:audit_id>/end")
@require_auth
@require_platform_operator
def end_impersonation_route(audit_id: int):
    """Mark an impersonation ended and revoke its sessions (idempotent)."""
    try:
        audit = impersonation_service.end_impersonation(g.current_account, audit_id, ip_address=client_ip())
        return jsonify({"audit": audit.to_dict()}), 200
    except AccessError as e:
        return _failed(e)
    except Exception:
        return _internal("Failed to end impersonation %s", audit_id)


# =============================================================================
# DEMO OPS
# =============================================================================

@platform_bp.post("/demo/sweep")
@require_auth
@require_platform_operator
def demo_sweep_route():
    """Purge expired demo tenants now. Query: limit (1..100)."""
    try:
        report = demo_service.sweep_expired(limit=clamp_int(request.args.get("limit"), 1, 100, 10))
        return jsonify(report.to_dict()), 200
    except Exception:
        return _internal("Demo sweep failed")
