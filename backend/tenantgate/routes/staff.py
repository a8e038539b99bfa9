# Overview: Flask API routes for staff accounts; parses input and returns JSON responses.

"""
Staff Management API Routes

SECURITY:
- Role and tenant of the caller come from the verified session
- Tenant admins manage only their own tenant and only tenant roles
- Platform operators pass tenant_id explicitly
- Demo tenants cannot manage staff
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import client_ip, json_body, require_auth, require_tenant_admin
from ..errors import AccessError
from ..extensions import db
from ..services import auth_service
from ..services.security_service import log_security_event


staff_bp = Blueprint("staff", __name__, url_prefix="/api/staff")


@staff_bp.get("")
@require_auth
@require_tenant_admin
def list_staff_route():
    try:
        accounts = auth_service.list_staff(g.current_account, request.args.get("tenant_id", type=int))
        return jsonify({"staff": [a.to_dict() for a in accounts]}), 200
    except AccessError as e:
        return jsonify(e.to_dict()), e.http_status


@staff_bp.post("")
@require_auth
@require_tenant_admin
def create_staff_route():
    """
    Create a staff account.

    Request body:
    {
        "username": "anna",
        "password": "...",
        "display_name": "Anna K",
        "role": "cashier",          (tenant_admin | cashier; default cashier)
        "permissions": {...},        (optional overrides)
        "tenant_id": 3               (platform operators only)
    }
    """
    data = json_body()
    try:
        account = auth_service.create_staff(
            g.current_account,
            username=data.get("username"),
            password=data.get("password") or "",
            role=data.get("role"),
            display_name=data.get("display_name"),
            permissions=data.get("permissions"),
            tenant_id=data.get("tenant_id") if isinstance(data.get("tenant_id"), int) else None,
        )
        log_security_event(
            account_id=g.current_account.id,
            event_type="STAFF_CREATED",
            success=True,
            resource=f"account:{account.id}",
            action=account.role,
            ip_address=client_ip(),
            tenant_id=account.tenant_id,
        )
        return jsonify({"account": account.to_dict()}), 201

    except AccessError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create staff account")
        return jsonify({"error": "Internal server error"}), 500


@staff_bp.delete("/<int:account_id>")
@require_auth
@require_tenant_admin
def delete_staff_route(account_id: int):
    try:
        auth_service.delete_staff(g.current_account, account_id)
        log_security_event(
            account_id=g.current_account.id,
            event_type="STAFF_DELETED",
            success=True,
            resource=f"account:{account_id}",
            ip_address=client_ip(),
            tenant_id=g.tenant_id,
        )
        return jsonify({"deleted": account_id}), 200

    except AccessError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to delete staff account %s", account_id)
        return jsonify({"error": "Internal server error"}), 500


@staff_bp.post("/<int:account_id>/password")
@require_auth
@require_tenant_admin
def set_staff_password_route(account_id: int):
    """Request body: {"password": "..."}"""
    data = json_body()
    try:
        account = auth_service.set_staff_password(g.current_account, account_id, data.get("password") or "")
        log_security_event(
            account_id=g.current_account.id,
            event_type="STAFF_PASSWORD_SET",
            success=True,
            resource=f"account:{account.id}",
            ip_address=client_ip(),
            tenant_id=account.tenant_id,
        )
        return jsonify({"account": account.to_dict()}), 200

    except AccessError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to set staff password")
        return jsonify({"error": "Internal server error"}), 500
