# Overview: Flask API routes for the caller's own business; parses input and returns JSON responses.

"""
Tenant Self-Service API Routes

WHY: Devices poll their tenant's access snapshot to evaluate active/grace/
locked locally (with a trusted clock) between polls. A locked tenant's admin
can redeem a reactivation code issued by the platform.

MULTI-TENANT: Every route resolves the tenant from the session (g.tenant_id).
"""

from flask import Blueprint, current_app, g, jsonify

from ..decorators import json_body, require_auth
from ..errors import AccessError, NotAuthorized
from ..extensions import db
from ..services import billing_service, tenant_service
from ..services.access_service import get_access_snapshot


tenants_bp = Blueprint("tenants", __name__, url_prefix="/api/tenants")


def _session_tenant_id() -> int:
    if g.tenant_id is None:
        raise NotAuthorized("A business session is required")
    return g.tenant_id


@tenants_bp.get("/me")
@require_auth
def my_tenant_route():
    """Tenant profile plus current access snapshot."""
    try:
        tenant = tenant_service.get_tenant(_session_tenant_id())
        return jsonify({
            "tenant": tenant.to_dict(),
            "access": get_access_snapshot(tenant.id).to_dict(),
        }), 200
    except AccessError as e:
        return jsonify(e.to_dict()), e.http_status


@tenants_bp.get("/me/access")
@require_auth
def my_access_route():
    """
    Billing facts and the server's evaluation of them.

    The device caches this and re-evaluates with its own trusted clock
    until the next successful poll.
    """
    try:
        return jsonify({"access": get_access_snapshot(_session_tenant_id()).to_dict()}), 200
    except AccessError as e:
        return jsonify(e.to_dict()), e.http_status


@tenants_bp.post("/me/reactivate")
@require_auth
def redeem_reactivation_route():
    """
    Redeem a reactivation code for the session's tenant.

    Request body: {"code": "ABCD-EFGH-JKLM"}
    """
    data = json_body()
    try:
        billing_service.redeem_reactivation_code(g.current_account, data.get("code"))
        return jsonify({"access": get_access_snapshot(g.current_account.tenant_id).to_dict()}), 200

    except AccessError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Reactivation code redemption failed")
        return jsonify({"error": "Internal server error"}), 500
