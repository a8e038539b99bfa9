# Overview: Flask API routes for device licensing; parses input and returns JSON responses.

"""
Device License API Routes

WHY: Each tenant may run at most max_devices active devices. Registration is
the authority half of the license check; the device keeps a local marker
only after the authority admits it.

SECURITY:
- tenant_id always comes from the verified session
- Platform operators and impersonation sessions bypass the cap
- Deactivation is limited to the tenant's admins (or a platform operator)
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import client_ip, json_body, require_auth, require_tenant_admin
from ..errors import AccessError, DeviceLimitExceeded
from ..extensions import db
from ..models.auth import ROLE_PLATFORM_OPERATOR
from ..services import device_service, tenant_service
from ..services.access_service import get_access_snapshot


devices_bp = Blueprint("devices", __name__, url_prefix="/api/devices")


@devices_bp.post("/register")
@require_auth
def register_device_route():
    """
    Count active devices for the session's tenant and admit or reject.

    Request body:
    {
        "device_id": "c0ffee-...",
        "platform": "android",   (optional)
        "label": "Front till"    (optional)
    }

    Returns 200 with "allowed". A rejection carries an actionable message
    and the error code of DeviceLimitExceeded so the device can raise it.
    """
    data = json_body()
    try:
        result = device_service.register_device(
            g.current_account,
            g.tenant_id,
            data.get("device_id"),
            data.get("platform"),
            data.get("label"),
            impersonation_audit_id=g.impersonation_audit_id,
            ip_address=client_ip(),
            user_agent=request.headers.get("User-Agent"),
        )

        body = result.to_dict()
        body["access"] = get_access_snapshot(g.tenant_id).to_dict() if g.tenant_id is not None else None
        if not result.allowed:
            refusal = DeviceLimitExceeded(
                f"Device limit reached ({result.active_devices} of {result.max_devices} active). "
                "Ask an admin to deactivate an unused device under Settings > Devices."
            )
            body.update(refusal.to_dict())
        return jsonify(body), 200

    except AccessError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Device registration failed")
        return jsonify({"error": "Internal server error"}), 500


@devices_bp.get("")
@require_auth
@require_tenant_admin
def list_devices_route():
    """
    List devices of the session's tenant (active first).

    Platform operators pass ?tenant_id=. Query: include_inactive (default true).
    """
    include_inactive = request.args.get("include_inactive", "true").lower() != "false"
    tenant_id = g.tenant_id
    try:
        if g.current_account.role == ROLE_PLATFORM_OPERATOR:
            tenant_id = request.args.get("tenant_id", type=int)
            if tenant_id is None:
                return jsonify({"error": "tenant_id required", "code": "validation_failed"}), 422
            tenant_service.get_tenant(tenant_id)

        devices = device_service.list_devices(tenant_id, include_inactive=include_inactive)
        return jsonify({
            "devices": [d.to_dict() for d in devices],
            "active_devices": sum(1 for d in devices if d.is_active),
        }), 200

    except AccessError as e:
        return jsonify(e.to_dict()), e.http_status


@devices_bp.post("/<int:record_id>/deactivate")
@require_auth
@require_tenant_admin
def deactivate_device_route(record_id: int):
    """Free a device slot. The device row and its history are kept."""
    try:
        device = device_service.deactivate_device(
            g.current_account,
            g.tenant_id,
            record_id,
            ip_address=client_ip(),
        )
        return jsonify({"device": device.to_dict()}), 200

    except AccessError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to deactivate device %s", record_id)
        return jsonify({"error": "Internal server error"}), 500
