# Overview: Flask API route for replayed device operations; parses input and returns JSON responses.

"""
Operation Intake API Route

WHY: Devices queue sales, feedback and bookings while offline and replay them
later. Delivery is at-least-once, so intake is idempotent per
(tenant, operation_id): a replay returns the original acceptance.

RESPONSES:
- 201 accepted, 200 replay of an already accepted operation
- 422 validation_failed: definitive rejection, the device drops the entry
- 402 access_locked / 401 / 403: the device stops draining and keeps the entry
"""

from flask import Blueprint, current_app, g, jsonify

from ..decorators import json_body, require_auth
from ..errors import AccessError
from ..extensions import db
from ..services import operations_service


operations_bp = Blueprint("operations", __name__, url_prefix="/api/operations")


@operations_bp.post("")
@require_auth
def accept_operation_route():
    """
    Request body:
    {
        "operation_id": "0b6c...",     (client-generated, stable across retries)
        "kind": "sale",                (sale | feedback | booking)
        "payload": {...}
    }
    """
    data = json_body()
    try:
        result = operations_service.accept_operation(
            g.current_account,
            g.tenant_id,
            data.get("operation_id"),
            data.get("kind"),
            data.get("payload"),
        )
        return jsonify({"operation": result.to_dict()}), 200 if result.replayed else 201

    except AccessError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to accept operation")
        return jsonify({"error": "Internal server error"}), 500
