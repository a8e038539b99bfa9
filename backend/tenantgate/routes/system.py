# Overview: Flask API routes for health and trusted time; returns JSON responses.

"""
System health and time endpoints.

/api/system/time is the reference clock devices sync against; access-state
and license decisions on a device never rely on the device clock alone.
"""

import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import text

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def check_database_health() -> dict:
    """Check database connectivity. Returns dict with status and latency."""
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2)}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


@system_bp.get("/health")
def health():
    database = check_database_health()
    status = 200 if database["status"] == "healthy" else 503
    return jsonify({"status": database["status"], "checks": {"database": database}}), status


@system_bp.get("/time")
def server_time():
    """Authoritative server time (UTC)."""
    now = utcnow()
    return jsonify({
        "server_time": to_utc_z(now),
        "epoch_ms": int(time.time() * 1000),
    }), 200
