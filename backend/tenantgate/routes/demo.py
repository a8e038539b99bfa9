# Overview: Flask API route for anonymous demo provisioning; parses input and returns JSON responses.

"""
Demo Sandbox API Route

WHY: Prospects get a throwaway business with seeded data and an admin login.
The plaintext password exists only in this single response.

SECURITY:
- Unauthenticated; rate limited per salted origin hash (raw IPs are never stored)
- Responses are marked no-store so credentials are not cached by proxies
"""

from flask import Blueprint, current_app, jsonify, request

from ..decorators import client_ip, json_body
from ..errors import AccessError
from ..services import demo_service


demo_bp = Blueprint("demo", __name__, url_prefix="/api/demo")


def _no_store(response, status: int):
    response.headers["Cache-Control"] = "no-store"
    return response, status


@demo_bp.post("/sessions")
def provision_demo_route():
    """
    Provision a sandbox business.

    Request body: {"email": "..."}   (optional)

    Returns: {"username", "password", "expires_at"}
    """
    data = json_body()
    try:
        credentials = demo_service.provision_demo(
            client_ip(),
            email=data.get("email"),
            user_agent=request.headers.get("User-Agent"),
        )
        return _no_store(jsonify(credentials.to_dict()), 201)

    except AccessError as e:
        return _no_store(jsonify(e.to_dict()), e.http_status)
    except demo_service.DemoConfigurationError as e:
        current_app.logger.error("%s", e)
        return _no_store(jsonify({"error": "Demo is not available right now"}), 500)
    except Exception:
        current_app.logger.exception("Demo provisioning failed")
        return _no_store(jsonify({"error": "Internal server error"}), 500)
