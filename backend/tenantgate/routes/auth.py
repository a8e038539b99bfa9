# Overview: Flask API routes for credential verification and sessions; parses input and returns JSON responses.

"""
Authentication API Routes

WHY: Devices prove a credential online, then trade a one-time exchange token
for a session. Restore lets a device resume a session after restart (or
after an impersonation ends) without the password.

FLOW:
1. POST /api/auth/verify    username + password -> account + exchange_token
2. POST /api/auth/exchange  exchange_token -> access/refresh token pair
3. POST /api/auth/restore   stored token pair -> same session, fresh access
4. POST /api/auth/logout    revoke the bearer session

SECURITY:
- Credential failures never reveal whether the username exists
- Attempts are throttled per salted origin hash and per origin + username
- Every success/failure is written to the security event log
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import client_ip, json_body, require_auth
from ..errors import AccessError, AccountDisabled, InvalidCredentials
from ..extensions import db
from ..models import Account
from ..services import auth_service, login_throttle_service, session_service
from ..services.access_service import get_access_snapshot
from ..services.security_service import log_security_event
from ..time_utils import to_utc_z


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _account_payload(account: Account, tenant_id: int | None) -> dict:
    payload = {"account": account.to_dict(), "access": None}
    if tenant_id is not None:
        payload["access"] = get_access_snapshot(tenant_id).to_dict()
    return payload


@auth_bp.post("/verify")
def verify_route():
    """
    Verify a username/password pair.

    Request body: {"username": "...", "password": "..."}

    Returns the account (role, permissions, tenant) and a one-time
    exchange token. No session exists until the token is exchanged.
    """
    data = json_body()
    username = auth_service.sanitize_username(data.get("username"))
    password = data.get("password") or ""
    ip = client_ip()
    user_agent = request.headers.get("User-Agent")
    ip_hash = login_throttle_service.origin_hash(ip)

    try:
        login_throttle_service.check_rate_limit(ip_hash, username)

        try:
            account = auth_service.verify_credentials(username, password)
        except (InvalidCredentials, AccountDisabled) as e:
            login_throttle_service.record_attempt(ip_hash, username, success=False)
            log_security_event(
                account_id=None,
                event_type="LOGIN_FAILED",
                success=False,
                resource=username or None,
                reason=e.code,
                ip_address=ip,
                user_agent=user_agent,
            )
            raise

        login_throttle_service.record_attempt(ip_hash, username, success=True)
        record, token = session_service.mint_exchange_token(account)
        log_security_event(
            account_id=account.id,
            event_type="LOGIN_SUCCESS",
            success=True,
            ip_address=ip,
            user_agent=user_agent,
            tenant_id=account.tenant_id,
        )

        body = _account_payload(account, account.tenant_id)
        body["exchange_token"] = token
        body["exchange_expires_at"] = to_utc_z(record.expires_at)
        return jsonify(body), 200

    except AccessError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Credential verification failed")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/exchange")
def exchange_route():
    """
    Redeem a one-time exchange token (login or impersonation) for a session.

    Request body: {"exchange_token": "..."}
    """
    data = json_body()
    try:
        issued = session_service.redeem_exchange_token(
            str(data.get("exchange_token") or "").strip(),
            user_agent=request.headers.get("User-Agent"),
            ip_address=client_ip(),
        )
        account = db.session.get(Account, issued.session.account_id)
        body = issued.to_dict()
        body.update(_account_payload(account, issued.session.tenant_id))
        return jsonify(body), 200

    except AccessError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Exchange token redemption failed")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/restore")
def restore_route():
    """
    Restore a session from a stored token pair.

    Request body: {"access_token": "...", "refresh_token": "..."}

    The refresh token is kept; a new access token is returned only if the
    old one had expired.
    """
    data = json_body()
    try:
        issued = session_service.restore_session(
            str(data.get("access_token") or "").strip(),
            str(data.get("refresh_token") or "").strip(),
        )
        account = db.session.get(Account, issued.session.account_id)
        body = issued.to_dict()
        body.update(_account_payload(account, issued.session.tenant_id))
        return jsonify(body), 200

    except AccessError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Session restore failed")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout")
@require_auth
def logout_route():
    """Revoke the current session."""
    session_service.revoke_session(g.access_token)
    log_security_event(
        account_id=g.current_account.id,
        event_type="LOGOUT",
        success=True,
        ip_address=client_ip(),
        user_agent=request.headers.get("User-Agent"),
        tenant_id=g.tenant_id,
    )
    return jsonify({"message": "Logged out"}), 200


@auth_bp.get("/me")
@require_auth
def me_route():
    """Current account, access snapshot and impersonation context."""
    body = _account_payload(g.current_account, g.tenant_id)
    body["impersonation_audit_id"] = g.impersonation_audit_id
    return jsonify(body), 200
