# Overview: Request decorators and helpers for API routes.

from functools import wraps

from flask import current_app, g, jsonify, request

from .errors import NotAuthorized, SessionRestoreFailed
from .models.auth import ROLE_PLATFORM_OPERATOR, ROLE_TENANT_ADMIN
from .services import session_service
from .services.security_service import log_security_event


def client_ip() -> str | None:
    """
    Caller's network origin.

    Proxy headers (CF-Connecting-IP, X-Forwarded-For, X-Real-IP) are only
    honored when TRUST_PROXY_HEADERS is set; otherwise the socket peer.
    """
    if current_app.config.get("TRUST_PROXY_HEADERS"):
        cf = request.headers.get("CF-Connecting-IP")
        if cf and cf.strip():
            return cf.strip()
        xff = request.headers.get("X-Forwarded-For")
        if xff:
            first = next((part.strip() for part in xff.split(",") if part.strip()), None)
            if first:
                return first
        real = request.headers.get("X-Real-IP")
        if real and real.strip():
            return real.strip()
    return request.remote_addr or None


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _denied(exc):
    return jsonify(exc.to_dict()), exc.http_status


def require_auth(f):
    """
    Require a valid access token and establish tenant context.

    MULTI-TENANT: Sets the following Flask g attributes:
    - g.current_account: the authenticated Account
    - g.tenant_id: tenant captured in the session (None for platform operators)
    - g.impersonation_audit_id: set when the session is an impersonation
    - g.session_context: the full SessionContext

    SECURITY: Returns 401 if the Authorization header is missing, the token
    is invalid/expired/revoked, the account or tenant was deactivated, or the
    impersonation behind the session has ended.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return _denied(SessionRestoreFailed("Authentication required"))

        token = auth_header.split(" ", 1)[1].strip()
        context = session_service.validate_session(token)

        if not context:
            return _denied(SessionRestoreFailed("Invalid or expired token"))

        # MULTI-TENANT: every non-operator session must carry a tenant
        if context.tenant_id is None and context.account.role != ROLE_PLATFORM_OPERATOR:
            log_security_event(
                account_id=context.account.id,
                event_type="TENANT_CONTEXT_MISSING",
                success=False,
                resource=request.path,
                action=request.method,
                reason="Session missing tenant_id",
                ip_address=client_ip(),
                user_agent=request.headers.get("User-Agent"),
            )
            return _denied(SessionRestoreFailed("Invalid session: missing tenant context"))

        g.current_account = context.account
        g.tenant_id = context.tenant_id
        g.impersonation_audit_id = context.impersonation_audit_id
        g.session_context = context
        g.access_token = token

        return f(*args, **kwargs)

    return decorated_function


def require_platform_operator(f):
    """Require the session's account to be a platform operator (not impersonating)."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        account = getattr(g, "current_account", None)
        if account is None:
            return _denied(SessionRestoreFailed("Authentication required"))

        if account.role != ROLE_PLATFORM_OPERATOR:
            log_security_event(
                account_id=account.id,
                event_type="PERMISSION_DENIED",
                success=False,
                resource=request.path,
                action=request.method,
                reason="Platform operator required",
                ip_address=client_ip(),
                user_agent=request.headers.get("User-Agent"),
                tenant_id=g.tenant_id,
            )
            return _denied(NotAuthorized("Platform operators only"))

        return f(*args, **kwargs)

    return decorated_function


def require_tenant_admin(f):
    """Require a tenant admin (or platform operator) session."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        account = getattr(g, "current_account", None)
        if account is None:
            return _denied(SessionRestoreFailed("Authentication required"))
        if account.role not in (ROLE_PLATFORM_OPERATOR, ROLE_TENANT_ADMIN):
            return _denied(NotAuthorized("Admins only"))
        return f(*args, **kwargs)

    return decorated_function
