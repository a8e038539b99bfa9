# Overview: Pytest coverage for role gates across the authority API.

"""
Authorization tests.

Verifies:
- Unauthenticated requests return 401
- Cashiers are denied admin operations (403)
- Tenant admins are denied platform operations (403)
- Impersonation sessions cannot reach the platform console
"""

import pytest

from conftest import auth_headers, login_headers
from tenantgate.services import impersonation_service


# =============================================================================
# UNAUTHENTICATED ACCESS - 401
# =============================================================================


class TestUnauthenticatedAccess:
    """All protected endpoints return 401 without a token."""

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/auth/me"),
            ("POST", "/api/auth/logout"),
            ("POST", "/api/devices/register"),
            ("GET", "/api/devices"),
            ("POST", "/api/devices/1/deactivate"),
            ("GET", "/api/tenants/me"),
            ("GET", "/api/tenants/me/access"),
            ("POST", "/api/tenants/me/reactivate"),
            ("GET", "/api/staff"),
            ("POST", "/api/staff"),
            ("DELETE", "/api/staff/1"),
            ("POST", "/api/operations"),
            ("GET", "/api/platform/tenants"),
            ("GET", "/api/platform/kpis"),
            ("POST", "/api/platform/tenants/1/payments"),
            ("PATCH", "/api/platform/tenants/1/billing"),
            ("POST", "/api/platform/impersonations"),
            ("POST", "/api/platform/demo/sweep"),
        ],
    )
    def test_requires_auth(self, client, db_session, method, path):
        resp = getattr(client, method.lower())(path)
        assert resp.status_code == 401, f"{method} {path} returned {resp.status_code}"

    def test_garbage_token(self, client, db_session):
        resp = client.get("/api/auth/me", headers=auth_headers("not-a-token"))
        assert resp.status_code == 401


# =============================================================================
# CASHIER DENIED ADMIN OPERATIONS - 403
# =============================================================================


class TestCashierDenied:

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/devices"),
            ("POST", "/api/devices/1/deactivate"),
            ("GET", "/api/staff"),
            ("POST", "/api/staff"),
            ("DELETE", "/api/staff/1"),
            ("POST", "/api/staff/1/password"),
            ("POST", "/api/tenants/me/reactivate"),
        ],
    )
    def test_admin_routes(self, client, db_session, cashier_a, method, path):
        resp = getattr(client, method.lower())(path, json={}, headers=login_headers(client, "cashier_a"))
        assert resp.status_code == 403, f"{method} {path} returned {resp.status_code}"

    def test_cashier_can_read_access(self, client, db_session, cashier_a):
        resp = client.get("/api/tenants/me/access", headers=login_headers(client, "cashier_a"))
        assert resp.status_code == 200


# =============================================================================
# PLATFORM CONSOLE - OPERATORS ONLY
# =============================================================================


class TestPlatformConsole:

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/platform/tenants"),
            ("GET", "/api/platform/kpis"),
            ("POST", "/api/platform/tenants"),
            ("POST", "/api/platform/tenants/1/delete"),
            ("POST", "/api/platform/tenants/1/payments"),
            ("PATCH", "/api/platform/tenants/1/billing"),
            ("POST", "/api/platform/tenants/1/reactivation-codes"),
            ("GET", "/api/platform/impersonations"),
            ("POST", "/api/platform/impersonations"),
            ("POST", "/api/platform/demo/sweep"),
        ],
    )
    def test_tenant_admin_denied(self, client, db_session, admin_a, method, path):
        resp = getattr(client, method.lower())(path, json={}, headers=login_headers(client, "admin_a"))
        assert resp.status_code == 403, f"{method} {path} returned {resp.status_code}"

    def test_operator_allowed(self, client, db_session, operator):
        resp = client.get("/api/platform/impersonations", headers=login_headers(client, "operator"))
        assert resp.status_code == 200

    def test_support_session_denied(self, client, db_session, tenant_a, operator):
        _, token = impersonation_service.start_impersonation(operator, None, tenant_a.id, "tenant_admin", "Help")
        body = client.post("/api/auth/exchange", json={"exchange_token": token}).get_json()

        resp = client.get("/api/platform/tenants", headers=auth_headers(body["access_token"]))
        assert resp.status_code == 403
