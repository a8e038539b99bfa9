# Overview: Pytest coverage for credential verification, exchange tokens, sessions and staff management.

"""
Authentication & Session Tests

SECURITY TESTS:
1. Credential failures look identical for unknown users and wrong passwords
2. Exchange tokens are single-use
3. Restore keeps the same session row; logout revokes it
4. Disabled accounts and soft-deleted tenants cannot sign in or keep sessions
5. Throttling per origin + username answers RateLimited
6. Staff management re-derives tenant and role from the session
"""

import pytest

from conftest import PASSWORD, auth_headers, login, login_headers
from tenantgate.errors import AccountDisabled, InvalidCredentials, SessionRestoreFailed
from tenantgate.extensions import db
from tenantgate.models import Account, SecurityEvent, SessionToken
from tenantgate.services import auth_service, session_service


class TestVerifyCredentials:

    def test_valid_credentials(self, db_session, admin_a):
        assert auth_service.verify_credentials("admin_a", PASSWORD).id == admin_a.id

    def test_username_is_sanitized(self, db_session, admin_a):
        assert auth_service.verify_credentials("  ADMIN_A ", PASSWORD).id == admin_a.id

    def test_unknown_and_wrong_password_look_the_same(self, db_session, admin_a):
        with pytest.raises(InvalidCredentials) as unknown:
            auth_service.verify_credentials("nobody", PASSWORD)
        with pytest.raises(InvalidCredentials) as wrong:
            auth_service.verify_credentials("admin_a", "Wrong12345")
        assert unknown.value.message == wrong.value.message

    def test_disabled_account(self, db_session, admin_a):
        admin_a.is_active = False
        db.session.commit()

        with pytest.raises(AccountDisabled):
            auth_service.verify_credentials("admin_a", PASSWORD)

    def test_disabled_account_with_wrong_password_is_invalid(self, db_session, admin_a):
        admin_a.is_active = False
        db.session.commit()

        with pytest.raises(InvalidCredentials):
            auth_service.verify_credentials("admin_a", "Wrong12345")


class TestLoginFlow:

    def test_verify_then_exchange(self, client, db_session, tenant_a, admin_a):
        body = login(client, "admin_a")

        assert body["access_token"]
        assert body["refresh_token"]
        assert body["account"]["role"] == "tenant_admin"
        assert body["account"]["tenant_id"] == tenant_a.id
        assert body["access"]["access_state"] == "active"

    def test_verify_alone_creates_no_session(self, client, db_session, admin_a):
        response = client.post('/api/auth/verify', json={'username': 'admin_a', 'password': PASSWORD})
        assert response.status_code == 200
        assert db_session.query(SessionToken).count() == 0

    def test_exchange_token_is_single_use(self, client, db_session, admin_a):
        token = client.post('/api/auth/verify', json={
            'username': 'admin_a', 'password': PASSWORD,
        }).get_json()['exchange_token']

        assert client.post('/api/auth/exchange', json={'exchange_token': token}).status_code == 200
        second = client.post('/api/auth/exchange', json={'exchange_token': token})
        assert second.status_code == 401
        assert second.get_json()["code"] == "session_restore_failed"

    def test_wrong_password_logged(self, client, db_session, admin_a):
        response = client.post('/api/auth/verify', json={'username': 'admin_a', 'password': 'Nope12345'})

        assert response.status_code == 401
        assert response.get_json() == {"error": "Invalid credentials", "code": "invalid_credentials"}
        assert db_session.query(SecurityEvent).filter_by(event_type="LOGIN_FAILED").count() == 1

    def test_me_returns_account(self, client, db_session, admin_a):
        response = client.get('/api/auth/me', headers=login_headers(client, "admin_a"))
        assert response.status_code == 200
        assert response.get_json()["account"]["username"] == "admin_a"
        assert response.get_json()["impersonation_audit_id"] is None

    def test_rate_limited_per_origin_and_username(self, app, client, db_session, admin_a):
        app.config.update(AUTH_IP_HASH_SALT="auth-salt", AUTH_RATE_LIMIT_MAX_PER_IP_USER=3)
        try:
            for _ in range(3):
                client.post('/api/auth/verify', json={'username': 'admin_a', 'password': 'Nope12345'})
            response = client.post('/api/auth/verify', json={'username': 'admin_a', 'password': PASSWORD})
            assert response.status_code == 429
            assert response.get_json()["code"] == "rate_limited"
        finally:
            app.config.update(AUTH_IP_HASH_SALT="", AUTH_RATE_LIMIT_MAX_PER_IP_USER=12)


class TestSessions:

    def test_restore_keeps_session_row(self, client, db_session, admin_a):
        body = login(client, "admin_a")

        restored = client.post('/api/auth/restore', json={
            'access_token': body['access_token'],
            'refresh_token': body['refresh_token'],
        })
        assert restored.status_code == 200
        assert restored.get_json()["session"]["id"] == body["session"]["id"]
        assert db_session.query(SessionToken).count() == 1

    def test_restore_with_mismatched_pair_fails(self, db_session, admin_a):
        first = session_service.issue_session(admin_a)
        second = session_service.issue_session(admin_a)

        with pytest.raises(SessionRestoreFailed):
            session_service.restore_session(first.access_token, second.refresh_token)

    def test_logout_revokes(self, client, db_session, admin_a):
        body = login(client, "admin_a")
        headers = auth_headers(body["access_token"])

        assert client.post('/api/auth/logout', headers=headers).status_code == 200
        assert client.get('/api/auth/me', headers=headers).status_code == 401
        restored = client.post('/api/auth/restore', json={
            'access_token': body['access_token'],
            'refresh_token': body['refresh_token'],
        })
        assert restored.status_code == 401

    def test_disabling_account_kills_session(self, client, db_session, admin_a):
        headers = login_headers(client, "admin_a")
        admin_a.is_active = False
        db.session.commit()

        assert client.get('/api/auth/me', headers=headers).status_code == 401

    def test_missing_token(self, client, db_session):
        response = client.get('/api/auth/me')
        assert response.status_code == 401


class TestStaffManagement:

    def test_admin_creates_cashier_in_own_tenant(self, client, db_session, tenant_a, tenant_b, admin_a):
        response = client.post('/api/staff', json={
            'username': 'new_cashier',
            'display_name': 'New Cashier',
            'password': 'Cashier123',
            'role': 'cashier',
            'tenant_id': tenant_b.id,
        }, headers=login_headers(client, "admin_a"))

        assert response.status_code == 201
        created = db_session.query(Account).filter_by(username="new_cashier").one()
        assert created.tenant_id == tenant_a.id
        assert created.role == "cashier"

    def test_admin_cannot_create_operator(self, client, db_session, admin_a):
        response = client.post('/api/staff', json={
            'username': 'sneaky',
            'display_name': 'Sneaky',
            'password': 'Sneaky1234',
            'role': 'platform_operator',
        }, headers=login_headers(client, "admin_a"))

        assert response.status_code in (403, 422)
        assert db_session.query(Account).filter_by(username="sneaky").first() is None

    def test_cashier_cannot_create_staff(self, client, db_session, cashier_a):
        response = client.post('/api/staff', json={
            'username': 'another',
            'display_name': 'Another',
            'password': 'Another123',
        }, headers=login_headers(client, "cashier_a"))
        assert response.status_code == 403

    def test_admin_cannot_delete_other_tenant_staff(self, client, db_session, admin_a, admin_b):
        response = client.delete(f'/api/staff/{admin_b.id}', headers=login_headers(client, "admin_a"))
        assert response.status_code == 403
        assert db_session.get(Account, admin_b.id) is not None

    def test_weak_password_rejected(self, client, db_session, admin_a):
        response = client.post('/api/staff', json={
            'username': 'weakling',
            'display_name': 'Weak Ling',
            'password': 'short',
        }, headers=login_headers(client, "admin_a"))
        assert response.status_code == 400
        assert response.get_json()["code"] == "password_invalid"

    def test_reserved_username_rejected(self, client, db_session, admin_a):
        response = client.post('/api/staff', json={
            'username': 'demo_fake',
            'display_name': 'Demo Fake',
            'password': 'Password123',
        }, headers=login_headers(client, "admin_a"))
        assert response.status_code == 422

    def test_admin_resets_cashier_password(self, client, db_session, admin_a, cashier_a):
        response = client.post(
            f'/api/staff/{cashier_a.id}/password',
            json={'password': 'NewPass1234'},
            headers=login_headers(client, "admin_a"),
        )
        assert response.status_code == 200

        db_session.expire_all()
        with pytest.raises(InvalidCredentials):
            auth_service.verify_credentials("cashier_a", PASSWORD)
        assert auth_service.verify_credentials("cashier_a", "NewPass1234").id == cashier_a.id

    def test_cross_tenant_password_reset_refused(self, client, db_session, admin_a, admin_b):
        response = client.post(
            f'/api/staff/{admin_b.id}/password',
            json={'password': 'NewPass1234'},
            headers=login_headers(client, "admin_a"),
        )
        assert response.status_code == 403


class TestSystemRoutes:

    def test_health(self, client, db_session):
        response = client.get('/api/system/health')
        assert response.status_code == 200
        assert response.get_json()["checks"]["database"]["status"] == "healthy"

    def test_time(self, client):
        body = client.get('/api/system/time').get_json()
        assert body["server_time"].endswith("Z")
        assert isinstance(body["epoch_ms"], int)
