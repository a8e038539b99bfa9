"""
Pytest fixtures for tenantgate backend tests.

Provides the in-memory authority app, per-test table wipe, two isolated
tenants with admins and cashiers, a platform operator and auth helpers.
"""

from datetime import timedelta

import pytest

from tenantgate import create_app
from tenantgate.extensions import db
from tenantgate.models.auth import ROLE_CASHIER, ROLE_PLATFORM_OPERATOR, ROLE_TENANT_ADMIN
from tenantgate.services.auth_service import create_account
from tenantgate.services.tenant_service import create_tenant
from tenantgate.time_utils import utcnow


PASSWORD = "Password123"

TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'BCRYPT_ROUNDS': 4,
    'DEMO_IP_HASH_SALT': 'test-demo-salt',
    'AUTH_IP_HASH_SALT': '',
    'DEFAULT_MAX_DEVICES': 2,
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def tenant_a(db_session):
    """Tenant A, paid for the next 30 days."""
    return create_tenant("Tenant A - Acme Corp", paid_through=utcnow() + timedelta(days=30))


@pytest.fixture(scope='function')
def tenant_b(db_session):
    """Tenant B, paid for the next 30 days."""
    return create_tenant("Tenant B - Beta Inc", paid_through=utcnow() + timedelta(days=30))


@pytest.fixture(scope='function')
def admin_a(db_session, tenant_a):
    return create_account("admin_a", PASSWORD, ROLE_TENANT_ADMIN, tenant_a.id, display_name="Admin A")


@pytest.fixture(scope='function')
def cashier_a(db_session, tenant_a):
    return create_account("cashier_a", PASSWORD, ROLE_CASHIER, tenant_a.id, display_name="Cashier A")


@pytest.fixture(scope='function')
def admin_b(db_session, tenant_b):
    return create_account("admin_b", PASSWORD, ROLE_TENANT_ADMIN, tenant_b.id, display_name="Admin B")


@pytest.fixture(scope='function')
def operator(db_session):
    return create_account("operator", PASSWORD, ROLE_PLATFORM_OPERATOR, None, display_name="Platform Operator")


def login(client, username: str, password: str = PASSWORD) -> dict:
    """verify -> exchange. Returns the exchange response body."""
    verified = client.post('/api/auth/verify', json={
        'username': username,
        'password': password,
    })
    assert verified.status_code == 200, verified.get_json()
    exchanged = client.post('/api/auth/exchange', json={
        'exchange_token': verified.get_json()['exchange_token'],
    })
    assert exchanged.status_code == 200, exchanged.get_json()
    return exchanged.get_json()


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


def login_headers(client, username: str, password: str = PASSWORD) -> dict:
    return auth_headers(login(client, username, password)['access_token'])
