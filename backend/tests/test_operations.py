# Overview: Pytest coverage for idempotent acceptance of replayed device operations.

"""
Operation Acceptance Tests

- sale/feedback/booking are applied once per (tenant, operation_id)
- A replay returns the original result with replayed=True (HTTP 200)
- Validation problems are ValidationFailed (HTTP 422), the per-entry
  rejection devices keep for review
- Locked tenants cannot push operations
- Product ids from another tenant are rejected
"""

from datetime import timedelta

import pytest

from conftest import login_headers
from tenantgate.errors import AccessLocked, NotAuthorized, ValidationFailed
from tenantgate.extensions import db
from tenantgate.models import AcceptedOperation, BillingRecord, Feedback, Order, Product
from tenantgate.services.operations_service import accept_operation
from tenantgate.time_utils import utcnow


@pytest.fixture
def product_a(db_session, tenant_a):
    product = Product(tenant_id=tenant_a.id, sku="ESP-1", name="Espresso", kind="good", price_cents=250, stock_qty=10)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture
def product_b(db_session, tenant_b):
    product = Product(tenant_id=tenant_b.id, sku="TEA-1", name="Tea", kind="good", price_cents=200, stock_qty=10)
    db_session.add(product)
    db_session.commit()
    return product


class TestAcceptOperation:

    def test_sale_applied_once(self, db_session, tenant_a, cashier_a, product_a):
        payload = {"items": [{"product_id": product_a.id, "quantity": 2}], "payment_method": "cash"}

        first = accept_operation(cashier_a, tenant_a.id, "op-1", "sale", payload)
        second = accept_operation(cashier_a, tenant_a.id, "op-1", "sale", payload)

        assert not first.replayed
        assert second.replayed
        assert second.operation.result_ref == first.operation.result_ref
        order = db_session.query(Order).filter_by(tenant_id=tenant_a.id).one()
        assert order.total_cents == 500
        assert db_session.get(Product, product_a.id).stock_qty == 8

    def test_same_id_different_tenants(self, db_session, tenant_a, tenant_b, cashier_a, admin_b):
        accept_operation(cashier_a, tenant_a.id, "op-1", "feedback", {"message": "Great"})
        result = accept_operation(admin_b, tenant_b.id, "op-1", "feedback", {"message": "Great"})

        assert not result.replayed
        assert db_session.query(Feedback).count() == 2

    def test_reused_id_for_other_kind(self, db_session, tenant_a, cashier_a):
        accept_operation(cashier_a, tenant_a.id, "op-1", "feedback", {"message": "Hello"})
        with pytest.raises(ValidationFailed):
            accept_operation(cashier_a, tenant_a.id, "op-1", "booking", {
                "customer_name": "Ann", "scheduled_at": "2026-05-01T10:00:00Z",
            })

    @pytest.mark.parametrize("kind,payload", [
        ("sale", {"items": []}),
        ("sale", {"items": [{"name": "Loose item", "quantity": 0, "unit_price_cents": 100}]}),
        ("sale", {"items": [{"name": "Card", "unit_price_cents": 100}], "payment_method": "barter"}),
        ("feedback", {"message": ""}),
        ("feedback", {"message": "ok", "rating": 9}),
        ("booking", {"customer_name": "Ann", "scheduled_at": "tomorrow"}),
        ("refund", {}),
    ])
    def test_invalid_operations(self, db_session, tenant_a, cashier_a, kind, payload):
        with pytest.raises(ValidationFailed):
            accept_operation(cashier_a, tenant_a.id, "op-bad", kind, payload)
        assert db_session.query(AcceptedOperation).count() == 0

    def test_foreign_product_rejected(self, db_session, tenant_a, cashier_a, product_b):
        with pytest.raises(ValidationFailed):
            accept_operation(cashier_a, tenant_a.id, "op-1", "sale", {"items": [{"product_id": product_b.id}]})

    def test_locked_tenant_refused(self, db_session, tenant_a, cashier_a):
        billing = db_session.query(BillingRecord).filter_by(tenant_id=tenant_a.id).one()
        billing.paid_through = utcnow() - timedelta(days=60)
        db.session.commit()

        with pytest.raises(AccessLocked):
            accept_operation(cashier_a, tenant_a.id, "op-1", "feedback", {"message": "Hi"})

    def test_replay_still_answers_when_locked(self, db_session, tenant_a, cashier_a):
        accept_operation(cashier_a, tenant_a.id, "op-1", "feedback", {"message": "Hi"})
        billing = db_session.query(BillingRecord).filter_by(tenant_id=tenant_a.id).one()
        billing.locked_override = True
        db.session.commit()

        assert accept_operation(cashier_a, tenant_a.id, "op-1", "feedback", {"message": "Hi"}).replayed

    def test_requires_tenant(self, db_session, operator):
        with pytest.raises(NotAuthorized):
            accept_operation(operator, None, "op-1", "feedback", {"message": "Hi"})


class TestOperationsRoute:

    def test_created_then_replayed(self, client, db_session, tenant_a, cashier_a):
        headers = login_headers(client, "cashier_a")
        body = {'operation_id': 'op-42', 'kind': 'booking', 'payload': {
            'customer_name': 'Ann', 'scheduled_at': '2026-05-01T10:00:00Z',
        }}

        first = client.post('/api/operations', json=body, headers=headers)
        second = client.post('/api/operations', json=body, headers=headers)

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.get_json()["operation"]["replayed"] is True

    def test_validation_is_422(self, client, db_session, tenant_a, cashier_a):
        response = client.post('/api/operations', json={
            'operation_id': 'op-1', 'kind': 'feedback', 'payload': {'message': ''},
        }, headers=login_headers(client, "cashier_a"))

        assert response.status_code == 422
        assert response.get_json()["code"] == "validation_failed"

    def test_locked_is_402(self, client, db_session, tenant_a, cashier_a):
        headers = login_headers(client, "cashier_a")
        billing = db_session.query(BillingRecord).filter_by(tenant_id=tenant_a.id).one()
        billing.locked_override = True
        db.session.commit()

        response = client.post('/api/operations', json={
            'operation_id': 'op-1', 'kind': 'feedback', 'payload': {'message': 'Hi'},
        }, headers=headers)
        assert response.status_code == 402
        assert response.get_json()["code"] == "access_locked"
