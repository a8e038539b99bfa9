# Overview: Pytest coverage for the device client against the real authority app over WSGI.

"""
Device Client Integration Tests

The device talks to the in-memory authority through httpx.WSGITransport.
A path can be made unreachable to simulate connectivity failures.

- First login needs the authority; later logins work offline
- Operators always need a cloud session
- A definitive cloud refusal removes the stale offline login
- The device cap is enforced at login; rejection leaves no local login
- Queued operations reach the authority exactly once
- Impersonation switches identity and returns through an audited end
"""

from datetime import timedelta

import httpx
import pytest

from conftest import PASSWORD
from tenantgate.client import create_device
from tenantgate.client.config import DeviceConfig
from tenantgate.client.device_license import SOURCE_AUTHORITY, SOURCE_BYPASS, SOURCE_MARKER
from tenantgate.client.reconciler import (
    CLOUD_UNAVAILABLE_WARNING,
    STATE_DENIED,
    STATE_LOCAL_ONLY,
    STATE_LOCAL_PLUS_CLOUD,
)
from tenantgate.errors import (
    AccessLocked,
    AccountDisabled,
    DeviceLimitExceeded,
    DeviceNotActivated,
    NotAuthorized,
    OfflineLoginUnavailable,
    OnlineRequired,
    RateLimited,
    TransientNetworkFailure,
    ValidationFailed,
)
from tenantgate.extensions import db
from tenantgate.models import AcceptedOperation, BillingRecord, DeviceRecord, Feedback, ImpersonationAuditRecord
from tenantgate.services import device_service, session_service
from tenantgate.time_utils import utcnow


class FlakyTransport(httpx.BaseTransport):
    """WSGI transport with switchable unreachable paths."""

    def __init__(self, app):
        self._inner = httpx.WSGITransport(app=app)
        self.unreachable = set()

    def handle_request(self, request):
        if request.url.path in self.unreachable:
            raise httpx.ConnectError("unreachable", request=request)
        return self._inner.handle_request(request)


@pytest.fixture
def make_device(app, db_session):
    devices = []

    def _make(online=True, **overrides):
        transport = FlakyTransport(app)
        config = DeviceConfig(api_base_url="http://authority", db_path=":memory:", bcrypt_rounds=4, **overrides)
        device = create_device(config, transport=transport, initially_online=online)
        device.transport = transport
        devices.append(device)
        return device

    yield _make
    for device in devices:
        device.close()


class TestLogin:

    def test_first_login_online_then_offline(self, make_device, tenant_a, cashier_a):
        device = make_device()

        first = device.sessions.login("cashier_a", PASSWORD)
        assert first.state == STATE_LOCAL_PLUS_CLOUD
        assert first.license.source == SOURCE_AUTHORITY
        assert first.access_state == "active"
        assert device.licenses.is_activated(tenant_a.id)

        device.sessions.logout(forget_credential=False)
        device.connectivity.set_online(False)

        offline = device.sessions.login("cashier_a", PASSWORD)
        assert offline.state == STATE_LOCAL_ONLY
        assert offline.warning == CLOUD_UNAVAILABLE_WARNING
        assert offline.license.source == SOURCE_MARKER
        assert offline.account["tenant_id"] == tenant_a.id

    def test_offline_wrong_password(self, make_device, cashier_a):
        device = make_device()
        device.sessions.login("cashier_a", PASSWORD)
        device.sessions.logout(forget_credential=False)
        device.connectivity.set_online(False)

        with pytest.raises(OfflineLoginUnavailable):
            device.sessions.login("cashier_a", "Wrong12345")

    def test_fresh_device_offline(self, make_device, cashier_a):
        device = make_device(online=False)

        with pytest.raises(OfflineLoginUnavailable):
            device.sessions.login("cashier_a", PASSWORD)
        assert device.credentials.get("cashier_a") is None

    def test_logout_forgets_offline_login(self, make_device, cashier_a):
        device = make_device()
        device.sessions.login("cashier_a", PASSWORD)
        device.sessions.logout()
        device.connectivity.set_online(False)

        with pytest.raises(OfflineLoginUnavailable):
            device.sessions.login("cashier_a", PASSWORD)

    def test_operator_needs_cloud(self, make_device, operator):
        device = make_device()
        result = device.sessions.login("operator", PASSWORD)
        assert result.license.source == SOURCE_BYPASS
        assert result.has_cloud_session

        device.sessions.logout(forget_credential=False)
        device.connectivity.set_online(False)
        with pytest.raises(OnlineRequired):
            device.sessions.login("operator", PASSWORD)

    def test_operator_cloud_unreachable(self, make_device, operator):
        device = make_device()
        device.sessions.login("operator", PASSWORD)
        device.sessions.logout(forget_credential=False)
        device.transport.unreachable.add("/api/auth/verify")

        with pytest.raises(OnlineRequired):
            device.sessions.login("operator", PASSWORD)

    def test_operator_other_refusal_is_denied(self, make_device, operator, monkeypatch):
        device = make_device()
        device.sessions.login("operator", PASSWORD)
        device.sessions.logout(forget_credential=False)

        def throttled(username, password):
            raise RateLimited()

        monkeypatch.setattr(device.authority, "verify_credentials", throttled)

        with pytest.raises(RateLimited):
            device.sessions.login("operator", PASSWORD)
        assert device.sessions.status == STATE_DENIED

    def test_cloud_refusal_overrides_local_match(self, make_device, db_session, cashier_a):
        device = make_device()
        device.sessions.login("cashier_a", PASSWORD)
        device.sessions.logout(forget_credential=False)

        cashier_a.is_active = False
        db_session.commit()

        with pytest.raises(AccountDisabled):
            device.sessions.login("cashier_a", PASSWORD)
        assert device.credentials.get("cashier_a") is None

    def test_cloud_unreachable_degrades_to_local(self, make_device, tenant_a, cashier_a):
        device = make_device()
        device.sessions.login("cashier_a", PASSWORD)
        device.sessions.logout(forget_credential=False)
        device.transport.unreachable.update({"/api/auth/verify", "/api/system/time"})

        result = device.sessions.login("cashier_a", PASSWORD)

        assert result.state == STATE_LOCAL_ONLY
        assert result.warning == CLOUD_UNAVAILABLE_WARNING
        assert result.license.source == SOURCE_MARKER
        assert device.state.get_session() is None

    def test_repeat_login_is_stable(self, make_device, db_session, tenant_a, cashier_a):
        device = make_device()
        device.sessions.login("cashier_a", PASSWORD)
        device.sessions.login("cashier_a", PASSWORD)

        assert db_session.query(DeviceRecord).filter_by(tenant_id=tenant_a.id).count() == 1


class TestDeviceCap:

    def test_third_device_rejected_without_residue(self, make_device, db_session, tenant_a, admin_a):
        make_device().sessions.login("admin_a", PASSWORD)
        make_device().sessions.login("admin_a", PASSWORD)
        third = make_device()

        with pytest.raises(DeviceLimitExceeded) as exc:
            third.sessions.login("admin_a", PASSWORD)

        assert "2 of 2" in exc.value.message
        assert third.credentials.get("admin_a") is None
        assert third.state.get_session() is None
        assert not third.state.session_active
        assert not third.licenses.is_activated(tenant_a.id)
        assert db_session.query(DeviceRecord).filter_by(tenant_id=tenant_a.id, is_active=True).count() == 2

    def test_deactivated_device_loses_marker(self, make_device, db_session, tenant_a, admin_a):
        first = make_device()
        first.sessions.login("admin_a", PASSWORD)
        first.sessions.logout(forget_credential=False)

        record = db_session.query(DeviceRecord).filter_by(device_id=first.state.device_id).one()
        device_service.deactivate_device(admin_a, tenant_a.id, record.id)
        billing = db_session.query(BillingRecord).filter_by(tenant_id=tenant_a.id).one()
        billing.max_devices = 1
        db_session.commit()
        make_device().sessions.login("admin_a", PASSWORD)

        with pytest.raises(DeviceLimitExceeded):
            first.sessions.login("admin_a", PASSWORD)
        assert not first.licenses.is_activated(tenant_a.id)

    def test_unreachable_registration_on_fresh_device(self, make_device, db_session, tenant_a, cashier_a):
        device = make_device()
        device.transport.unreachable.add("/api/devices/register")

        with pytest.raises(DeviceNotActivated):
            device.sessions.login("cashier_a", PASSWORD)

        assert device.sessions.status == STATE_DENIED
        assert device.credentials.get("cashier_a") is None
        assert device.state.get_session() is None
        assert not device.licenses.is_activated(tenant_a.id)
        assert db_session.query(DeviceRecord).filter_by(tenant_id=tenant_a.id).count() == 0

    def test_reconnect_revokes_license_over_cap(self, make_device, db_session, tenant_a, admin_a):
        first = make_device()
        first.sessions.login("admin_a", PASSWORD)
        first.connectivity.set_online(False)

        record = db_session.query(DeviceRecord).filter_by(device_id=first.state.device_id).one()
        device_service.deactivate_device(admin_a, tenant_a.id, record.id)
        billing = db_session.query(BillingRecord).filter_by(tenant_id=tenant_a.id).one()
        billing.max_devices = 1
        db_session.commit()
        make_device().sessions.login("admin_a", PASSWORD)

        first.connectivity.set_online(True)

        assert first.sessions.status == STATE_DENIED
        assert not first.licenses.is_activated(tenant_a.id)
        assert first.credentials.get("admin_a") is None
        assert first.state.get_session() is None
        assert not first.state.session_active

    def test_reconnect_with_registration_unreachable_keeps_session(self, make_device, tenant_a, cashier_a):
        device = make_device()
        device.sessions.login("cashier_a", PASSWORD)
        device.connectivity.set_online(False)
        device.transport.unreachable.add("/api/devices/register")

        device.connectivity.set_online(True)

        assert device.state.session_active
        assert device.licenses.is_activated(tenant_a.id)
        assert device.credentials.get("cashier_a") is not None


class TestSessionRestore:

    def test_restore_keeps_cloud_session(self, make_device, cashier_a):
        device = make_device()
        device.sessions.login("cashier_a", PASSWORD)
        before = device.state.get_session()

        assert device.sessions.restore()
        assert device.state.get_session().refresh_token == before.refresh_token
        assert device.sessions.status == STATE_LOCAL_PLUS_CLOUD

    def test_revoked_session_drops_to_local(self, make_device, cashier_a):
        device = make_device()
        device.sessions.login("cashier_a", PASSWORD)
        session_service.revoke_session(device.state.get_session().access_token)

        assert not device.sessions.restore()
        assert device.state.get_session() is None
        assert device.state.session_active
        assert device.sessions.status == STATE_LOCAL_ONLY

    def test_unreachable_keeps_tokens(self, make_device, cashier_a):
        device = make_device()
        device.sessions.login("cashier_a", PASSWORD)
        device.transport.unreachable.add("/api/auth/restore")

        assert not device.sessions.restore()
        assert device.state.get_session() is not None


class TestAccessOnDevice:

    def test_locked_tenant_cannot_operate(self, make_device, db_session, tenant_a, cashier_a):
        billing = db_session.query(BillingRecord).filter_by(tenant_id=tenant_a.id).one()
        billing.locked_override = True
        db_session.commit()

        device = make_device()
        result = device.sessions.login("cashier_a", PASSWORD)

        assert result.access_state == "locked"
        assert not result.operable
        with pytest.raises(AccessLocked):
            device.sessions.require_operable()

    def test_not_signed_in(self, make_device):
        with pytest.raises(NotAuthorized):
            make_device().sessions.require_operable()

    def test_demo_start(self, make_device, db_session):
        device = make_device()
        result = device.sessions.start_demo("trial@example.com")

        assert result.has_cloud_session
        assert result.access_state == "active"
        assert device.state.demo_expires_at > utcnow() + timedelta(hours=23)

    def test_demo_needs_connection(self, make_device):
        with pytest.raises(OnlineRequired):
            make_device(online=False).sessions.start_demo()


class TestQueueReplay:

    def _enqueue_feedback(self, device, message, operation_id=None):
        account = device.state.get_current_account()
        return device.queue.enqueue(
            "feedback",
            {"message": message},
            tenant_id=account["tenant_id"],
            account_id=account["id"],
            operation_id=operation_id,
        )

    def test_offline_queue_drains_on_reconnect(self, make_device, db_session, tenant_a, cashier_a):
        device = make_device()
        device.sessions.login("cashier_a", PASSWORD)
        device.connectivity.set_online(False)

        self._enqueue_feedback(device, "Loved the coffee")
        self._enqueue_feedback(device, "Music too loud")
        assert device.queue.count() == 2

        device.connectivity.set_online(True)

        assert device.queue.count() == 0
        messages = [f.message for f in db_session.query(Feedback).order_by(Feedback.id)]
        assert messages == ["Loved the coffee", "Music too loud"]

    def test_stalled_drain_retried_on_heartbeat(self, make_device, db_session, cashier_a):
        device = make_device(drain_retry_seconds=0)
        device.sessions.login("cashier_a", PASSWORD)
        self._enqueue_feedback(device, "First")
        self._enqueue_feedback(device, "Second")

        device.transport.unreachable.add("/api/operations")
        report = device.sessions.drain_queue()
        assert report.stopped_reason == "transient_network_failure"
        assert device.queue.count() == 2

        device.transport.unreachable.clear()
        assert device.connectivity.check()

        assert device.queue.count() == 0
        messages = [f.message for f in db_session.query(Feedback).order_by(Feedback.id)]
        assert messages == ["First", "Second"]

    def test_heartbeat_waits_for_backoff(self, make_device, db_session, cashier_a):
        device = make_device()
        device.sessions.login("cashier_a", PASSWORD)
        self._enqueue_feedback(device, "Later")

        device.transport.unreachable.add("/api/operations")
        device.sessions.drain_queue()
        device.transport.unreachable.clear()
        device.connectivity.check()

        assert device.queue.count() == 1
        assert not device.queue.drain_due()

    def test_lost_acknowledgment_is_not_applied_twice(self, make_device, db_session, cashier_a):
        device = make_device()
        device.sessions.login("cashier_a", PASSWORD)

        self._enqueue_feedback(device, "Once only", operation_id="op-dup")
        device.sessions.drain_queue()
        self._enqueue_feedback(device, "Once only", operation_id="op-dup")
        report = device.sessions.drain_queue()

        assert report.sent == ["op-dup"]
        assert db_session.query(Feedback).count() == 1
        assert db_session.query(AcceptedOperation).count() == 1

    def test_invalid_entry_kept_for_review(self, make_device, db_session, cashier_a):
        device = make_device()
        device.sessions.login("cashier_a", PASSWORD)

        self._enqueue_feedback(device, "", operation_id="op-empty")
        self._enqueue_feedback(device, "Fine", operation_id="op-fine")
        report = device.sessions.drain_queue()

        assert report.sent == ["op-fine"]
        assert [r[0] for r in report.rejected] == ["op-empty"]
        assert device.queue.entries()[0].rejected_at is not None


class TestImpersonationOnDevice:

    def test_round_trip(self, make_device, db_session, tenant_a, operator):
        device = make_device()
        device.sessions.login("operator", PASSWORD)
        operator_refresh = device.state.get_session().refresh_token

        info = device.impersonation.start(tenant_a.id, "cashier", "Till will not print")

        current = device.state.get_current_account()
        assert current["tenant_id"] == tenant_a.id
        assert current["is_support"] is True
        assert device.impersonation.active()["audit_id"] == info["audit_id"]
        assert device.state.last_username == "operator"

        restored = device.impersonation.end()

        assert restored.refresh_token == operator_refresh
        assert device.state.get_current_account()["username"] == "operator"
        assert device.impersonation.active() is None
        audit = db_session.get(ImpersonationAuditRecord, info["audit_id"])
        db_session.refresh(audit)
        assert audit.ended_at is not None

    def test_failed_switch_leaves_no_markers(self, make_device, db_session, tenant_a, operator):
        device = make_device()
        device.sessions.login("operator", PASSWORD)
        device.transport.unreachable.add("/api/auth/exchange")

        with pytest.raises(TransientNetworkFailure):
            device.impersonation.start(tenant_a.id, "cashier", "Checking stock")

        assert device.state.read_impersonation() is None
        assert device.state.get_current_account()["username"] == "operator"
        audit = db_session.query(ImpersonationAuditRecord).one()
        db_session.refresh(audit)
        assert audit.ended_at is not None

    def test_end_offline_keeps_markers(self, make_device, tenant_a, operator):
        device = make_device()
        device.sessions.login("operator", PASSWORD)
        device.impersonation.start(tenant_a.id, "cashier", "Checking stock")
        device.connectivity.set_online(False)

        with pytest.raises(OnlineRequired):
            device.impersonation.end()
        assert device.state.read_impersonation() is not None

    def test_reason_required(self, make_device, tenant_a, operator):
        device = make_device()
        device.sessions.login("operator", PASSWORD)
        with pytest.raises(ValidationFailed):
            device.impersonation.start(tenant_a.id, "cashier", "   ")

    def test_tenant_account_cannot_impersonate(self, make_device, tenant_a, tenant_b, admin_a):
        device = make_device()
        device.sessions.login("admin_a", PASSWORD)
        with pytest.raises(NotAuthorized):
            device.impersonation.start(tenant_b.id, "cashier", "Curious")

    def test_cannot_nest(self, make_device, tenant_a, tenant_b, operator):
        device = make_device()
        device.sessions.login("operator", PASSWORD)
        device.impersonation.start(tenant_a.id, "cashier", "First")
        with pytest.raises(NotAuthorized):
            device.impersonation.start(tenant_b.id, "cashier", "Second")
