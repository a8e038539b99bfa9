# Overview: Pytest coverage for device-side components with stubbed authorities (no server).

"""
Device Component Tests

- Offline queue: ordered drain, stop on retryable failure, per-entry
  rejection, tenant/account scoping, capacity drop, backoff after a
  network stop
- Device license: never self-activates offline; a prior marker allows
- Secure clock: offset sync, exponential backoff, wall-clock rollback
- Connectivity: transitions only, ordered and isolated subscribers, and a
  heartbeat while steadily online
- Credential cache: offline verifiers
"""

import json
from datetime import datetime, timedelta

import httpx
import pytest
from cryptography.fernet import Fernet

from tenantgate.access_state import AccessSnapshot
from tenantgate.client.authority import HttpAuthorityClient
from tenantgate.client.config import DeviceConfig
from tenantgate.client.connectivity import OFFLINE, ONLINE, ConnectivityObserver
from tenantgate.client.credential_cache import CredentialCache
from tenantgate.client.device_license import (
    SOURCE_AUTHORITY,
    SOURCE_BYPASS,
    SOURCE_DEGRADED,
    SOURCE_MARKER,
    DeviceLicenseManager,
)
from tenantgate.client.local_store import LocalDeviceState, StoredSession
from tenantgate.client.operation_queue import MAX_RETRY_INTERVAL, OfflineOperationQueue
from tenantgate.client.secure_clock import DEFAULT_SYNC_INTERVAL, MAX_SYNC_INTERVAL, SecureClock
from tenantgate.errors import (
    AccessLocked,
    AccountDisabled,
    DeviceLimitExceeded,
    DeviceNotActivated,
    TransientNetworkFailure,
    ValidationFailed,
)
from tenantgate.time_utils import utcnow


TENANT = 1
ACCOUNT = 7


@pytest.fixture
def state():
    state = LocalDeviceState.open(DeviceConfig(db_path=":memory:", device_key=None))
    yield state
    state.close()


class StubAuthority:
    """Answers submit/register/time calls from scripted outcomes."""

    def __init__(self):
        self.submitted = []
        self.failures = {}
        self.registration = {"allowed": True, "active_devices": 1, "max_devices": 2}
        self.server_ms = None

    def submit_operation(self, access_token, operation_id, kind, payload):
        self.submitted.append(operation_id)
        failure = self.failures.get(operation_id)
        if failure is not None:
            raise failure
        return {"operation": {"operation_id": operation_id, "replayed": False}}

    def register_device(self, access_token, device_id, platform=None, label=None):
        if isinstance(self.registration, Exception):
            raise self.registration
        return self.registration

    def server_time_ms(self):
        if self.server_ms is None:
            raise TransientNetworkFailure()
        return self.server_ms


def _enqueue(queue, n, tenant_id=TENANT, account_id=ACCOUNT, prefix="op"):
    return [
        queue.enqueue("feedback", {"message": f"note {i}"}, tenant_id=tenant_id,
                      account_id=account_id, operation_id=f"{prefix}-{i}")
        for i in range(1, n + 1)
    ]


def _pending_ids(queue):
    return [e.operation_id for e in reversed(queue.entries())]


class TestOfflineQueue:

    def test_retryable_failure_stops_drain_in_order(self, state):
        authority = StubAuthority()
        authority.failures["op-3"] = TransientNetworkFailure()
        queue = OfflineOperationQueue(state, authority)
        _enqueue(queue, 6)

        report = queue.drain("token", tenant_id=TENANT, account_id=ACCOUNT)

        assert report.sent == ["op-1", "op-2"]
        assert report.stopped_reason == "transient_network_failure"
        assert _pending_ids(queue) == ["op-3", "op-4", "op-5", "op-6"]
        assert authority.submitted == ["op-1", "op-2", "op-3"]

    def test_retry_after_failure_resends_from_stop_point(self, state):
        authority = StubAuthority()
        authority.failures["op-2"] = TransientNetworkFailure()
        queue = OfflineOperationQueue(state, authority)
        _enqueue(queue, 3)

        queue.drain("token", tenant_id=TENANT, account_id=ACCOUNT)
        authority.failures.clear()
        report = queue.drain("token", tenant_id=TENANT, account_id=ACCOUNT)

        assert report.sent == ["op-2", "op-3"]
        assert queue.count() == 0

    def test_validation_rejection_continues(self, state):
        authority = StubAuthority()
        authority.failures["op-2"] = ValidationFailed("Unknown product 9")
        queue = OfflineOperationQueue(state, authority)
        _enqueue(queue, 3)

        report = queue.drain("token", tenant_id=TENANT, account_id=ACCOUNT)

        assert report.sent == ["op-1", "op-3"]
        assert report.rejected == [("op-2", "Unknown product 9")]
        kept = queue.entries()
        assert [e.operation_id for e in kept] == ["op-2"]
        assert kept[0].rejected_at is not None
        assert kept[0].last_error == "Unknown product 9"

        authority.submitted.clear()
        queue.drain("token", tenant_id=TENANT, account_id=ACCOUNT)
        assert authority.submitted == []

    def test_rejected_entry_can_be_retried_or_discarded(self, state):
        authority = StubAuthority()
        authority.failures["op-1"] = ValidationFailed("bad")
        queue = OfflineOperationQueue(state, authority)
        _enqueue(queue, 2)
        queue.drain("token", tenant_id=TENANT, account_id=ACCOUNT)

        assert queue.retry("op-1")
        authority.failures.clear()
        assert queue.drain("token", tenant_id=TENANT, account_id=ACCOUNT).sent == ["op-1"]

        _enqueue(queue, 1, prefix="other")
        assert queue.discard("other-1")
        assert not queue.discard("other-1")

    def test_locked_tenant_stops_drain(self, state):
        authority = StubAuthority()
        authority.failures["op-1"] = AccessLocked()
        queue = OfflineOperationQueue(state, authority)
        _enqueue(queue, 2)

        report = queue.drain("token", tenant_id=TENANT, account_id=ACCOUNT)

        assert report.sent == []
        assert report.stopped_reason == "access_locked"
        assert queue.count() == 2
        assert queue.entries()[-1].rejected_at is None

    def test_other_owners_untouched(self, state):
        authority = StubAuthority()
        queue = OfflineOperationQueue(state, authority)
        _enqueue(queue, 2, tenant_id=2, prefix="t2")
        _enqueue(queue, 1, account_id=8, prefix="acct8")
        _enqueue(queue, 2)

        report = queue.drain("token", tenant_id=TENANT, account_id=ACCOUNT)

        assert report.sent == ["op-1", "op-2"]
        assert queue.count(tenant_id=2) == 2
        assert queue.count(tenant_id=TENANT, account_id=8) == 1

    def test_drain_batch_limit(self, state):
        queue = OfflineOperationQueue(state, StubAuthority())
        _enqueue(queue, 5)

        report = queue.drain("token", tenant_id=TENANT, account_id=ACCOUNT, limit=2)

        assert report.sent == ["op-1", "op-2"]
        assert report.remaining == 3

    def test_no_session_sends_nothing(self, state):
        authority = StubAuthority()
        queue = OfflineOperationQueue(state, authority)
        _enqueue(queue, 1)

        report = queue.drain(None, tenant_id=TENANT, account_id=ACCOUNT)

        assert report.stopped_reason == "no_session"
        assert authority.submitted == []

    def test_cap_drops_oldest(self, state):
        queue = OfflineOperationQueue(state, StubAuthority(), cap=3)
        _enqueue(queue, 5)

        assert queue.count() == 3
        assert _pending_ids(queue) == ["op-3", "op-4", "op-5"]

    def test_payload_is_sealed_at_rest(self, state):
        from tenantgate.client.local_store import QueuedOperationRow

        queue = OfflineOperationQueue(state, StubAuthority())
        queue.enqueue("feedback", {"message": "secret note"}, tenant_id=TENANT, account_id=ACCOUNT)

        with state.transaction() as s:
            row = s.query(QueuedOperationRow).one()
            assert "secret note" not in row.payload
        assert queue.entries()[0].payload == {"message": "secret note"}

    def test_unknown_kind_refused(self, state):
        queue = OfflineOperationQueue(state, StubAuthority())
        with pytest.raises(ValueError):
            queue.enqueue("refund", {}, tenant_id=TENANT, account_id=ACCOUNT)

    def test_transient_stop_backs_off(self, state):
        authority = StubAuthority()
        authority.failures["op-1"] = TransientNetworkFailure()
        dial = Dial(0.0)
        queue = OfflineOperationQueue(state, authority, retry_interval=30, monotonic=dial)
        _enqueue(queue, 2)
        assert queue.drain_due()

        queue.drain("token", tenant_id=TENANT, account_id=ACCOUNT)
        assert not queue.drain_due()
        assert queue.retry_interval == 30

        dial.value = 30.0
        assert queue.drain_due()
        queue.drain("token", tenant_id=TENANT, account_id=ACCOUNT)
        assert queue.retry_interval == 60

        dial.value = 60.0
        assert not queue.drain_due()
        dial.value = 90.0
        assert queue.drain_due()

        authority.failures.clear()
        report = queue.drain("token", tenant_id=TENANT, account_id=ACCOUNT)
        assert report.sent == ["op-1", "op-2"]
        assert queue.drain_due()
        assert queue.retry_interval == 30

    def test_backoff_is_capped(self, state):
        authority = StubAuthority()
        authority.failures["op-1"] = TransientNetworkFailure()
        dial = Dial(0.0)
        queue = OfflineOperationQueue(state, authority, retry_interval=30, monotonic=dial)
        _enqueue(queue, 1)

        for _ in range(10):
            queue.drain("token", tenant_id=TENANT, account_id=ACCOUNT)
            dial.value += queue.retry_interval

        assert queue.retry_interval == MAX_RETRY_INTERVAL

    def test_validation_rejection_does_not_back_off(self, state):
        authority = StubAuthority()
        authority.failures["op-1"] = ValidationFailed("bad")
        queue = OfflineOperationQueue(state, authority, monotonic=Dial(0.0))
        _enqueue(queue, 1)

        queue.drain("token", tenant_id=TENANT, account_id=ACCOUNT)
        assert queue.drain_due()


class TestDeviceLicense:

    def _manager(self, state, authority, online):
        return DeviceLicenseManager(authority, state, ConnectivityObserver(initially_online=online))

    def test_offline_without_marker_not_activated(self, state):
        manager = self._manager(state, StubAuthority(), online=False)

        with pytest.raises(DeviceNotActivated):
            manager.register_or_validate(TENANT, role="cashier")
        assert not manager.is_activated(TENANT)

    def test_offline_with_marker_allowed(self, state):
        manager = self._manager(state, StubAuthority(), online=False)
        state.set_license_marker(TENANT, manager.device_id)

        decision = manager.register_or_validate(TENANT, role="cashier")
        assert decision.allowed
        assert decision.source == SOURCE_MARKER

    def test_marker_for_other_tenant_does_not_count(self, state):
        manager = self._manager(state, StubAuthority(), online=False)
        state.set_license_marker(2, manager.device_id)

        with pytest.raises(DeviceNotActivated):
            manager.register_or_validate(TENANT, role="cashier")

    def test_online_admission_writes_marker(self, state):
        manager = self._manager(state, StubAuthority(), online=True)

        decision = manager.register_or_validate(TENANT, role="cashier", access_token="token")

        assert decision.source == SOURCE_AUTHORITY
        assert decision.max_devices == 2
        assert manager.is_activated(TENANT)

    def test_rejection_revokes_marker(self, state):
        authority = StubAuthority()
        authority.registration = {"allowed": False, "error": "Device limit reached (2 of 2 active)."}
        manager = self._manager(state, authority, online=True)
        state.set_license_marker(TENANT, manager.device_id)

        with pytest.raises(DeviceLimitExceeded) as exc:
            manager.register_or_validate(TENANT, role="cashier", access_token="token")
        assert "2 of 2" in exc.value.message
        assert not manager.is_activated(TENANT)

    def test_transient_failure_never_creates_marker(self, state):
        authority = StubAuthority()
        authority.registration = TransientNetworkFailure()
        manager = self._manager(state, authority, online=True)

        with pytest.raises(DeviceNotActivated) as exc:
            manager.register_or_validate(TENANT, role="cashier", access_token="token")
        assert isinstance(exc.value.__cause__, TransientNetworkFailure)
        assert not manager.is_activated(TENANT)

        state.set_license_marker(TENANT, manager.device_id)
        assert manager.register_or_validate(TENANT, role="cashier", access_token="token").source == SOURCE_DEGRADED

    def test_operator_bypasses(self, state):
        manager = self._manager(state, StubAuthority(), online=False)
        assert manager.register_or_validate(None, role="platform_operator").source == SOURCE_BYPASS

    def test_marker_sealed_by_other_key_is_ignored(self, state):
        manager = self._manager(state, StubAuthority(), online=False)
        state.set_license_marker(TENANT, manager.device_id)

        other = LocalDeviceState(state.engine, Fernet(Fernet.generate_key()))
        assert not other.has_license_marker(TENANT, manager.device_id)


class Dial:
    def __init__(self, value):
        self.value = value

    def __call__(self):
        return self.value


class TestSecureClock:

    def test_sync_learns_offset(self, state):
        authority = StubAuthority()
        authority.server_ms = 1_005_000
        clock = SecureClock(authority, state, wall=Dial(1000.0), monotonic=Dial(0.0))

        assert clock.sync()
        assert clock.offset_ms == 5000
        assert clock.timestamp_ms() == 1_005_000
        assert clock.is_synced()

    def test_offset_survives_restart(self, state):
        authority = StubAuthority()
        authority.server_ms = 1_005_000
        SecureClock(authority, state, wall=Dial(1000.0), monotonic=Dial(0.0)).sync()

        restarted = SecureClock(StubAuthority(), state, wall=Dial(2000.0), monotonic=Dial(0.0))
        assert restarted.offset_ms == 5000

    def test_backoff_doubles_to_cap_and_resets(self, state):
        authority = StubAuthority()
        clock = SecureClock(authority, state, wall=Dial(1000.0), monotonic=Dial(0.0))

        intervals = []
        for _ in range(5):
            assert not clock.sync()
            intervals.append(clock.sync_interval)
        assert intervals == [600.0, 1200.0, MAX_SYNC_INTERVAL, MAX_SYNC_INTERVAL, MAX_SYNC_INTERVAL]

        authority.server_ms = 1_000_000
        assert clock.sync()
        assert clock.sync_interval == DEFAULT_SYNC_INTERVAL

    def test_sync_due_follows_monotonic_time(self, state):
        authority = StubAuthority()
        authority.server_ms = 1_000_000
        mono = Dial(0.0)
        clock = SecureClock(authority, state, wall=Dial(1000.0), monotonic=mono)

        assert clock.maybe_sync()
        mono.value = DEFAULT_SYNC_INTERVAL - 1
        assert not clock.sync_due()
        mono.value = DEFAULT_SYNC_INTERVAL
        assert clock.sync_due()

    def test_wall_clock_rollback_detected(self, state):
        authority = StubAuthority()
        authority.server_ms = 1_000_000
        wall = Dial(1000.0)
        mono = Dial(0.0)
        clock = SecureClock(authority, state, wall=wall, monotonic=mono)
        clock.sync()

        # Ten seconds later somebody winds the wall clock back a day
        mono.value = 10.0
        wall.value = 1000.0 - 86400 + 10.0
        authority.server_ms = None
        clock.sync()

        assert clock.timestamp_ms() == pytest.approx(1_010_000)

    def test_small_drift_tolerated(self, state):
        authority = StubAuthority()
        authority.server_ms = 1_000_000
        wall = Dial(1000.0)
        mono = Dial(0.0)
        clock = SecureClock(authority, state, wall=wall, monotonic=mono)
        clock.sync()

        mono.value = 10.0
        wall.value = 1000.0 + 10.0 + 30.0
        authority.server_ms = None
        clock.sync()

        assert clock.offset_ms == 0

    def test_now_drives_cached_access_state(self, state):
        authority = StubAuthority()
        paid_through = utcnow() + timedelta(days=1)
        snapshot = AccessSnapshot(TENANT, "active", False, paid_through, 0, 2, utcnow())

        wall = Dial((paid_through + timedelta(days=2) - datetime(1970, 1, 1)).total_seconds())
        clock = SecureClock(authority, state, wall=wall, monotonic=Dial(0.0))

        assert snapshot.state_at(clock.now()) == "locked"


class TestConnectivity:

    def test_only_transitions_are_published_in_order(self):
        events = []
        observer = ConnectivityObserver()
        observer.subscribe(lambda e: events.append(("first", e)))
        observer.subscribe(lambda e: events.append(("second", e)))

        observer.set_online(False)
        observer.set_online(True)
        observer.set_online(True)
        observer.set_online(False)

        assert events == [("first", ONLINE), ("second", ONLINE), ("first", OFFLINE), ("second", OFFLINE)]

    def test_failing_subscriber_does_not_block_others(self):
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        observer = ConnectivityObserver()
        observer.subscribe(broken)
        observer.subscribe(seen.append)
        observer.set_online(True)

        assert seen == [ONLINE]

    def test_unsubscribe(self):
        seen = []
        observer = ConnectivityObserver()
        unsubscribe = observer.subscribe(seen.append)
        unsubscribe()
        observer.set_online(True)
        assert seen == []

    def test_check_follows_ping_outcome(self):
        results = [None, TransientNetworkFailure()]

        def ping():
            outcome = results.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return 0

        observer = ConnectivityObserver(ping=ping)
        assert observer.check() is True
        assert observer.check() is False

    def test_heartbeat_only_while_steadily_online(self):
        reachable = [True]
        beats = []
        events = []

        def ping():
            if not reachable[0]:
                raise TransientNetworkFailure()
            return 0

        observer = ConnectivityObserver(ping=ping)
        observer.subscribe(events.append)
        observer.on_heartbeat(lambda: beats.append("beat"))

        observer.check()
        assert events == [ONLINE]
        assert beats == []

        observer.check()
        observer.check()
        assert beats == ["beat", "beat"]

        reachable[0] = False
        observer.check()
        assert events == [ONLINE, OFFLINE]
        assert beats == ["beat", "beat"]


class TestCredentialCache:

    ACCOUNT_JSON = {"id": 7, "username": "cashier_a", "role": "cashier", "tenant_id": TENANT,
                    "display_name": "Cashier A", "permissions": {"sell": True}}

    def test_seed_then_verify(self, state):
        cache = CredentialCache(state, rounds=4)
        cache.seed(self.ACCOUNT_JSON, "Password123")

        entry = cache.verify(" Cashier_A ", "Password123")
        assert entry.account_id == 7
        assert entry.to_account()["permissions"] == {"sell": True}
        assert cache.verify("cashier_a", "Wrong12345") is None
        assert cache.verify("nobody", "Password123") is None

    def test_verifier_is_not_plain_bcrypt_at_rest(self, state):
        from tenantgate.client.local_store import LocalCredential

        CredentialCache(state, rounds=4).seed(self.ACCOUNT_JSON, "Password123")
        with state.transaction() as s:
            row = s.query(LocalCredential).one()
            assert not row.verifier.startswith("$2")

    def test_delete(self, state):
        cache = CredentialCache(state, rounds=4)
        cache.seed(self.ACCOUNT_JSON, "Password123")

        assert cache.delete("cashier_a")
        assert cache.verify("cashier_a", "Password123") is None
        assert not cache.delete("cashier_a")


class TestLocalState:

    def test_impersonation_markers_written_together(self, state):
        backup = StoredSession("access", "refresh")
        state.write_impersonation(backup, {"audit_id": 3})

        stored, info = state.read_impersonation()
        assert stored.access_token == "access"
        assert info["audit_id"] == 3

        state.finish_impersonation({"username": "operator"}, backup)
        assert state.read_impersonation() is None

    def test_teardown_keeps_device_identity(self, state):
        device_id = state.device_id
        state.theme = "dark"
        state.set_login({"id": 1, "username": "cashier_a"}, StoredSession("a", "r"))

        state.teardown_session()

        assert state.get_session() is None
        assert not state.session_active
        assert state.device_id == device_id
        assert state.theme == "dark"
        assert state.last_username == "cashier_a"


class TestAuthorityClient:

    def _client(self, handler):
        return HttpAuthorityClient("http://authority", transport=httpx.MockTransport(handler))

    def test_error_codes_map_back(self):
        def handler(request):
            return httpx.Response(403, json={"error": "Account is disabled", "code": "account_disabled"})

        with self._client(handler) as authority:
            with pytest.raises(AccountDisabled) as exc:
                authority.verify_credentials("cashier_a", "Password123")
        assert exc.value.message == "Account is disabled"

    def test_server_error_is_transient(self):
        with self._client(lambda request: httpx.Response(502, text="Bad gateway")) as authority:
            with pytest.raises(TransientNetworkFailure):
                authority.tenant_access("token")

    def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with self._client(handler) as authority:
            with pytest.raises(TransientNetworkFailure):
                authority.register_device("token", "device-1")

    def test_unreadable_body_is_transient(self):
        with self._client(lambda request: httpx.Response(200, text="<html>")) as authority:
            with pytest.raises(TransientNetworkFailure):
                authority.server_time_ms()

    def test_bearer_token_sent(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"operation": {"replayed": False}})

        with self._client(handler) as authority:
            authority.submit_operation("abc", "op-1", "feedback", {"message": "hi"})

        assert seen["auth"] == "Bearer abc"
        assert seen["body"] == {"operation_id": "op-1", "kind": "feedback", "payload": {"message": "hi"}}
