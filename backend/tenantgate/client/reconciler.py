# Overview: Device login state machine reconciling the local credential cache with cloud sessions.

"""
Session Reconciler

STATES: no_local_credential -> local_only -> local_plus_cloud, or denied.

LOGIN (username, password, connectivity):
1. Local verification against the credential cache.
   - Match + platform operator: a cloud session is mandatory. Offline ->
     OnlineRequired, even though the local hash matched
   - Match + tenant role: accepted as local_only. When online, a cloud
     session is attempted too. A definitive cloud refusal (bad password,
     disabled account) overrides the stale local match: the entry is
     deleted and the login is denied. A connectivity failure only degrades
     to local_only with a warning
2. No local match:
   - Offline -> OfflineLoginUnavailable (no learning credentials offline)
   - Online -> verify, exchange for a session, then seed the cache
3. The candidate is gated through the device license manager and the access
   state evaluator. A license rejection deletes any entry this login seeded
   and tears the session down. A locked business still signs in, because
   its admin needs a session to redeem a reactivation code. The result
   carries access_state and operable=False, and require_operable() refuses
   every sale until billing is fixed.

RECONNECT: restore the cloud session, re-check the device license (a cap
rejection revokes marker, saved login and session together), then drain
the queue. A drain stopped by a network failure is retried from the
connectivity heartbeat after its backoff.

Repeating a failed login with the same inputs fails the same way. Repeating
a successful one only refreshes the authority's device last-seen.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..access_state import ACCESS_LOCKED, AccessSnapshot
from ..errors import (
    AccessError,
    AccessLocked,
    AccountDisabled,
    DeviceLimitExceeded,
    InvalidCredentials,
    NotAuthorized,
    OfflineLoginUnavailable,
    OnlineRequired,
    SessionRestoreFailed,
    TransientNetworkFailure,
)
from ..models.auth import ROLE_PLATFORM_OPERATOR
from ..time_utils import parse_iso_datetime
from .connectivity import ONLINE
from .device_license import LicenseDecision
from .local_store import StoredSession


logger = logging.getLogger(__name__)

STATE_NO_LOCAL_CREDENTIAL = "no_local_credential"
STATE_LOCAL_ONLY = "local_only"
STATE_LOCAL_PLUS_CLOUD = "local_plus_cloud"
STATE_DENIED = "denied"

CLOUD_UNAVAILABLE_WARNING = "Signed in offline. Changes will sync when the connection returns."


@dataclass
class LoginResult:
    account: dict
    state: str
    access_state: str | None
    license: LicenseDecision
    warning: str | None = None

    @property
    def has_cloud_session(self) -> bool:
        return self.state == STATE_LOCAL_PLUS_CLOUD

    @property
    def operable(self) -> bool:
        """False for a locked business: signed in, but only to reactivate."""
        return self.access_state != ACCESS_LOCKED


def _stored_session(issued: dict) -> StoredSession:
    return StoredSession(
        access_token=issued["access_token"],
        refresh_token=issued["refresh_token"],
        expires_at=issued.get("expires_at"),
        refresh_expires_at=issued.get("refresh_expires_at"),
    )


class SessionReconciler:
    def __init__(self, state, authority, connectivity, clock, credentials, licenses, queue=None):
        self._state = state
        self._authority = authority
        self._connectivity = connectivity
        self._clock = clock
        self._credentials = credentials
        self._licenses = licenses
        self._queue = queue
        self.status = STATE_NO_LOCAL_CREDENTIAL

    # =========================================================================
    # CLOUD SESSION
    # =========================================================================

    def _online_session(self, username: str, password: str) -> tuple[dict, StoredSession]:
        """verify -> exchange. Returns (account, session) and caches the access snapshot."""
        verified = self._authority.verify_credentials(username, password)
        issued = self._authority.exchange(verified["exchange_token"])

        account = issued.get("account") or verified["account"]
        if account.get("username") != verified["account"].get("username"):
            # The exchanged session must belong to the account we just verified
            self._best_effort_logout(issued.get("access_token"))
            raise SessionRestoreFailed("Session does not match the verified account")

        if issued.get("access"):
            self._state.cache_access(AccessSnapshot.from_dict(issued["access"]))
        return account, _stored_session(issued)

    def _best_effort_logout(self, access_token: str | None) -> None:
        if not access_token:
            return
        try:
            self._authority.logout(access_token)
        except AccessError as e:
            logger.warning("Could not revoke cloud session: %s", e.message)

    # =========================================================================
    # LOGIN
    # =========================================================================

    def login(self, username: str, password: str) -> LoginResult:
        online = self._connectivity.is_online
        if online:
            self._clock.maybe_sync()

        seeded = False
        warning = None
        session: StoredSession | None = None
        local = self._credentials.verify(username, password)

        if local is not None:
            account = local.to_account()
            if local.role == ROLE_PLATFORM_OPERATOR:
                if not online:
                    self.status = STATE_DENIED
                    raise OnlineRequired()
                try:
                    account, session = self._online_session(local.username, password)
                except (InvalidCredentials, AccountDisabled):
                    self._credentials.delete(local.username)
                    self.status = STATE_DENIED
                    raise
                except TransientNetworkFailure:
                    self.status = STATE_DENIED
                    raise OnlineRequired("Could not reach the server. This account requires an online sign-in.")
                except AccessError:
                    self.status = STATE_DENIED
                    raise
                self._credentials.seed(account, password)
            elif online:
                try:
                    account, session = self._online_session(local.username, password)
                except (InvalidCredentials, AccountDisabled):
                    logger.warning("Cloud refused %s; removing the saved offline login", local.username)
                    self._credentials.delete(local.username)
                    self.status = STATE_DENIED
                    raise
                except AccessError as e:
                    logger.warning("Cloud session unavailable for %s: %s", local.username, e.message)
                    warning = CLOUD_UNAVAILABLE_WARNING
                else:
                    self._credentials.seed(account, password)
            else:
                warning = CLOUD_UNAVAILABLE_WARNING
        else:
            if not online:
                self.status = STATE_DENIED
                raise OfflineLoginUnavailable()
            try:
                account, session = self._online_session(username, password)
            except AccessError:
                self.status = STATE_DENIED
                raise
            self._credentials.seed(account, password)
            seeded = True

        try:
            decision = self._licenses.register_or_validate(
                account.get("tenant_id"),
                role=account.get("role"),
                access_token=session.access_token if session else None,
                is_online=online,
            )
        except AccessError:
            if seeded or session is not None:
                self._credentials.delete(account.get("username"))
            if session is not None:
                self._best_effort_logout(session.access_token)
            self._state.teardown_session()
            self.status = STATE_DENIED
            raise

        access_state = self._evaluate(account)
        self._state.set_login(account, session)
        self.status = STATE_LOCAL_PLUS_CLOUD if session is not None else STATE_LOCAL_ONLY
        logger.info("Signed in %s (%s)", account.get("username"), self.status)
        return LoginResult(account, self.status, access_state, decision, warning)

    def _evaluate(self, account: dict) -> str | None:
        tenant_id = account.get("tenant_id")
        if account.get("role") == ROLE_PLATFORM_OPERATOR or tenant_id is None:
            return None
        snapshot = self._state.cached_access(tenant_id)
        if snapshot is None:
            return None
        return snapshot.state_at(self._clock.now())

    # =========================================================================
    # SESSION LIFECYCLE
    # =========================================================================

    def current_access_state(self) -> str | None:
        account = self._state.get_current_account()
        if not account:
            return None
        return self._evaluate(account)

    def require_operable(self) -> dict:
        """The signed-in account, or an error if this till must not operate."""
        account = self._state.get_current_account()
        if not account or not self._state.session_active:
            raise NotAuthorized("Sign in first")
        if self.current_access_state() == ACCESS_LOCKED:
            raise AccessLocked()
        return account

    def restore(self) -> bool:
        """
        Resume the stored cloud session at startup.

        Offline or unreachable: keep the local state untouched. A refused
        restore drops the token pair but leaves the local login in place.
        """
        session = self._state.get_session()
        if session is None or not self._connectivity.is_online:
            return False
        try:
            issued = self._authority.restore_session(session.access_token, session.refresh_token)
        except TransientNetworkFailure:
            return False
        except AccessError as e:
            logger.warning("Stored session refused: %s", e.message)
            self._state.clear_session_tokens()
            if self._state.session_active:
                self.status = STATE_LOCAL_ONLY
            return False

        if issued.get("access"):
            self._state.cache_access(AccessSnapshot.from_dict(issued["access"]))
        if issued.get("account"):
            self._state.set_login(issued["account"], _stored_session(issued))
        else:
            self._state.set_session(_stored_session(issued))
        self.status = STATE_LOCAL_PLUS_CLOUD
        return True

    def logout(self, forget_credential: bool = True) -> None:
        account = self._state.get_current_account()
        session = self._state.get_session()
        if session is not None and self._connectivity.is_online:
            self._best_effort_logout(session.access_token)
        if forget_credential and account and account.get("username"):
            self._credentials.delete(account["username"])
        self._state.teardown_session()
        self.status = STATE_NO_LOCAL_CREDENTIAL
        logger.info("Signed out")

    def start_demo(self, email: str | None = None) -> LoginResult:
        """Provision a demo business and sign straight into it."""
        if not self._connectivity.is_online:
            raise OnlineRequired("Connect to the internet to start a demo.")
        credentials = self._authority.provision_demo(email)
        result = self.login(credentials["username"], credentials["password"])
        self._state.demo_expires_at = parse_iso_datetime(credentials.get("expires_at"))
        return result

    def drain_queue(self, limit: int | None = None):
        if self._queue is None:
            return None
        session = self._state.get_session()
        account = self._state.get_current_account() or {}
        return self._queue.drain(
            session.access_token if session else None,
            tenant_id=account.get("tenant_id"),
            account_id=account.get("id"),
            limit=limit,
        )

    def recheck_license(self) -> bool:
        """
        Ask the authority again whether this device still holds a license.

        Returns False when the device was refused: the marker, the saved
        offline login and the session are revoked together. An unreachable
        authority or any other refusal leaves the signed-in state as it is.
        """
        account = self._state.get_current_account()
        session = self._state.get_session()
        if not account or session is None or not self._state.session_active:
            return True
        try:
            self._licenses.register_or_validate(
                account.get("tenant_id"),
                role=account.get("role"),
                access_token=session.access_token,
                is_online=True,
            )
        except DeviceLimitExceeded as e:
            logger.warning("Device license revoked for %s: %s", account.get("username"), e.message)
            self._credentials.delete(account.get("username"))
            self._best_effort_logout(session.access_token)
            self._state.teardown_session()
            self.status = STATE_DENIED
            return False
        except AccessError as e:
            logger.warning("License re-check skipped: %s", e.message)
        return True

    def _drain_and_log(self) -> None:
        report = self.drain_queue()
        if report is not None and report.stopped_reason:
            logger.warning("Queue drain stopped: %s", report.stopped_reason)

    def on_connectivity(self, event: str) -> None:
        if event != ONLINE or not self._state.session_active:
            return
        if self._state.get_session() is None or self.status != STATE_LOCAL_PLUS_CLOUD:
            self.restore()
        if not self.recheck_license():
            return
        self._drain_and_log()

    def on_heartbeat(self) -> None:
        """Steady online tick: retry a stalled drain once its backoff has passed."""
        if self._queue is None or not self._state.session_active or not self._queue.drain_due():
            return
        self._drain_and_log()
