# Overview: Device side of support impersonation: session backup, switch and audited return.

"""
Impersonation Broker

START (platform operator, online only, reason required):
1. The authority opens the audit record and mints a one-time exchange token
   in one transaction (record-then-act)
2. The operator's token pair (backup) and the audit info are written
   locally in ONE transaction: both markers or neither
3. Tenant-scoped caches are cleared, the token is exchanged, and the device
   switches to the support session
If anything after step 1 fails, the audit is ended best-effort and both
markers are removed.

END:
1. Restore the operator session from the backup pair
2. Mark the audit ended (the authority revokes the support sessions)
3. Switch back and clear both markers in one transaction
A failure at 1 or 2 leaves the markers in place so end() can be retried.
"""

from __future__ import annotations

import logging

from ..access_state import AccessSnapshot
from ..errors import (
    AccessError,
    NotAuthorized,
    OnlineRequired,
    SessionRestoreFailed,
    TransientNetworkFailure,
    ValidationFailed,
)
from ..models.auth import ROLE_PLATFORM_OPERATOR
from .local_store import StoredSession


logger = logging.getLogger(__name__)


def _stored(issued: dict) -> StoredSession:
    return StoredSession(
        access_token=issued["access_token"],
        refresh_token=issued["refresh_token"],
        expires_at=issued.get("expires_at"),
        refresh_expires_at=issued.get("refresh_expires_at"),
    )


class ImpersonationBroker:
    def __init__(self, state, authority, connectivity):
        self._state = state
        self._authority = authority
        self._connectivity = connectivity

    def active(self) -> dict | None:
        """Audit info of the running impersonation, if any."""
        markers = self._state.read_impersonation()
        return markers[1] if markers else None

    def start(self, tenant_id: int, role: str, reason: str) -> dict:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationFailed("Reason is required")
        if not self._connectivity.is_online:
            raise OnlineRequired("Impersonation requires an online connection.")

        operator = self._state.get_current_account()
        backup = self._state.get_session()
        if not operator or operator.get("role") != ROLE_PLATFORM_OPERATOR:
            raise NotAuthorized("Platform operator required")
        if backup is None:
            raise NotAuthorized("Online session required")
        if self._state.read_impersonation() is not None:
            raise NotAuthorized("Already impersonating; return to your account first")

        started = self._authority.start_impersonation(backup.access_token, tenant_id, role, reason)
        audit = started["audit"]
        info = {
            "audit_id": audit["id"],
            "tenant_id": audit["target_tenant_id"],
            "role": audit["target_role"],
            "reason": audit["reason"],
            "started_at": audit.get("started_at"),
            "expires_at": started.get("expires_at"),
            "operator": operator,
        }

        try:
            self._state.write_impersonation(backup, info)
            self._state.clear_tenant_cache()
            issued = self._authority.exchange(started["exchange_token"])
            self._state.switch_identity(issued["account"], _stored(issued))
            if issued.get("access"):
                self._state.cache_access(AccessSnapshot.from_dict(issued["access"]))
        except Exception:
            logger.warning("Impersonation start failed; closing audit %s", audit["id"])
            self._abort(backup, operator, audit["id"])
            raise

        logger.info("Impersonating tenant %s as %s (audit %s)", info["tenant_id"], info["role"], info["audit_id"])
        return info

    def _abort(self, backup: StoredSession, operator: dict, audit_id: int) -> None:
        try:
            self._authority.end_impersonation(backup.access_token, audit_id)
        except AccessError as e:
            logger.warning("Could not close audit %s: %s", audit_id, e.message)
        self._state.finish_impersonation(operator, backup)

    def end(self) -> StoredSession:
        """Return to the operator session. Returns the restored token pair."""
        markers = self._state.read_impersonation()
        if markers is None:
            raise NotAuthorized("Not impersonating")
        backup, info = markers
        if not self._connectivity.is_online:
            raise OnlineRequired("Connect to the internet to return to your account.")

        try:
            restored = self._authority.restore_session(backup.access_token, backup.refresh_token)
        except TransientNetworkFailure:
            raise
        except AccessError as e:
            raise SessionRestoreFailed(f"Could not restore your session: {e.message}") from e

        account = restored.get("account") or {}
        if account.get("role") != ROLE_PLATFORM_OPERATOR:
            raise SessionRestoreFailed("Backup session does not belong to a platform operator")

        session = _stored(restored)
        self._authority.end_impersonation(session.access_token, info["audit_id"])
        self._state.finish_impersonation(account, session)
        logger.info("Impersonation %s ended", info["audit_id"])
        return session
