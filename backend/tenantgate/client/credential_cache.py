# Overview: Offline login verifiers (bcrypt) cached per device after an online check.

"""
Local Credential Cache

- seed() is only called right after the authority verified the same
  password; a device can never learn a credential while offline
- verify() costs one bcrypt check whether or not the username is cached
- delete() on logout and whenever device licensing rejects the login
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime

import bcrypt

from ..services.auth_service import sanitize_username
from ..time_utils import utcnow
from .local_store import LocalCredential


logger = logging.getLogger(__name__)


@dataclass
class LocalCredentialEntry:
    account_id: int
    username: str
    role: str
    tenant_id: int | None
    display_name: str | None = None
    permissions: dict = field(default_factory=dict)
    updated_at: datetime | None = None

    def to_account(self) -> dict:
        """Same shape as the authority's account JSON (the fields cached here)."""
        return {
            "id": self.account_id,
            "username": self.username,
            "display_name": self.display_name or self.username,
            "role": self.role,
            "permissions": dict(self.permissions),
            "tenant_id": self.tenant_id,
        }


class CredentialCache:
    def __init__(self, state, rounds: int = 12):
        self._state = state
        self._rounds = rounds
        self._dummy: bytes | None = None

    def _entry(self, row: LocalCredential) -> LocalCredentialEntry:
        try:
            permissions = json.loads(row.permissions or "{}")
        except ValueError:
            permissions = {}
        return LocalCredentialEntry(
            account_id=row.account_id,
            username=row.username,
            role=row.role,
            tenant_id=row.tenant_id,
            display_name=row.display_name,
            permissions=permissions if isinstance(permissions, dict) else {},
            updated_at=row.updated_at,
        )

    def _dummy_check(self, password: str) -> None:
        if self._dummy is None:
            self._dummy = bcrypt.hashpw(b"tenantgate-offline-dummy", bcrypt.gensalt(rounds=self._rounds))
        bcrypt.checkpw(password.encode("utf-8"), self._dummy)

    def seed(self, account: dict, password: str) -> LocalCredentialEntry:
        """Create or overwrite the verifier for an account the authority just verified."""
        username = sanitize_username(account.get("username"))
        verifier = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=self._rounds)).decode("utf-8")

        with self._state.transaction() as s:
            row = s.query(LocalCredential).filter_by(username=username).first()
            if row is None:
                row = LocalCredential(username=username)
                s.add(row)
            row.account_id = int(account["id"])
            row.display_name = account.get("display_name")
            row.role = account.get("role") or "cashier"
            row.permissions = json.dumps(account.get("permissions") or {})
            row.tenant_id = account.get("tenant_id")
            row.verifier = self._state.encrypt(verifier)
            row.updated_at = utcnow()
            s.flush()
            return self._entry(row)

    def get(self, username: str) -> LocalCredentialEntry | None:
        with self._state.transaction() as s:
            row = s.query(LocalCredential).filter_by(username=sanitize_username(username)).first()
            return self._entry(row) if row else None

    def verify(self, username: str, password: str) -> LocalCredentialEntry | None:
        """Return the cached entry when the password matches, else None."""
        password = password or ""
        with self._state.transaction() as s:
            row = s.query(LocalCredential).filter_by(username=sanitize_username(username)).first()
            verifier = self._state.decrypt(row.verifier) if row is not None else None
            entry = self._entry(row) if row is not None else None

        if verifier is None:
            self._dummy_check(password)
            return None

        try:
            matched = bcrypt.checkpw(password.encode("utf-8"), verifier.encode("utf-8"))
        except ValueError:
            logger.warning("Malformed offline verifier for %s; ignoring it", entry.username)
            return None
        return entry if matched else None

    def delete(self, username: str) -> bool:
        with self._state.transaction() as s:
            deleted = s.query(LocalCredential).filter_by(username=sanitize_username(username)).delete()
        return bool(deleted)
