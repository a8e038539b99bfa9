# Overview: HTTP client for the authority API; maps wire errors back to the shared taxonomy.

"""
Authority Client

Every call is a suspension point that may time out or be cut. Timeouts,
connection failures, unreadable bodies and 5xx responses all become
TransientNetworkFailure; a timeout is never read as a grant.

4xx responses carry {"error", "code"} and are rebuilt into the same
exception class the authority raised (errors.error_from_code).
"""

from __future__ import annotations

import logging

import httpx

from ..errors import TransientNetworkFailure, error_from_code


logger = logging.getLogger(__name__)


class HttpAuthorityClient:
    """Synchronous JSON client for the tenantgate authority."""

    def __init__(self, base_url: str, timeout: float = 10.0, transport: httpx.BaseTransport | None = None):
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _request(self, method: str, path: str, *, token: str | None = None, json: dict | None = None) -> dict:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            response = self._client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("Authority call %s %s timed out", method, path)
            raise TransientNetworkFailure("The server did not answer in time.") from e
        except httpx.TransportError as e:
            logger.warning("Authority call %s %s failed: %s", method, path, e)
            raise TransientNetworkFailure() from e

        if response.status_code >= 500:
            raise TransientNetworkFailure(f"Server error ({response.status_code}). Try again shortly.")

        try:
            body = response.json()
        except ValueError as e:
            raise TransientNetworkFailure("Unreadable response from server.") from e
        if not isinstance(body, dict):
            raise TransientNetworkFailure("Unreadable response from server.")

        if response.status_code >= 400:
            raise error_from_code(body.get("code"), body.get("error"))
        return body

    # =========================================================================
    # IDENTITY / SESSIONS
    # =========================================================================

    def verify_credentials(self, username: str, password: str) -> dict:
        """Returns {"account", "access", "exchange_token", "exchange_expires_at"}."""
        return self._request("POST", "/api/auth/verify", json={"username": username, "password": password})

    def exchange(self, exchange_token: str) -> dict:
        """Returns the issued session: tokens, expiries, account, access."""
        return self._request("POST", "/api/auth/exchange", json={"exchange_token": exchange_token})

    def restore_session(self, access_token: str, refresh_token: str) -> dict:
        return self._request(
            "POST",
            "/api/auth/restore",
            json={"access_token": access_token, "refresh_token": refresh_token},
        )

    def logout(self, access_token: str) -> dict:
        return self._request("POST", "/api/auth/logout", token=access_token)

    def me(self, access_token: str) -> dict:
        return self._request("GET", "/api/auth/me", token=access_token)

    # =========================================================================
    # LICENSING / ACCESS
    # =========================================================================

    def register_device(self, access_token: str, device_id: str, platform: str | None = None, label: str | None = None) -> dict:
        return self._request(
            "POST",
            "/api/devices/register",
            token=access_token,
            json={"device_id": device_id, "platform": platform, "label": label},
        )

    def tenant_access(self, access_token: str) -> dict:
        return self._request("GET", "/api/tenants/me/access", token=access_token)

    def server_time_ms(self) -> int:
        body = self._request("GET", "/api/system/time")
        try:
            return int(body["epoch_ms"])
        except (KeyError, TypeError, ValueError) as e:
            raise TransientNetworkFailure("Invalid time payload") from e

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    def submit_operation(self, access_token: str, operation_id: str, kind: str, payload: dict) -> dict:
        return self._request(
            "POST",
            "/api/operations",
            token=access_token,
            json={"operation_id": operation_id, "kind": kind, "payload": payload},
        )

    # =========================================================================
    # IMPERSONATION / DEMO
    # =========================================================================

    def start_impersonation(self, access_token: str, tenant_id: int, role: str, reason: str) -> dict:
        return self._request(
            "POST",
            "/api/platform/impersonations",
            token=access_token,
            json={"tenant_id": tenant_id, "role": role, "reason": reason},
        )

    def end_impersonation(self, access_token: str, audit_id: int) -> dict:
        return self._request("POST", f"/api/platform/impersonations/{int(audit_id)}/end", token=access_token)

    def provision_demo(self, email: str | None = None) -> dict:
        return self._request("POST", "/api/demo/sessions", json={"email": email} if email else {})
