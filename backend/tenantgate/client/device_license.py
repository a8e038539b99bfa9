# Overview: Device half of license enforcement: authority admission plus the sealed local marker.

"""
Device License Manager

register_or_validate() decides whether this device may operate for a tenant:

- Platform operators bypass the cap before any license check
- Online with a session: the authority counts and admits or rejects.
  Admitted -> write the local marker. Rejected -> DeviceLimitExceeded and
  the marker (if any) is revoked
- Online but the registration call fails transiently: a pre-existing marker
  allows a degraded continue; without one the answer is DeviceNotActivated,
  exactly as offline. No marker is ever created on this path
- Offline (or online without a session): only a pre-existing marker allows;
  otherwise DeviceNotActivated. A device can never self-activate offline
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..access_state import AccessSnapshot
from ..errors import DeviceLimitExceeded, DeviceNotActivated, NotAuthorized, TransientNetworkFailure
from ..models.auth import ROLE_PLATFORM_OPERATOR


logger = logging.getLogger(__name__)

SOURCE_BYPASS = "bypass"
SOURCE_AUTHORITY = "authority"
SOURCE_MARKER = "marker"
SOURCE_DEGRADED = "degraded"


@dataclass
class LicenseDecision:
    allowed: bool
    source: str
    active_devices: int | None = None
    max_devices: int | None = None


class DeviceLicenseManager:
    def __init__(self, authority, state, connectivity, platform: str | None = None):
        self._authority = authority
        self._state = state
        self._connectivity = connectivity
        self._platform = platform

    @property
    def device_id(self) -> str:
        return self._state.device_id

    def is_activated(self, tenant_id: int) -> bool:
        return self._state.has_license_marker(tenant_id, self.device_id)

    def register_or_validate(
        self,
        tenant_id: int | None,
        *,
        role: str,
        access_token: str | None = None,
        is_online: bool | None = None,
        label: str | None = None,
    ) -> LicenseDecision:
        if role == ROLE_PLATFORM_OPERATOR:
            return LicenseDecision(True, SOURCE_BYPASS)
        if tenant_id is None:
            raise NotAuthorized("Account has no business. Ask support to fix your account.")

        online = self._connectivity.is_online if is_online is None else is_online
        device_id = self.device_id
        has_marker = self._state.has_license_marker(tenant_id, device_id)

        if not online:
            if has_marker:
                return LicenseDecision(True, SOURCE_MARKER)
            raise DeviceNotActivated()

        if not access_token:
            if has_marker:
                return LicenseDecision(True, SOURCE_MARKER)
            raise DeviceNotActivated("Online session required to activate this device. Sign in again while online.")

        try:
            result = self._authority.register_device(access_token, device_id, self._platform, label)
        except TransientNetworkFailure as e:
            if has_marker:
                logger.warning("Device registration unavailable; continuing on prior activation")
                return LicenseDecision(True, SOURCE_DEGRADED)
            # Same answer as the offline path: no marker, no activation
            raise DeviceNotActivated(
                "Could not reach the server to activate this device. Try again when the connection is stable."
            ) from e

        if result.get("access"):
            self._state.cache_access(AccessSnapshot.from_dict(result["access"]))

        if not result.get("allowed"):
            if has_marker:
                self._state.clear_license_marker(tenant_id, device_id)
            raise DeviceLimitExceeded(result.get("error"))

        if result.get("bypass"):
            return LicenseDecision(True, SOURCE_BYPASS)

        self._state.set_license_marker(tenant_id, device_id)
        return LicenseDecision(
            True,
            SOURCE_AUTHORITY,
            active_devices=result.get("active_devices"),
            max_devices=result.get("max_devices"),
        )
