# Overview: Device client factory; wires local state, authority client and the login/licensing components.

from __future__ import annotations

from dataclasses import dataclass

from .authority import HttpAuthorityClient
from .config import DeviceConfig
from .connectivity import ConnectivityObserver
from .credential_cache import CredentialCache
from .device_license import DeviceLicenseManager
from .impersonation import ImpersonationBroker
from .local_store import LocalDeviceState
from .operation_queue import OfflineOperationQueue
from .reconciler import SessionReconciler
from .secure_clock import SecureClock


@dataclass
class Device:
    """Everything one till needs, opened once per process."""
    config: DeviceConfig
    state: LocalDeviceState
    authority: HttpAuthorityClient
    connectivity: ConnectivityObserver
    clock: SecureClock
    credentials: CredentialCache
    licenses: DeviceLicenseManager
    queue: OfflineOperationQueue
    sessions: SessionReconciler
    impersonation: ImpersonationBroker

    def close(self) -> None:
        self.authority.close()
        self.state.close()


def create_device(config: DeviceConfig | None = None, transport=None, initially_online: bool = False) -> Device:
    """
    Open local state and wire the device components.

    Connectivity transitions fan out in this order: clock sync first (later
    decisions use trusted time), then session restore, license re-check and
    queue drain. While steadily online, each connectivity.check() heartbeat
    runs a due clock sync and retries a drain that stopped on a network
    failure once its backoff has passed.
    """
    config = config or DeviceConfig()
    state = LocalDeviceState.open(config)
    authority = HttpAuthorityClient(config.api_base_url, timeout=config.request_timeout, transport=transport)
    connectivity = ConnectivityObserver(initially_online=initially_online, ping=authority.server_time_ms)
    clock = SecureClock(authority, state)
    credentials = CredentialCache(state, rounds=config.bcrypt_rounds)
    licenses = DeviceLicenseManager(authority, state, connectivity, platform=config.platform)
    queue = OfflineOperationQueue(
        state,
        authority,
        cap=config.queue_cap,
        default_batch=config.drain_batch,
        retry_interval=config.drain_retry_seconds,
    )
    sessions = SessionReconciler(state, authority, connectivity, clock, credentials, licenses, queue)
    impersonation = ImpersonationBroker(state, authority, connectivity)

    connectivity.subscribe(clock.on_connectivity)
    connectivity.subscribe(sessions.on_connectivity)
    connectivity.on_heartbeat(clock.maybe_sync)
    connectivity.on_heartbeat(sessions.on_heartbeat)

    return Device(
        config=config,
        state=state,
        authority=authority,
        connectivity=connectivity,
        clock=clock,
        credentials=credentials,
        licenses=licenses,
        queue=queue,
        sessions=sessions,
        impersonation=impersonation,
    )
