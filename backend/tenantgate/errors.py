# Overview: Error taxonomy shared by the authority services and the device client.

"""
Access & Licensing Error Taxonomy

WHY: The authority and the device must agree on *why* something was refused.
Every kind carries a stable string `code` that travels over the wire in
`{"error": ..., "code": ...}` JSON bodies, so the device client can map a
response back to the same exception class the server raised.

PROPAGATION:
- TransientNetworkFailure is the only retryable kind. It is never surfaced
  as a hard denial of access; callers fall back to offline-trust paths.
- Every other kind is terminal for the attempted operation.
- NotAuthorized is enforced identically on device and authority; the device
  check is an early UX hint, the authority check is the security boundary.
"""

from __future__ import annotations


class AccessError(Exception):
    """Base for every refusal the engine can produce."""

    code = "access_error"
    http_status = 400
    default_message = "Request could not be completed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class OfflineLoginUnavailable(AccessError):
    code = "offline_login_unavailable"
    http_status = 409
    default_message = "No saved login on this device. Connect to the internet to sign in."


class OnlineRequired(AccessError):
    code = "online_required"
    http_status = 409
    default_message = "This account requires an online connection to sign in."


class InvalidCredentials(AccessError):
    # Same message whether or not the username exists
    code = "invalid_credentials"
    http_status = 401
    default_message = "Invalid credentials"


class AccountDisabled(AccessError):
    code = "account_disabled"
    http_status = 403
    default_message = "This account has been disabled."


class DeviceNotActivated(AccessError):
    code = "device_not_activated"
    http_status = 403
    default_message = "This device is not activated. Connect to the internet to activate it."


class DeviceLimitExceeded(AccessError):
    code = "device_limit_exceeded"
    http_status = 409
    default_message = (
        "Device limit reached for this business. "
        "Deactivate an old device in Settings > Devices, then try again."
    )


class RateLimited(AccessError):
    code = "rate_limited"
    http_status = 429
    default_message = "Too many requests from this network. Try again later."


class SessionRestoreFailed(AccessError):
    code = "session_restore_failed"
    http_status = 401
    default_message = "Saved session could not be restored. Sign in again."


class NotAuthorized(AccessError):
    code = "not_authorized"
    http_status = 403
    default_message = "Not authorized"


class AccessLocked(NotAuthorized):
    """Raised when a tenant's derived access state is `locked`."""

    code = "access_locked"
    http_status = 402
    default_message = "This business account is locked. Contact support to reactivate."


class ValidationFailed(AccessError):
    code = "validation_failed"
    http_status = 422
    default_message = "Validation failed"


class PasswordValidationError(ValidationFailed):
    """Raised when a password doesn't meet strength requirements."""

    code = "password_invalid"
    http_status = 400
    default_message = "Password does not meet requirements"


class TransientNetworkFailure(AccessError):
    code = "transient_network_failure"
    http_status = 503
    default_message = "The server could not be reached. Try again shortly."


ERRORS_BY_CODE: dict[str, type[AccessError]] = {
    cls.code: cls
    for cls in (
        OfflineLoginUnavailable,
        OnlineRequired,
        InvalidCredentials,
        AccountDisabled,
        DeviceNotActivated,
        DeviceLimitExceeded,
        RateLimited,
        SessionRestoreFailed,
        NotAuthorized,
        AccessLocked,
        ValidationFailed,
        PasswordValidationError,
        TransientNetworkFailure,
    )
}


def error_from_code(code: str | None, message: str | None = None) -> AccessError:
    """Rebuild the exception matching a wire `code`; unknown codes become AccessError."""
    cls = ERRORS_BY_CODE.get(code or "", AccessError)
    return cls(message)
