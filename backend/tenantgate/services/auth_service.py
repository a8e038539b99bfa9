# Overview: Service-layer operations for credentials and staff accounts.

"""
Authentication & Staff Service with Multi-Tenant Support

WHY: Every action must be attributable to an account. Passwords are hashed
with bcrypt and verified in constant work whether or not the account exists.

MULTI-TENANT: Staff accounts belong to exactly one tenant. Tenant admins may
only manage accounts inside their own tenant; platform operators may manage
any tenant. Role and tenant always come from the caller's verified session,
never from the request body.

SECURITY NOTES:
- bcrypt cost factor from BCRYPT_ROUNDS (12 in production)
- A dummy bcrypt check runs when the username is unknown, so response
  timing does not reveal whether the account exists
- A disabled account is reported as AccountDisabled only after the correct
  password was supplied; a wrong password is always InvalidCredentials
- Support accounts (is_support) carry no password and cannot log in directly
"""

from __future__ import annotations

import re

import bcrypt
from flask import current_app

from ..errors import (
    AccountDisabled,
    InvalidCredentials,
    NotAuthorized,
    PasswordValidationError,
    ValidationFailed,
)
from ..extensions import db
from ..models import (
    AcceptedOperation,
    Account,
    DeviceRecord,
    ExchangeToken,
    Feedback,
    Order,
    SecurityEvent,
    ServiceBooking,
    SessionToken,
    Tenant,
)
from ..models.auth import (
    ROLE_CASHIER,
    ROLE_PLATFORM_OPERATOR,
    ROLE_TENANT_ADMIN,
    default_permissions,
)
from ..time_utils import utcnow


_USERNAME_STRIP = re.compile(r"[^a-z0-9._-]")

_dummy_hashes: dict[int, bytes] = {}

# System-generated accounts (impersonation support, demo sandboxes)
RESERVED_USERNAME_PREFIXES = ("support_", "demo_")


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Requirements:
    - 8 to 128 characters
    - At least one letter
    - At least one digit

    Raises PasswordValidationError if requirements not met.
    """
    if not isinstance(password, str) or len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if len(password) > 128:
        raise PasswordValidationError("Password must be at most 128 characters long")

    if not re.search(r"[A-Za-z]", password):
        raise PasswordValidationError("Password must contain at least one letter")

    if not re.search(r"\d", password):
        raise PasswordValidationError("Password must contain at least one digit")


def sanitize_username(raw: str | None) -> str:
    """Lowercase and keep only [a-z0-9._-]."""
    return _USERNAME_STRIP.sub("", str(raw or "").strip().lower())


def _rounds() -> int:
    return int(current_app.config.get("BCRYPT_ROUNDS", 12))


def hash_password(password: str) -> str:
    """
    Hash password using bcrypt.

    Password is validated for strength before hashing.
    """
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=_rounds())
    hashed = bcrypt.hashpw(password.encode("utf-8"), salt)
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    """
    Verify password against bcrypt hash.

    WHY timing-safe: bcrypt.checkpw() compares in constant time.
    """
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed hash
        return False


def _dummy_verify(password: str) -> None:
    """Burn the same bcrypt work as a real verification."""
    rounds = _rounds()
    dummy = _dummy_hashes.get(rounds)
    if dummy is None:
        dummy = bcrypt.hashpw(b"tenantgate-dummy-password", bcrypt.gensalt(rounds=rounds))
        _dummy_hashes[rounds] = dummy
    bcrypt.checkpw(password.encode("utf-8"), dummy)


def verify_credentials(username: str, password: str) -> Account:
    """
    Verify a username/password pair against the identity store.

    Returns the Account on success.

    Raises:
    - InvalidCredentials for unknown username, wrong password, or a
      support account (same message in every case)
    - AccountDisabled when the password is correct but the account or its
      tenant has been deactivated
    """
    username = sanitize_username(username)
    password = password or ""

    account = None
    if username:
        account = db.session.query(Account).filter_by(username=username).first()

    if account is None or account.is_support or not account.password_hash:
        _dummy_verify(password)
        raise InvalidCredentials()

    if not verify_password(password, account.password_hash):
        raise InvalidCredentials()

    if not account.is_active:
        raise AccountDisabled()

    if account.tenant_id is not None:
        tenant = db.session.get(Tenant, account.tenant_id)
        if tenant is None or tenant.deleted_at is not None:
            raise AccountDisabled()

    return account


def _resolve_new_role(requested: str | None) -> str:
    requested = str(requested or ROLE_CASHIER).strip().lower()
    if requested in (ROLE_PLATFORM_OPERATOR, ROLE_TENANT_ADMIN, ROLE_CASHIER):
        return requested
    return ROLE_CASHIER


def _require_staff_manager(caller: Account) -> None:
    """Only platform operators and tenant admins manage staff; never inside demo tenants."""
    if caller.role not in (ROLE_PLATFORM_OPERATOR, ROLE_TENANT_ADMIN):
        raise NotAuthorized("Admins only")

    if caller.role == ROLE_TENANT_ADMIN:
        if caller.tenant_id is None:
            raise NotAuthorized("Account has no business. Ask support to fix your account.")
        tenant = db.session.get(Tenant, caller.tenant_id)
        if tenant is not None and tenant.is_demo:
            raise NotAuthorized("Not available in demo")


def _load_managed_target(caller: Account, account_id: int) -> Account:
    target = db.session.get(Account, account_id)
    if target is None:
        raise ValidationFailed("Target account not found")

    if caller.role != ROLE_PLATFORM_OPERATOR:
        # Same message for "other tenant" and "platform operator": no probing
        if target.role == ROLE_PLATFORM_OPERATOR or target.tenant_id != caller.tenant_id:
            raise NotAuthorized("Not allowed")

    return target


def create_account(
    username: str,
    password: str,
    role: str,
    tenant_id: int | None,
    display_name: str | None = None,
    permissions: dict | None = None,
    email: str | None = None,
    commit: bool = True,
    allow_reserved: bool = False,
) -> Account:
    """
    Create an account with a bcrypt password hash.

    Low-level: performs no caller authorization. Used by create_staff, the CLI
    bootstrap and demo provisioning.

    Raises ValidationFailed on a bad/duplicate username,
    PasswordValidationError on a weak password.
    """
    username = sanitize_username(username)
    if not username:
        raise ValidationFailed("Username required")
    if len(username) < 3:
        raise ValidationFailed("Username must be 3+ characters")
    if not allow_reserved and username.startswith(RESERVED_USERNAME_PREFIXES):
        raise ValidationFailed("Username is reserved")

    if role != ROLE_PLATFORM_OPERATOR and tenant_id is None:
        raise ValidationFailed("Missing tenant_id")
    if role == ROLE_PLATFORM_OPERATOR:
        tenant_id = None

    if db.session.query(Account.id).filter_by(username=username).first():
        raise ValidationFailed("Username already exists")

    perms = default_permissions(role)
    if isinstance(permissions, dict):
        perms.update({str(k): bool(v) for k, v in permissions.items()})

    account = Account(
        username=username,
        display_name=(display_name or "").strip() or username,
        email=email,
        role=role,
        permissions=perms,
        tenant_id=tenant_id,
        password_hash=hash_password(password),
        is_active=True,
    )
    db.session.add(account)
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return account


def create_staff(
    caller: Account,
    username: str,
    password: str,
    role: str | None = None,
    display_name: str | None = None,
    permissions: dict | None = None,
    tenant_id: int | None = None,
) -> Account:
    """
    Create a staff account on behalf of `caller`.

    MULTI-TENANT:
    - Platform operators may create any role; tenant-scoped roles need an
      explicit tenant_id
    - Tenant admins may only create tenant_admin/cashier in their own tenant;
      a body-supplied tenant_id is ignored
    """
    _require_staff_manager(caller)

    new_role = _resolve_new_role(role)
    if not (display_name or "").strip():
        raise ValidationFailed("Full name required")

    if new_role == ROLE_PLATFORM_OPERATOR:
        if caller.role != ROLE_PLATFORM_OPERATOR:
            raise NotAuthorized("Platform operators only")
        target_tenant_id = None
    elif caller.role == ROLE_PLATFORM_OPERATOR:
        if tenant_id is None:
            raise ValidationFailed("Missing tenant_id")
        if db.session.get(Tenant, tenant_id) is None:
            raise ValidationFailed("Business not found")
        target_tenant_id = tenant_id
    else:
        target_tenant_id = caller.tenant_id

    return create_account(
        username=username,
        password=password,
        role=new_role,
        tenant_id=target_tenant_id,
        display_name=display_name,
        permissions=permissions,
    )


def set_staff_password(caller: Account, account_id: int, password: str) -> Account:
    """Reset another account's password (scoped like create_staff)."""
    _require_staff_manager(caller)
    target = _load_managed_target(caller, account_id)

    target.password_hash = hash_password(password)
    target.updated_at = utcnow()

    # Existing sessions keep working; the next login needs the new password
    db.session.commit()
    return target


def detach_account_references(account_ids: list[int]) -> None:
    """
    Remove sessions/tokens and null out soft references to the given accounts.

    Called before an account row is hard-deleted (staff deletion, demo purge).
    Business history (orders, bookings, devices) is kept.
    """
    if not account_ids:
        return

    db.session.query(SessionToken).filter(SessionToken.account_id.in_(account_ids)).delete(
        synchronize_session=False
    )
    db.session.query(ExchangeToken).filter(ExchangeToken.account_id.in_(account_ids)).delete(
        synchronize_session=False
    )
    for model, column in (
        (Order, Order.account_id),
        (ServiceBooking, ServiceBooking.account_id),
        (Feedback, Feedback.account_id),
        (AcceptedOperation, AcceptedOperation.account_id),
        (SecurityEvent, SecurityEvent.account_id),
        (DeviceRecord, DeviceRecord.registered_by),
    ):
        db.session.query(model).filter(column.in_(account_ids)).update(
            {column: None}, synchronize_session=False
        )


def delete_staff(caller: Account, account_id: int) -> None:
    """
    Hard-delete a staff account.

    A caller can never delete their own account. Tenant admins can only
    delete accounts in their own tenant and never platform operators.
    """
    _require_staff_manager(caller)
    if account_id == caller.id:
        raise ValidationFailed("You cannot delete your own account")

    target = _load_managed_target(caller, account_id)

    detach_account_references([target.id])
    db.session.delete(target)
    db.session.commit()


def list_staff(caller: Account, tenant_id: int | None = None) -> list[Account]:
    """List non-support accounts for the caller's tenant (or any tenant for operators)."""
    _require_staff_manager(caller)

    if caller.role != ROLE_PLATFORM_OPERATOR:
        tenant_id = caller.tenant_id
    if tenant_id is None:
        raise ValidationFailed("Missing tenant_id")

    return (
        db.session.query(Account)
        .filter(Account.tenant_id == tenant_id, Account.is_support.is_(False))
        .order_by(Account.username.asc())
        .all()
    )
