# Overview: Pure access-state evaluation shared by the authority and the device.

"""
Access State Evaluator

Derives a tenant's access state from billing facts and a trusted `now`:

    1. locked  if the tenant is suspended or billing has locked_override
    2. active  if now <= paid_through
    3. grace   if paid_through < now <= paid_through + grace_days
    4. locked  otherwise

Total and side-effect free. For fixed billing facts the result only becomes
more restrictive as `now` advances (active -> grace -> locked).

`now` must come from a trusted clock: the authority's own clock server-side,
SecureClock on the device. Never the raw device wall clock.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from .time_utils import as_naive_utc, parse_iso_datetime, to_utc_z


ACCESS_ACTIVE = "active"
ACCESS_GRACE = "grace"
ACCESS_LOCKED = "locked"
ACCESS_STATES = (ACCESS_ACTIVE, ACCESS_GRACE, ACCESS_LOCKED)

# Ordered by restrictiveness
_RANK = {ACCESS_ACTIVE: 0, ACCESS_GRACE: 1, ACCESS_LOCKED: 2}


def evaluate_access_state(
    status: str,
    locked_override: bool,
    paid_through: datetime | None,
    grace_days: int,
    now: datetime,
) -> str:
    if status == "suspended" or locked_override:
        return ACCESS_LOCKED
    if paid_through is None:
        return ACCESS_LOCKED

    paid_through = as_naive_utc(paid_through)
    now = as_naive_utc(now)

    if now <= paid_through:
        return ACCESS_ACTIVE
    if now <= paid_through + timedelta(days=max(0, int(grace_days or 0))):
        return ACCESS_GRACE
    return ACCESS_LOCKED


def restrictiveness(state: str) -> int:
    return _RANK[state]


@dataclass(frozen=True)
class AccessSnapshot:
    """Billing facts plus the state derived from them at `evaluated_at`."""

    tenant_id: int
    status: str
    locked_override: bool
    paid_through: datetime | None
    grace_days: int
    max_devices: int
    evaluated_at: datetime

    @property
    def state(self) -> str:
        return self.state_at(self.evaluated_at)

    def state_at(self, now: datetime) -> str:
        return evaluate_access_state(
            self.status, self.locked_override, self.paid_through, self.grace_days, now
        )

    @property
    def grace_ends_at(self) -> datetime | None:
        if self.paid_through is None:
            return None
        return as_naive_utc(self.paid_through) + timedelta(days=self.grace_days)

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "status": self.status,
            "locked_override": self.locked_override,
            "paid_through": to_utc_z(self.paid_through),
            "grace_days": self.grace_days,
            "max_devices": self.max_devices,
            "grace_ends_at": to_utc_z(self.grace_ends_at),
            "evaluated_at": to_utc_z(self.evaluated_at),
            "access_state": self.state,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AccessSnapshot":
        return cls(
            tenant_id=int(data["tenant_id"]),
            status=data.get("status") or "active",
            locked_override=bool(data.get("locked_override")),
            paid_through=parse_iso_datetime(data.get("paid_through")),
            grace_days=int(data.get("grace_days") or 0),
            max_devices=int(data.get("max_devices") or 1),
            evaluated_at=parse_iso_datetime(data.get("evaluated_at")),
        )
