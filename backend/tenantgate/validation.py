from __future__ import annotations

import hashlib
from typing import Any

from .errors import ValidationFailed


def clamp_int(value: Any, lo: int, hi: int, fallback: int | None = None) -> int:
    """Coerce to int and clamp into [lo, hi]; unparseable input uses fallback (or lo)."""
    try:
        n = int(value)
    except (TypeError, ValueError):
        n = lo if fallback is None else fallback
    return max(lo, min(hi, n))


def parse_strict_int(value: Any, field: str) -> int:
    """
    Strict integer parsing for request bodies.

    Rejects bools, floats, decimals and scientific notation.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if stripped and "e" not in stripped.lower() and "." not in stripped:
            try:
                return int(stripped)
            except ValueError:
                pass
    raise ValidationFailed(f"{field} must be an integer")


def parse_bounded_int(value: Any, field: str, lo: int, hi: int) -> int:
    n = parse_strict_int(value, field)
    if n < lo or n > hi:
        raise ValidationFailed(f"{field} must be between {lo} and {hi}")
    return n


def require_text(value: Any, field: str, min_length: int = 1, max_length: int = 2000) -> str:
    text = str(value or "").strip()
    if len(text) < min_length:
        if min_length <= 1:
            raise ValidationFailed(f"{field} is required")
        raise ValidationFailed(f"{field} must be at least {min_length} characters")
    if len(text) > max_length:
        raise ValidationFailed(f"{field} must be at most {max_length} characters")
    return text


def hash_origin(ip: str | None, salt: str) -> str | None:
    """
    Salted SHA-256 of a network origin.

    Returns None when no salt is configured. An unknown origin hashes as
    "unknown" so all origin-less callers share one bucket.
    """
    salt = (salt or "").strip()
    if not salt:
        return None
    origin = (ip or "").strip() or "unknown"
    return hashlib.sha256(f"{salt}|{origin}".encode("utf-8")).hexdigest()
