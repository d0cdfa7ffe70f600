"""Admin authorization check.

The allow-list is passed in by the caller rather than read from the
environment here, so the check is a pure function of its inputs.
"""

from __future__ import annotations

from typing import AbstractSet, Iterable, Optional


class AuthorizationError(PermissionError):
    """Raised when an identity is not allowed to perform an admin operation."""


def parse_admin_emails(raw: Optional[str]) -> frozenset[str]:
    """Parse a comma-separated allow-list, ignoring blanks and case."""

    if not raw:
        return frozenset()
    return frozenset(part.strip().lower() for part in raw.split(",") if part.strip())


def is_admin(email: Optional[str], admin_emails: AbstractSet[str]) -> bool:
    if not email:
        return False
    return email.strip().lower() in admin_emails


def require_admin(email: Optional[str], admin_emails: Iterable[str]) -> str:
    """Return the normalized email or raise ``AuthorizationError``."""

    if not email:
        raise AuthorizationError("Unauthorized")
    allowed = frozenset(item.lower() for item in admin_emails)
    if not is_admin(email, allowed):
        raise AuthorizationError("Unauthorized: Admin access required")
    return email.strip().lower()
