"""
Shared Enumerations for Account Directory Models.

All string enumerations for type-safe field constraints.
StrEnum values compare equal to their string equivalents,
so code like ``if role == 'User'`` continues to work.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum


class Role(StrEnum):
    """Account roles parsed from the free-text ``meta.role`` value.

    ``UNKNOWN`` covers a missing ``meta``, a missing or non-string
    ``role``, and any text that is not a recognised role.  It is never
    written back to storage.
    """

    SUPER_ADMINISTRATOR = "Super Administrator"
    USER = "User"
    UNKNOWN = "Unknown"


_ROLE_LOOKUP: dict[str, Role] = {
    Role.SUPER_ADMINISTRATOR.value.lower(): Role.SUPER_ADMINISTRATOR,
    Role.USER.value.lower(): Role.USER,
}


def parse_role(meta: object) -> Role:
    """Map a legacy ``meta`` blob to a :class:`Role`.

    Matching is case-insensitive on the exact text, so
    ``"SUPER ADMINISTRATOR"`` parses but ``" user "`` does not.
    """
    if not isinstance(meta, Mapping):
        return Role.UNKNOWN
    raw = meta.get("role")
    if not isinstance(raw, str):
        return Role.UNKNOWN
    return _ROLE_LOOKUP.get(raw.lower(), Role.UNKNOWN)


class SortDirection(StrEnum):
    """Ordering direction for listings."""

    ASC = "asc"
    DESC = "desc"


class RecordClass(StrEnum):
    """Record classes sharing the username/email namespace."""

    USERS = "users"
    MEMBERS = "members"


class IdentityField(StrEnum):
    """Fields that must be unique across every record class."""

    USERNAME = "username"
    EMAIL = "email"


class AuditAction(StrEnum):
    """State changes recorded in the audit trail."""

    CREATE_USER = "CREATE_USER"
    UPDATE_USER = "UPDATE_USER"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_RESET = "PASSWORD_RESET"
    REGISTER_MEMBER = "REGISTER_MEMBER"
    EMAIL_SEND_ATTEMPT = "EMAIL_SEND_ATTEMPT"
    EMAIL_SENT = "EMAIL_SENT"
