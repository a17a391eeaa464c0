"""
Data Models Package.

Re-exports all Pydantic models for convenient imports:
    from account_directory.models import Account, UserRecord, Page, Role
"""

from __future__ import annotations

from account_directory.models.enums import (
    AuditAction,
    IdentityField,
    RecordClass,
    Role,
    SortDirection,
    parse_role,
)
from account_directory.models.service_models import (
    Page,
    PartialWriteWarning,
    PasswordResetEvent,
    ServiceResult,
    WriteResult,
)
from account_directory.models.user import Account, UserRecord

__all__ = [
    "Account",
    "AuditAction",
    "IdentityField",
    "Page",
    "PartialWriteWarning",
    "PasswordResetEvent",
    "RecordClass",
    "Role",
    "ServiceResult",
    "SortDirection",
    "UserRecord",
    "WriteResult",
    "parse_role",
]
