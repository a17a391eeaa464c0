"""
User Models.

``UserRecord`` mirrors a row of the ``users`` table, password digest
included, and never leaves the repository/service layers.  ``Account`` is
the outward representation: every stored column except the password
fields, plus the computed ``display_name``, ``role``, ``is_super_admin``
and ``is_user`` attributes, derived on read and never persisted.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, JsonValue, computed_field, field_validator

from account_directory.models.enums import Role, parse_role

_PASSWORD_FIELDS: frozenset[str] = frozenset({"password_hash", "password_salt"})


def _coerce_meta(value: object) -> object:
    """Decode a legacy JSON-text ``meta`` blob.

    Undecodable text and JSON that is not an object are treated as an
    absent blob rather than rejected, so a corrupt row still loads.
    """
    if value is None or isinstance(value, dict):
        return value
    if isinstance(value, (str, bytes)):
        try:
            decoded = json.loads(value)
        except ValueError:
            return None
        return decoded if isinstance(decoded, dict) else None
    return value


class UserRecord(BaseModel):
    """Represents a stored user account, as read from the record store."""

    id: int
    first_name: str
    last_name: str
    username: str
    email: str
    password_hash: str = Field(repr=False)
    password_salt: str = Field(repr=False)
    active: bool = True
    meta: Optional[dict[str, JsonValue]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    _normalize_meta = field_validator("meta", mode="before")(_coerce_meta)

    def searchable_text(self) -> dict[str, str]:
        """Fields fed to the search index for this record."""
        return {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "username": self.username,
            "email": self.email,
        }


class Account(BaseModel):
    """Outward view of a user account with computed attributes."""

    model_config = ConfigDict(frozen=True)

    id: int
    first_name: str
    last_name: str
    username: str
    email: str
    active: bool = True
    meta: Optional[dict[str, JsonValue]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    _normalize_meta = field_validator("meta", mode="before")(_coerce_meta)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name.upper()}"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def role(self) -> Role:
        return parse_role(self.meta)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_super_admin(self) -> bool:
        return self.role is Role.SUPER_ADMINISTRATOR

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_user(self) -> bool:
        return self.role is Role.USER

    @classmethod
    def from_record(cls, record: UserRecord) -> "Account":
        """Project a stored record onto the outward view, dropping secrets."""
        return cls.model_validate(record.model_dump(exclude=set(_PASSWORD_FIELDS)))
