"""
Account Input Validation.

Declares the field rule table shared with external form layers, the
mass-assignment whitelist, and the Pydantic input models that enforce
both at the service boundary before anything reaches the record store.

Uniqueness is listed in the rule table but checked by
:class:`~account_directory.repositories.identity_repository.IdentityRepository`
inside the write transaction, since it needs the store.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from types import MappingProxyType
from typing import Annotated, Optional, TypeVar

from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    JsonValue,
    StringConstraints,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError

from account_directory.exceptions import ValidationError
from account_directory.logger import StructuredLogger
from account_directory.models.enums import RecordClass
from account_directory.utils.string_helpers import normalize_email

__all__ = [
    "CONFIRMATION_FIELD",
    "FILLABLE_FIELDS",
    "FieldRule",
    "MemberIdentity",
    "NAME_MAX_LENGTH",
    "PASSWORD_MIN_LENGTH",
    "UserCreate",
    "UserUpdate",
    "VALIDATION_RULES",
    "filter_fillable",
    "parse_input",
]

NAME_MAX_LENGTH: int = 255
PASSWORD_MIN_LENGTH: int = 6

FILLABLE_FIELDS: frozenset[str] = frozenset({
    "first_name",
    "last_name",
    "username",
    "email",
    "password",
    "active",
    "meta",
})

# Accepted next to ``password`` for the ``confirmed`` rule, never stored.
CONFIRMATION_FIELD: str = "password_confirmation"

_SHARED_NAMESPACE: tuple[RecordClass, ...] = (RecordClass.USERS, RecordClass.MEMBERS)


class FieldRule(BaseModel):
    """Declarative constraints for one input field."""

    model_config = ConfigDict(frozen=True)

    required: bool = False
    max_length: Optional[int] = None
    min_length: Optional[int] = None
    email: bool = False
    unique_in: tuple[RecordClass, ...] = ()
    confirmed: bool = False


VALIDATION_RULES: Mapping[str, FieldRule] = MappingProxyType({
    "first_name": FieldRule(required=True, max_length=NAME_MAX_LENGTH),
    "last_name": FieldRule(required=True, max_length=NAME_MAX_LENGTH),
    "username": FieldRule(
        required=True, max_length=NAME_MAX_LENGTH, unique_in=_SHARED_NAMESPACE,
    ),
    "email": FieldRule(
        required=True, email=True, max_length=NAME_MAX_LENGTH, unique_in=_SHARED_NAMESPACE,
    ),
    "password": FieldRule(required=True, min_length=PASSWORD_MIN_LENGTH, confirmed=True),
})


# ---------------------------------------------------------------------------
# Input models
# ---------------------------------------------------------------------------

NameStr = Annotated[
    str, StringConstraints(strip_whitespace=True, min_length=1, max_length=NAME_MAX_LENGTH)
]
PasswordStr = Annotated[str, Field(min_length=PASSWORD_MIN_LENGTH)]

_NON_NULLABLE: tuple[str, ...] = (
    "first_name", "last_name", "username", "email", "password", "active",
)


class _UserInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @field_validator("email", mode="after", check_fields=False)
    @classmethod
    def _normalize_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        if len(value) > NAME_MAX_LENGTH:
            raise ValueError(f"String should have at most {NAME_MAX_LENGTH} characters")
        return normalize_email(value)

    @field_validator("meta", mode="before", check_fields=False)
    @classmethod
    def _decode_meta(cls, value: object) -> object:
        # Legacy callers hand the blob over as JSON text.
        if isinstance(value, str):
            try:
                return json.loads(value)
            except ValueError as exc:
                raise ValueError("meta must be a JSON object") from exc
        return value

    @model_validator(mode="after")
    def _password_confirmed(self) -> "_UserInput":
        password = getattr(self, "password", None)
        if password is not None and password != getattr(self, CONFIRMATION_FIELD, None):
            raise ValueError("The password confirmation does not match.")
        return self


class UserCreate(_UserInput):
    """Validated payload for creating an account."""

    first_name: NameStr
    last_name: NameStr
    username: NameStr
    email: EmailStr
    password: PasswordStr
    password_confirmation: Optional[str] = None
    active: bool = True
    meta: Optional[dict[str, JsonValue]] = None


class UserUpdate(_UserInput):
    """Validated partial payload for updating an account.

    Only fields present in the payload are changed; a present field obeys
    the same rules as on creation and may not be null.
    """

    first_name: Optional[NameStr] = None
    last_name: Optional[NameStr] = None
    username: Optional[NameStr] = None
    email: Optional[EmailStr] = None
    password: Optional[PasswordStr] = None
    password_confirmation: Optional[str] = None
    active: Optional[bool] = None
    meta: Optional[dict[str, JsonValue]] = None

    @field_validator(*_NON_NULLABLE, mode="before")
    @classmethod
    def _reject_null(cls, value: object) -> object:
        # Defaults are not validated, so this only sees explicit nulls.
        if value is None:
            raise ValueError("This field may not be null.")
        return value

    def changes(self) -> dict[str, object]:
        """Fields the caller actually supplied, minus the confirmation."""
        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if name != CONFIRMATION_FIELD
        }


class MemberIdentity(_UserInput):
    """Username and email a ``members`` record claims in the shared namespace."""

    username: NameStr
    email: EmailStr


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def filter_fillable(
    fields: Mapping[str, object],
    logger: Optional[StructuredLogger] = None,
) -> dict[str, object]:
    """Keep only whitelisted keys (plus the password confirmation).

    Anything else is dropped silently; the dropped names are logged at
    debug level when a logger is given.
    """
    allowed = FILLABLE_FIELDS | {CONFIRMATION_FIELD}
    kept = {key: value for key, value in fields.items() if key in allowed}
    dropped = sorted(set(fields) - allowed)
    if dropped and logger is not None:
        logger.debug("Ignored non-fillable fields: %s", ", ".join(dropped))
    return kept


InputT = TypeVar("InputT", bound=_UserInput)


def parse_input(model: type[InputT], fields: Mapping[str, object]) -> InputT:
    """Validate *fields* with *model*, raising field-level errors.

    Pydantic errors are regrouped per field.  Model-level errors carry no
    location; the password confirmation one is reported under
    ``password``, anything else under ``__all__``.
    """
    try:
        return model.model_validate(dict(fields))
    except PydanticValidationError as exc:
        errors: dict[str, list[str]] = {}
        for err in exc.errors():
            message = str(err.get("msg", "Invalid value")).removeprefix("Value error, ")
            loc = err.get("loc") or ()
            if loc:
                key = str(loc[0])
            elif "password" in message:
                key = "password"
            else:
                key = "__all__"
            errors.setdefault(key, []).append(message)
        raise ValidationError(errors) from exc
