"""
Account Directory Exceptions.

Typed failures raised across the service boundary.  Lookups and listings
never raise for "no results"; these are reserved for misses on a single
key, invalid input, and unreachable backing systems.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "AccountDirectoryError",
    "NotFound",
    "SearchUnavailable",
    "StoreUnavailable",
    "UniqueConstraintError",
    "ValidationError",
]


class AccountDirectoryError(Exception):
    """Base class for every error raised by this package."""


class NotFound(AccountDirectoryError):
    """A single-key lookup found nothing."""

    def __init__(self, entity: str, key: object) -> None:
        super().__init__(f"{entity} not found: {key!r}")
        self.entity = entity
        self.key = key


class ValidationError(AccountDirectoryError):
    """One or more fields violate their constraints.

    ``errors`` maps each offending field to a list of human-readable
    messages, ready to be presented field-by-field.
    """

    def __init__(self, errors: dict[str, list[str]]) -> None:
        self.errors: dict[str, list[str]] = errors
        summary = "; ".join(
            f"{field}: {', '.join(messages)}" for field, messages in errors.items()
        )
        super().__init__(f"Validation failed ({summary})")


class UniqueConstraintError(ValidationError):
    """A username or email is already claimed by another account.

    Carries the colliding ``field`` and the ``record_class`` of the
    record that already holds the value.
    """

    def __init__(
        self,
        field: str,
        record_class: str,
        record_id: Optional[int] = None,
    ) -> None:
        self.field = field
        self.record_class = record_class
        self.record_id = record_id
        super().__init__({field: [f"The {field} has already been taken."]})


class SearchUnavailable(AccountDirectoryError):
    """The search index could not be queried or written."""


class StoreUnavailable(AccountDirectoryError):
    """The record store could not be read after retrying."""
