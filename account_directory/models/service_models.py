"""
Service Layer Data Transfer Objects.

Pydantic models for validated output at service boundaries.
Replaces raw dict passing between layers.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, Field, SecretStr, computed_field

from account_directory.models.user import Account

T = TypeVar("T")

__all__ = [
    "Page",
    "PartialWriteWarning",
    "PasswordResetEvent",
    "ServiceResult",
    "WriteResult",
]


# ---------------------------------------------------------------------------
# Listing models
# ---------------------------------------------------------------------------

class Page(BaseModel, Generic[T]):
    """One page of an ordered, filtered listing.

    ``total`` counts the filtered set (exclusions already applied), so
    ``last_page`` is computed on what the caller can actually page through.
    """

    items: list[T] = Field(default_factory=list)
    total: int = Field(ge=0)
    page: int = Field(ge=1)
    page_size: int = Field(ge=1)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def last_page(self) -> int:
        return max(1, math.ceil(self.total / self.page_size))


# ---------------------------------------------------------------------------
# Write models
# ---------------------------------------------------------------------------

class PartialWriteWarning(BaseModel):
    """A store write succeeded but a follow-up write did not.

    The record is durable; ``target`` names the system that is now
    behind (``"search_index"``) and will converge through the sync queue.
    """

    record_id: int
    target: str
    message: str


class WriteResult(BaseModel):
    """Outcome of a successful create or update."""

    user: Account
    warnings: list[PartialWriteWarning] = Field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return bool(self.warnings)


# ---------------------------------------------------------------------------
# Notification models
# ---------------------------------------------------------------------------

class PasswordResetEvent(BaseModel):
    """Message handed to the notification collaborator for a reset flow.

    The token is only ever held here in clear; the store keeps its digest.
    """

    user_id: int
    email: str
    display_name: str
    token: SecretStr
    reset_url: str
    expires_at: datetime


# ---------------------------------------------------------------------------
# Generic service models
# ---------------------------------------------------------------------------

class ServiceResult(BaseModel, Generic[T]):
    """
    Standard return envelope for collaborators that must not raise.

    Notification delivery reports through this so a failed send never
    aborts the account operation that triggered it.
    """

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    status_code: int = 200
