"""
Account Audit Trail.

Each account state change produces one :class:`AuditEvent`.  The event is
always written to the JSON log as ``AUDIT: {...}``; when the caller passes
its SQLite connection it is also inserted into ``audit_log``, inside the
caller's open transaction, so the audit row commits or rolls back with the
change it describes.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator

from account_directory.logger import StructuredLogger, is_sensitive_key
from account_directory.models.enums import AuditAction

__all__ = ["SYSTEM_ACTOR", "AuditEvent", "log_audit_event", "persist_audit_event"]

DetailValue = Union[str, int, float, bool, None]

SYSTEM_ACTOR: str = "system"


class AuditEvent(BaseModel):
    """One audit trail entry.

    ``entity_id`` accepts integer keys.  ``details`` never keeps a key that
    looks like a credential.
    """

    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    action: AuditAction
    entity_type: str
    entity_id: str
    user_id: str = SYSTEM_ACTOR
    details: dict[str, DetailValue] = Field(default_factory=dict)

    @field_validator("entity_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: object) -> object:
        return str(value) if isinstance(value, int) else value

    @field_validator("details")
    @classmethod
    def _drop_credentials(cls, value: dict[str, DetailValue]) -> dict[str, DetailValue]:
        return {key: item for key, item in value.items() if not is_sensitive_key(key)}

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), default=str)


def log_audit_event(
    logger: StructuredLogger,
    action: Union[AuditAction, str],
    entity_type: str,
    entity_id: Union[int, str],
    user_id: str = SYSTEM_ACTOR,
    details: Optional[dict[str, DetailValue]] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> AuditEvent:
    """Record an audit event.

    Args:
        logger: Destination for the ``AUDIT:`` line.
        action: One of :class:`AuditAction`.
        entity_type: ``"User"``, ``"Member"`` or ``"Email"``.
        entity_id: Key of the affected entity.
        user_id: The acting account, ``"system"`` when unknown.
        details: Extra scalar context, e.g. the changed field names.
        conn: When given, the event is also inserted into ``audit_log``.

    Returns:
        The validated event.

    Raises:
        sqlite3.Error: The ``audit_log`` insert failed.  Inside a
            transaction this aborts the change being audited.
    """
    event = AuditEvent(
        action=AuditAction(action),
        entity_type=entity_type,
        entity_id=entity_id,
        user_id=user_id,
        details=details or {},
    )
    logger.info("AUDIT: %s", event.to_json())
    if conn is not None:
        persist_audit_event(conn, event)
    return event


def persist_audit_event(conn: sqlite3.Connection, event: AuditEvent) -> None:
    conn.execute(
        """
        INSERT INTO audit_log (timestamp, action, entity_type, entity_id, user_id, details)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            event.timestamp,
            event.action.value,
            event.entity_type,
            event.entity_id,
            event.user_id,
            json.dumps(event.details),
        ),
    )
