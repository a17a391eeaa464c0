"""
Base Service Class.

Shared plumbing for service classes: the injected logger and a shortcut
for recording audit events against the service's own logger.
"""

from __future__ import annotations

import sqlite3
from typing import Optional, Union

from account_directory.logger import StructuredLogger
from account_directory.models.enums import AuditAction
from account_directory.utils.audit import SYSTEM_ACTOR, AuditEvent, DetailValue, log_audit_event


class BaseService:
    """Base class for all service classes. Provides a logger."""

    def __init__(self, logger: StructuredLogger) -> None:
        self._logger: StructuredLogger = logger

    def _audit(
        self,
        action: AuditAction,
        entity_type: str,
        entity_id: Union[int, str],
        actor: str = SYSTEM_ACTOR,
        details: Optional[dict[str, DetailValue]] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> AuditEvent:
        """Emit an audit event; persisted in the open transaction when *conn* is given."""
        return log_audit_event(
            logger=self._logger,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            user_id=actor,
            details=details,
            conn=conn,
        )
