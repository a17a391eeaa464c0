"""
Base Repository.

Provides shared infrastructure for all repositories:
- DatabaseManager reference (SQLite store + optional Supabase mirror)
- Logger reference
- Retried execution for idempotent reads
- Sync queue management for deferred mirror writes and reindexing
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable
from typing import Callable, ContextManager, TypeVar, Union

from pydantic import JsonValue
from supabase import Client as SupabaseClient
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from account_directory.database import DatabaseManager
from account_directory.exceptions import StoreUnavailable
from account_directory.logger import StructuredLogger

T = TypeVar("T")


def id_set(ids: Iterable[int]) -> str:
    """Encode ids as a JSON array for ``IN (SELECT value FROM json_each(?))``.

    Binding one JSON parameter keeps arbitrarily large id sets clear of
    SQLite's bound-parameter limit.
    """
    return json.dumps([int(i) for i in ids])


class BaseRepository:
    """Base class for all repositories. Receives dependencies via __init__."""

    TABLE: str = ""

    def __init__(
        self,
        db: DatabaseManager,
        logger: StructuredLogger,
        read_attempts: int = 3,
        read_max_wait_s: float = 1.0,
    ) -> None:
        self._db = db
        self._logger = logger
        self._read_attempts = read_attempts
        self._read_max_wait_s = read_max_wait_s

    @property
    def supabase(self) -> SupabaseClient:
        """Returns the Supabase client for mirror operations."""
        return self._db.supabase

    @property
    def sqlite(self) -> sqlite3.Connection:
        """Returns the SQLite connection of the record store."""
        return self._db.sqlite

    def transaction(self) -> ContextManager[sqlite3.Connection]:
        """Open (or join) the store's ``BEGIN IMMEDIATE`` transaction."""
        return self._db.transaction()

    def _read(self, operation_name: str, fn: Callable[[], T]) -> T:
        """Run an idempotent read, retrying transient SQLite failures.

        ``sqlite3.OperationalError`` (typically ``database is locked`` once
        the busy timeout expires) is retried with jittered exponential
        backoff.  Any SQLite error left after the final attempt is raised
        as :class:`StoreUnavailable`.  Writes must never go through here.

        Each attempt holds ``write_lock``, so a read never sees another
        thread's uncommitted transaction on the shared connection.

        Parameters
        ----------
        operation_name:
            Human-readable label for log messages, e.g.
            ``"get_by_id (users)"``.
        fn:
            Zero-argument callable performing the query.
        """
        retrying = Retrying(
            stop=stop_after_attempt(self._read_attempts),
            wait=wait_exponential(multiplier=0.05, max=self._read_max_wait_s)
            + wait_random(0, 0.05),
            retry=retry_if_exception_type(sqlite3.OperationalError),
            reraise=True,
        )

        def locked() -> T:
            with self._db.write_lock:
                return fn()

        try:
            return retrying(locked)
        except sqlite3.Error as exc:
            self._logger.error(
                "Record store unavailable for %s: %s", operation_name, exc,
            )
            raise StoreUnavailable(f"{operation_name} failed: {exc}") from exc

    def _queue_pending_sync(
        self,
        table_name: str,
        operation: str,
        entity_id: Union[int, str],
        payload: Union[dict[str, JsonValue], list[dict[str, JsonValue]]],
    ) -> None:
        """
        Record an operation for the sync worker to replay later.

        Args:
            table_name: Replay target (``users`` mirror or ``user_search``).
            operation: The type of operation (``upsert``, ``reindex``).
            entity_id: The ID of the affected entity.
            payload: JSON-serialisable data for the replay.
        """
        try:
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO sync_queue (table_name, operation, entity_id, payload)
                    VALUES (?, ?, ?, ?)
                    """,
                    (table_name, operation, str(entity_id), json.dumps(payload, default=str)),
                )
            self._logger.info(
                "Queued pending sync: %s %s/%s", operation, table_name, entity_id
            )
        except sqlite3.Error as exc:
            self._logger.warning(
                "Failed to queue pending sync for %s/%s: %s",
                table_name,
                entity_id,
                exc,
            )

    @staticmethod
    def _unique(ids: Iterable[int]) -> list[int]:
        """De-duplicate ids, preserving first-seen order."""
        return list(dict.fromkeys(int(i) for i in ids))
