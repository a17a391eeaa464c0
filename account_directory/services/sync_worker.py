"""
Sync Worker Service.

Drains ``sync_queue`` on a daemon thread so that deferred work converges:

``user_search`` / ``reindex``
    The store write succeeded but the search index write did not.  The
    record is reloaded and indexed again, or dropped from the index when
    it no longer exists.  Needs no network, so it runs offline too.

``users`` / ``upsert``
    A Supabase mirror write that could not be made.  Left pending until
    the client is available.

A row that fails is retried on later cycles and parked as
``permanently_failed`` after ``_MAX_RETRY_COUNT`` attempts.  The poll
interval doubles for each consecutive failed cycle, up to
``_MAX_INTERVAL_S``.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from typing import Callable, Optional

from account_directory.config import AppConfig
from account_directory.database import DatabaseManager
from account_directory.logger import StructuredLogger
from account_directory.repositories.user_repository import REINDEX_TABLE, UserRepository
from account_directory.search_index import SearchIndex
from account_directory.services.base_service import BaseService

_MIRROR_TABLE: str = "users"

Payload = dict[str, object]
Handler = Callable[[str, Payload], None]


class SyncWorkerService(BaseService):
    """Replays queued reindex and mirror operations.

    Parameters
    ----------
    db:
        Provides the queue connection, ``write_lock``, ``is_online`` and
        the Supabase client.
    users:
        Reloads records for reindexing.
    index:
        The search index being repaired.
    config:
        Application configuration.
    logger:
        Structured JSON logger.
    """

    _BASE_INTERVAL_S: float = 30.0
    _MAX_INTERVAL_S: float = 300.0
    _BATCH_SIZE: int = 50
    _MAX_RETRY_COUNT: int = 5
    _JOIN_TIMEOUT_S: float = 10.0

    def __init__(
        self,
        db: DatabaseManager,
        users: UserRepository,
        index: SearchIndex,
        config: AppConfig,
        logger: StructuredLogger,
    ) -> None:
        super().__init__(logger)
        self._db = db
        self._users = users
        self._index = index
        self._config = config
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._consecutive_failures: int = 0
        self._handlers: dict[tuple[str, str], Handler] = {
            (REINDEX_TABLE, "reindex"): self._replay_reindex,
            (_MIRROR_TABLE, "upsert"): self._replay_mirror_upsert,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start polling.  No-op when already running."""
        if self.is_running:
            self._logger.debug("Sync worker already running.")
            return

        self._stop_event.clear()
        self._consecutive_failures = 0
        self._thread = threading.Thread(target=self._run_loop, name="SyncWorker", daemon=True)
        self._thread.start()
        self._logger.info("Sync worker started.")

    def stop(self) -> None:
        """Ask the thread to exit and wait briefly for it."""
        if self._thread is None:
            return

        self._stop_event.set()
        self._thread.join(timeout=self._JOIN_TIMEOUT_S)
        if self._thread.is_alive():
            self._logger.warning(
                "Sync worker did not stop within %.0f s.", self._JOIN_TIMEOUT_S,
            )
        else:
            self._logger.info("Sync worker stopped.")
        self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ------------------------------------------------------------------
    # Queue processing
    # ------------------------------------------------------------------

    def process_pending_queue(self) -> int:
        """Replay one batch of pending rows.

        Mirror rows are not picked up while offline.

        Returns
        -------
        int
            Rows replayed successfully.
        """
        rows = self._pending_batch()
        replayed = sum(1 for row in rows if self._replay_row(row))
        if replayed:
            self._logger.info("Sync cycle replayed %d of %d row(s).", replayed, len(rows))
        return replayed

    def _pending_batch(self) -> list[sqlite3.Row]:
        tables = [REINDEX_TABLE, _MIRROR_TABLE] if self._db.is_online else [REINDEX_TABLE]
        with self._db.write_lock:
            return self._db.sqlite.execute(
                """
                SELECT id, table_name, operation, entity_id, payload
                FROM sync_queue
                WHERE status = 'pending'
                  AND table_name IN (SELECT value FROM json_each(?))
                ORDER BY id ASC
                LIMIT ?
                """,
                (json.dumps(tables), self._BATCH_SIZE),
            ).fetchall()

    def _replay_row(self, row: sqlite3.Row) -> bool:
        queue_id: int = row["id"]
        try:
            payload: Payload = json.loads(row["payload"])
        except (json.JSONDecodeError, TypeError) as exc:
            self._logger.error("Malformed JSON payload in sync_queue row %d: %s", queue_id, exc)
            self._record_attempt(queue_id, f"Malformed JSON: {exc}")
            return False

        key = (row["table_name"], row["operation"])
        handler = self._handlers.get(key)
        try:
            if handler is None:
                raise ValueError(f"Unknown sync operation: {key[0]}.{key[1]}")
            handler(row["entity_id"], payload)
        except Exception as exc:
            self._logger.warning("Sync queue row %d failed: %s", queue_id, exc)
            self._record_attempt(queue_id, str(exc))
            return False

        self._record_success(queue_id)
        self._logger.debug("Replayed sync queue row %d (%s.%s).", queue_id, *key)
        return True

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _replay_reindex(self, entity_id: str, payload: Payload) -> None:
        user_id = int(entity_id)
        record = self._users.get_by_id(user_id)
        if record is None:
            self._index.remove(user_id)
        else:
            self._index.index(record)

    def _replay_mirror_upsert(self, entity_id: str, payload: Payload) -> None:
        self._db.supabase.table(_MIRROR_TABLE).upsert(payload).execute()

    # ------------------------------------------------------------------
    # Loop and backoff
    # ------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.wait(timeout=self._calculate_backoff_interval()):
            try:
                self.process_pending_queue()
            except Exception:
                self._consecutive_failures += 1
                self._logger.warning(
                    "Sync cycle failed (%d in a row).", self._consecutive_failures,
                    exc_info=True,
                )
            else:
                self._consecutive_failures = 0

    def _calculate_backoff_interval(self) -> float:
        """Base interval doubled per consecutive failed cycle, capped."""
        if self._consecutive_failures == 0:
            return self._BASE_INTERVAL_S
        backoff = self._BASE_INTERVAL_S * (2 ** min(self._consecutive_failures, 6))
        return min(backoff, self._MAX_INTERVAL_S)

    # ------------------------------------------------------------------
    # Row status
    # ------------------------------------------------------------------

    def _record_success(self, queue_id: int) -> None:
        with self._db.write_lock:
            self._db.sqlite.execute(
                "UPDATE sync_queue SET status = 'synced', attempted_at = CURRENT_TIMESTAMP "
                "WHERE id = ?",
                (queue_id,),
            )

    def _record_attempt(self, queue_id: int, error_message: str) -> None:
        """Count a failed attempt; park the row once the limit is reached."""
        with self._db.write_lock:
            self._db.sqlite.execute(
                """
                UPDATE sync_queue
                SET retry_count = retry_count + 1,
                    status = CASE WHEN retry_count + 1 >= ?
                                  THEN 'permanently_failed' ELSE 'pending' END,
                    attempted_at = CURRENT_TIMESTAMP,
                    error_message = ?
                WHERE id = ?
                """,
                (self._MAX_RETRY_COUNT, error_message, queue_id),
            )
