"""
Search Index.

Token-based full-text index over the searchable account fields, backed by
an SQLite FTS5 table in its own database file.  The FTS ``rowid`` is the
user id, so one index row exists per record.

The index is derived data: it never holds anything the record store does
not, and it can always be rebuilt from the store with :meth:`rebuild`.
Every failure surfaces as :class:`SearchUnavailable`; an outage is never
reported as an empty result.

Usage::

    index = SearchIndex(Path(config.SEARCH_INDEX_PATH), logger,
                        timeout_s=config.SEARCH_TIMEOUT_S)
    index.index(record)
    ranked_ids = index.search("ali smi")
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterable
from pathlib import Path
from typing import Union

from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from account_directory.exceptions import SearchUnavailable
from account_directory.logger import StructuredLogger
from account_directory.models.user import UserRecord
from account_directory.utils.string_helpers import build_fts_query

__all__ = ["SEARCH_TABLE", "SearchIndex"]

SEARCH_TABLE: str = "user_search"

# ``remove_diacritics 2`` lets "jose" find "José".
_FTS_DDL: str = f"""
    CREATE VIRTUAL TABLE IF NOT EXISTS {SEARCH_TABLE} USING fts5(
        first_name, last_name, username, email,
        tokenize = 'unicode61 remove_diacritics 2'
    )
"""


class SearchIndex:
    """Write-through full-text index of user accounts.

    Parameters
    ----------
    path:
        Database file for the index, or ``:memory:``.
    logger:
        Structured JSON logger.
    timeout_s:
        Seconds a statement waits on a locked index before failing.
    read_attempts:
        Attempts for a search hitting a locked index.  Index writes are
        never retried.
    """

    def __init__(
        self,
        path: Union[Path, str],
        logger: StructuredLogger,
        timeout_s: float = 2.0,
        read_attempts: int = 2,
    ) -> None:
        self._logger = logger
        self._path = str(path)
        self._read_attempts = read_attempts
        self._lock: threading.RLock = threading.RLock()
        try:
            self._conn: sqlite3.Connection = sqlite3.connect(
                self._path,
                timeout=timeout_s,
                check_same_thread=False,
                isolation_level=None,
            )
            self._conn.execute(_FTS_DDL)
        except sqlite3.Error as exc:
            self._logger.error("Search index could not be opened at %s: %s", self._path, exc)
            raise SearchUnavailable(f"Cannot open search index: {exc}") from exc
        self._logger.info("Search index opened at %s", self._path)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def index(self, record: UserRecord) -> None:
        """(Re)index the searchable fields of *record* under its id."""
        fields = record.searchable_text()
        try:
            with self._lock:
                self._conn.execute("BEGIN IMMEDIATE")
                try:
                    self._conn.execute(
                        f"DELETE FROM {SEARCH_TABLE} WHERE rowid = ?", (record.id,)
                    )
                    self._conn.execute(
                        f"INSERT INTO {SEARCH_TABLE} "
                        "(rowid, first_name, last_name, username, email) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (
                            record.id,
                            fields["first_name"],
                            fields["last_name"],
                            fields["username"],
                            fields["email"],
                        ),
                    )
                    self._conn.execute("COMMIT")
                except BaseException:
                    self._rollback()
                    raise
        except sqlite3.Error as exc:
            self._logger.error("Failed to index user %s: %s", record.id, exc)
            raise SearchUnavailable(f"Cannot index user {record.id}: {exc}") from exc
        self._logger.debug("Indexed user %s", record.id)

    def remove(self, user_id: int) -> None:
        """Drop *user_id* from the index.  Unknown ids are ignored."""
        try:
            with self._lock:
                self._conn.execute(
                    f"DELETE FROM {SEARCH_TABLE} WHERE rowid = ?", (user_id,)
                )
        except sqlite3.Error as exc:
            self._logger.error("Failed to remove user %s from index: %s", user_id, exc)
            raise SearchUnavailable(f"Cannot remove user {user_id}: {exc}") from exc

    def rebuild(self, records: Iterable[UserRecord]) -> int:
        """Replace the whole index with *records*.

        Runs in one transaction, so searches see either the old index or
        the complete new one.

        Returns
        -------
        int
            Number of records indexed.
        """
        count = 0
        try:
            with self._lock:
                self._conn.execute("BEGIN IMMEDIATE")
                try:
                    self._conn.execute(f"DELETE FROM {SEARCH_TABLE}")
                    for record in records:
                        fields = record.searchable_text()
                        self._conn.execute(
                            f"INSERT INTO {SEARCH_TABLE} "
                            "(rowid, first_name, last_name, username, email) "
                            "VALUES (?, ?, ?, ?, ?)",
                            (
                                record.id,
                                fields["first_name"],
                                fields["last_name"],
                                fields["username"],
                                fields["email"],
                            ),
                        )
                        count += 1
                    self._conn.execute("COMMIT")
                except BaseException:
                    self._rollback()
                    raise
        except sqlite3.Error as exc:
            self._logger.error("Search index rebuild failed: %s", exc)
            raise SearchUnavailable(f"Cannot rebuild search index: {exc}") from exc
        self._logger.info("Search index rebuilt with %d record(s).", count)
        return count

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def search(self, text: str) -> list[int]:
        """Return the ids matching *text*, best match first.

        Every token of *text* must match (as a prefix) in at least one
        indexed field.  Text with no searchable tokens yields ``[]``.

        Raises
        ------
        SearchUnavailable
            The index could not be queried.
        """
        query = build_fts_query(text)
        if not query:
            return []

        def _query() -> list[int]:
            with self._lock:
                rows = self._conn.execute(
                    f"SELECT rowid FROM {SEARCH_TABLE} "
                    f"WHERE {SEARCH_TABLE} MATCH ? ORDER BY rank, rowid",
                    (query,),
                ).fetchall()
            return [int(row[0]) for row in rows]

        retrying = Retrying(
            stop=stop_after_attempt(self._read_attempts),
            wait=wait_exponential(multiplier=0.05, max=0.5) + wait_random(0, 0.05),
            retry=retry_if_exception_type(sqlite3.OperationalError),
            reraise=True,
        )
        try:
            return retrying(_query)
        except sqlite3.Error as exc:
            self._logger.error("Search failed for %r: %s", text, exc)
            raise SearchUnavailable(f"Search index unavailable: {exc}") from exc

    def count(self) -> int:
        """Number of indexed records."""
        try:
            with self._lock:
                row = self._conn.execute(f"SELECT COUNT(*) FROM {SEARCH_TABLE}").fetchone()
        except sqlite3.Error as exc:
            raise SearchUnavailable(f"Search index unavailable: {exc}") from exc
        return int(row[0])

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the index connection.  Later calls raise SearchUnavailable."""
        with self._lock:
            try:
                self._conn.close()
                self._logger.info("Search index closed.")
            except sqlite3.ProgrammingError:
                pass

    def _rollback(self) -> None:
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error:
            self._logger.debug("Search index rollback skipped.", exc_info=True)
