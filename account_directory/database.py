"""
Database Connections.

:class:`DatabaseManager` owns the two stores behind the account directory:

- **SQLite**, the authoritative record store.  Opened in autocommit mode
  with WAL journaling; every multi-statement write goes through
  :meth:`DatabaseManager.transaction`.  Also holds ``sync_queue``.
- **Supabase**, an optional mirror of the password-free account columns.
  When credentials are missing or the client cannot be built the manager
  runs offline and mirror writes are queued locally.

No queries live here; repositories own those.

Usage::

    db = DatabaseManager.from_config(get_config(), StructuredLogger(name="database"))
    with db.transaction() as conn:
        conn.execute("UPDATE users SET active = 0 WHERE id = ?", (7,))
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional, Union

from supabase import Client as SupabaseClient
from supabase import ClientOptions, create_client

from account_directory.config import AppConfig
from account_directory.logger import StructuredLogger


def _open_sqlite(path: Union[Path, str], timeout_s: float) -> sqlite3.Connection:
    conn = sqlite3.connect(
        str(path),
        timeout=timeout_s,
        check_same_thread=False,
        isolation_level=None,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def _open_supabase(
    url: str, key: str, timeout_s: float, logger: StructuredLogger,
) -> Optional[SupabaseClient]:
    """Build the mirror client, or return ``None`` to run offline."""
    if not (url and key):
        logger.warning("Supabase not configured; mirror writes will be queued.")
        return None
    try:
        client = create_client(
            url, key, options=ClientOptions(postgrest_client_timeout=timeout_s),
        )
    except (ValueError, TypeError) as exc:
        logger.warning("Invalid Supabase credentials (%s); running offline.", exc)
        return None
    except Exception:
        logger.error("Supabase client could not be created; running offline.", exc_info=True)
        return None
    logger.info("Supabase mirror client ready.")
    return client


class DatabaseManager:
    """The SQLite record store plus the optional Supabase mirror.

    Parameters
    ----------
    supabase_url, supabase_key:
        Mirror credentials.  Either may be empty to run offline.
    sqlite_path:
        Database file, or ``:memory:``.
    logger:
        Structured JSON logger.
    sqlite_timeout_s:
        Busy wait on a locked database before a statement fails.
    supabase_timeout_s:
        Timeout for every PostgREST request.

    Raises
    ------
    PermissionError
        The database file or its directory cannot be opened.
    """

    def __init__(
        self,
        supabase_url: str,
        supabase_key: str,
        sqlite_path: Union[Path, str],
        logger: StructuredLogger,
        sqlite_timeout_s: float = 5.0,
        supabase_timeout_s: float = 10.0,
    ) -> None:
        self._logger = logger
        self._write_lock = threading.RLock()
        self._in_transaction = False
        self._mirror_configured = bool(supabase_url and supabase_key)
        self._supabase: Optional[SupabaseClient] = _open_supabase(
            supabase_url, supabase_key, supabase_timeout_s, logger,
        )
        try:
            self._sqlite_conn = _open_sqlite(sqlite_path, sqlite_timeout_s)
        except PermissionError as exc:
            message = f"Cannot open the record store at '{sqlite_path}': {exc}"
            self._logger.error(message)
            raise PermissionError(message) from exc
        self._logger.info("Record store opened at %s", sqlite_path)

    @classmethod
    def from_config(cls, config: AppConfig, logger: StructuredLogger) -> "DatabaseManager":
        """Build a manager from the ``SUPABASE_*`` and ``SQLITE_*`` settings."""
        return cls(
            supabase_url=config.SUPABASE_URL,
            supabase_key=config.SUPABASE_ANON_KEY.get_secret_value(),
            sqlite_path=config.SQLITE_PATH,
            logger=logger,
            sqlite_timeout_s=config.SQLITE_TIMEOUT_S,
            supabase_timeout_s=config.SUPABASE_TIMEOUT_S,
        )

    @property
    def supabase(self) -> SupabaseClient:
        """The mirror client.

        Raises
        ------
        RuntimeError
            Running offline.
        """
        if self._supabase is None:
            raise RuntimeError("Supabase mirror is not available (offline mode).")
        return self._supabase

    @property
    def mirror_configured(self) -> bool:
        """Whether Supabase credentials were supplied, reachable or not."""
        return self._mirror_configured

    @property
    def is_online(self) -> bool:
        return self._supabase is not None

    @property
    def sqlite(self) -> sqlite3.Connection:
        return self._sqlite_conn

    @property
    def write_lock(self) -> threading.RLock:
        """Serialises SQLite writers within this process."""
        return self._write_lock

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Run the block in one ``BEGIN IMMEDIATE`` transaction.

        The database write lock is taken at ``BEGIN``, so reads made inside
        the block (uniqueness checks, whether any account exists yet) stay
        valid until ``COMMIT``, across processes sharing the file too.
        ``write_lock`` is held throughout.  Any exception rolls back and
        propagates.  A nested block joins the enclosing transaction.
        """
        with self._write_lock:
            if self._in_transaction:
                yield self._sqlite_conn
                return

            self._sqlite_conn.execute("BEGIN IMMEDIATE")
            self._in_transaction = True
            try:
                yield self._sqlite_conn
                self._sqlite_conn.execute("COMMIT")
            except BaseException:
                self._sqlite_conn.execute("ROLLBACK")
                self._logger.debug("Transaction rolled back.")
                raise
            finally:
                self._in_transaction = False

    def get_pending_sync_count(self) -> int:
        """Rows in ``sync_queue`` still waiting to be replayed."""
        with self._write_lock:
            row = self._sqlite_conn.execute(
                "SELECT COUNT(*) FROM sync_queue WHERE status = 'pending'"
            ).fetchone()
        return int(row[0])

    def close(self) -> None:
        """Close the SQLite connection.  Idempotent."""
        with self._write_lock:
            self._sqlite_conn.close()
        self._logger.info("Record store closed.")
