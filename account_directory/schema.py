"""
Record Store Schema.

:func:`initialize_schema` brings an SQLite record store up to
:data:`CURRENT_SCHEMA_VERSION` and is safe to call on every startup.

A brand-new database gets every table from :data:`_TABLES` directly.  An
older database is walked forward through the functions registered with
:func:`_migration`, one version at a time.  Either path runs inside one
``BEGIN IMMEDIATE`` transaction together with the version bump, so a
failed upgrade leaves the previous version intact for the next attempt.

To change the schema: edit the DDL below for new databases, bump
:data:`CURRENT_SCHEMA_VERSION`, and register a ``@_migration(N)`` function
that upgrades a version ``N - 1`` database in place.

The search index is a separate database owned by
:class:`~account_directory.search_index.SearchIndex`.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable

from account_directory.logger import StructuredLogger

__all__ = ["CURRENT_SCHEMA_VERSION", "initialize_schema"]

CURRENT_SCHEMA_VERSION: int = 2

_VERSION_DDL: str = """
    CREATE TABLE IF NOT EXISTS schema_version (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        version INTEGER NOT NULL,
        applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
"""

_IDENTITIES_DDL: str = """
    CREATE TABLE IF NOT EXISTS account_identities (
        field TEXT NOT NULL CHECK (field IN ('username', 'email')),
        value TEXT NOT NULL COLLATE NOCASE,
        record_class TEXT NOT NULL CHECK (record_class IN ('users', 'members')),
        record_id INTEGER NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (field, value)
    )
"""

_IDENTITIES_INDEX: str = (
    "CREATE INDEX IF NOT EXISTS idx_identities_record "
    "ON account_identities(record_class, record_id)"
)

# Table name -> DDL, in creation order.
_TABLES: dict[str, str] = {
    # Deferred reindex and mirror work drained by the sync worker.
    "sync_queue": """
        CREATE TABLE IF NOT EXISTS sync_queue (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            table_name TEXT NOT NULL,
            operation TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            payload TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'synced', 'permanently_failed')),
            retry_count INTEGER NOT NULL DEFAULT 0,
            error_message TEXT,
            attempted_at TIMESTAMP,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "audit_log": """
        CREATE TABLE IF NOT EXISTS audit_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            action TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            details TEXT NOT NULL DEFAULT '{}',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "users": """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            first_name TEXT NOT NULL,
            last_name TEXT NOT NULL,
            username TEXT NOT NULL UNIQUE COLLATE NOCASE,
            email TEXT NOT NULL UNIQUE COLLATE NOCASE,
            password_hash TEXT NOT NULL,
            password_salt TEXT NOT NULL,
            active INTEGER NOT NULL DEFAULT 1,
            meta TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """,
    # Username/email namespace shared by users and members.
    "account_identities": _IDENTITIES_DDL,
    # One outstanding reset token digest per email.
    "password_resets": """
        CREATE TABLE IF NOT EXISTS password_resets (
            email TEXT PRIMARY KEY COLLATE NOCASE,
            token_hash TEXT NOT NULL,
            created_at TIMESTAMP NOT NULL
        )
    """,
}

_INDEXES: tuple[str, ...] = (
    "CREATE INDEX IF NOT EXISTS idx_users_first_name ON users(first_name)",
    _IDENTITIES_INDEX,
    "CREATE INDEX IF NOT EXISTS idx_sync_queue_pending ON sync_queue(status, table_name)",
)

Migration = Callable[[sqlite3.Connection, StructuredLogger], None]

# Target version -> function upgrading from the version before it.
_MIGRATIONS: dict[int, Migration] = {}


def _migration(target: int) -> Callable[[Migration], Migration]:
    def register(fn: Migration) -> Migration:
        _MIGRATIONS[target] = fn
        return fn
    return register


def _columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}


@_migration(2)
def _add_identity_namespace(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Create ``account_identities`` and claim every existing user's names.

    Version 1 only had UNIQUE columns on ``users``, so nothing stopped a
    member from reusing a user's username or email.  Members register
    their own claims once this has run.  Also adds ``sync_queue.retry_count``.
    """
    conn.execute(_IDENTITIES_DDL)
    conn.execute(_IDENTITIES_INDEX)
    for field in ("username", "email"):
        conn.execute(
            "INSERT OR IGNORE INTO account_identities (field, value, record_class, record_id) "
            f"SELECT '{field}', {field}, 'users', id FROM users"
        )
    claimed = conn.execute("SELECT COUNT(*) FROM account_identities").fetchone()[0]

    if "retry_count" not in _columns(conn, "sync_queue"):
        conn.execute("ALTER TABLE sync_queue ADD COLUMN retry_count INTEGER NOT NULL DEFAULT 0")

    logger.info("Schema v2: %d identity claim(s) backfilled from users.", claimed)


def _stored_version(conn: sqlite3.Connection) -> int:
    conn.execute(_VERSION_DDL)
    row = conn.execute("SELECT version FROM schema_version WHERE id = 1").fetchone()
    return 0 if row is None else int(row[0])


def _record_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(
        "INSERT INTO schema_version (id, version) VALUES (1, ?) "
        "ON CONFLICT(id) DO UPDATE SET version = excluded.version, "
        "applied_at = CURRENT_TIMESTAMP",
        (version,),
    )


def _create_fresh(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    for ddl in (*_TABLES.values(), *_INDEXES):
        conn.execute(ddl)
    logger.info("Created tables: %s.", ", ".join(_TABLES))


def _migrate(conn: sqlite3.Connection, logger: StructuredLogger, current: int) -> None:
    for version in range(current + 1, CURRENT_SCHEMA_VERSION + 1):
        step = _MIGRATIONS.get(version)
        if step is None:
            raise RuntimeError(f"No migration registered for schema version {version}")
        logger.info("Migrating schema to version %d.", version)
        step(conn, logger)


def initialize_schema(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Create or upgrade the record store schema.

    *conn* must be in autocommit mode (``isolation_level=None``); the
    upgrade brackets itself with ``BEGIN IMMEDIATE`` / ``COMMIT``.

    Raises:
        sqlite3.Error: A DDL statement failed.  Nothing is applied.
        RuntimeError: A required migration step is missing.
    """
    current = _stored_version(conn)
    if current >= CURRENT_SCHEMA_VERSION:
        logger.debug("Schema at version %d, nothing to do.", current)
        return

    conn.execute("BEGIN IMMEDIATE")
    try:
        if current == 0:
            _create_fresh(conn, logger)
        else:
            _migrate(conn, logger, current)
        _record_version(conn, CURRENT_SCHEMA_VERSION)
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        logger.error("Schema upgrade from version %d failed; rolled back.", current)
        raise

    logger.info("Schema at version %d (was %d).", CURRENT_SCHEMA_VERSION, current)
