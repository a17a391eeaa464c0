"""
User Repository.

Handles all user account data access on the SQLite record store, plus the
best-effort Supabase mirror of the outward columns.

Every ordered read uses ``id ASC`` as the final tie-break, so records that
share the ordering value always come back in the same order.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Collection, Iterable, Iterator
from datetime import datetime, timezone
from typing import Optional

from pydantic import JsonValue

from account_directory.exceptions import NotFound, ValidationError
from account_directory.models.enums import SortDirection
from account_directory.models.service_models import Page
from account_directory.models.user import UserRecord
from account_directory.repositories.base_repository import BaseRepository, id_set
from account_directory.utils.string_helpers import normalize_email

_SELECT_COLUMNS: str = (
    "id, first_name, last_name, username, email, password_hash, password_salt, "
    "active, meta, created_at, updated_at"
)

# Whitelisted ORDER BY targets.  Text columns sort case-insensitively.
SORTABLE_COLUMNS: dict[str, str] = {
    "id": "id",
    "first_name": "first_name COLLATE NOCASE",
    "last_name": "last_name COLLATE NOCASE",
    "username": "username COLLATE NOCASE",
    "email": "email COLLATE NOCASE",
    "active": "active",
    "created_at": "created_at",
    "updated_at": "updated_at",
}

WRITABLE_COLUMNS: frozenset[str] = frozenset({
    "first_name",
    "last_name",
    "username",
    "email",
    "password_hash",
    "password_salt",
    "active",
    "meta",
})

_MIRROR_TABLE: str = "users"
# ``sync_queue.table_name`` for deferred search index writes.
REINDEX_TABLE: str = "user_search"
_SCAN_BATCH_SIZE: int = 200


def order_clause(order_by: str, direction: str) -> str:
    """Build a safe ``ORDER BY`` body from caller-supplied names.

    Raises:
        ValidationError: Unknown column or direction.
    """
    column = SORTABLE_COLUMNS.get(order_by)
    if column is None:
        raise ValidationError({
            "order_by": [f"Cannot order by '{order_by}'. "
                         f"Allowed: {', '.join(sorted(SORTABLE_COLUMNS))}."],
        })
    try:
        resolved = SortDirection(str(direction).lower())
    except ValueError:
        raise ValidationError({
            "direction": [f"Invalid direction '{direction}'. Use 'asc' or 'desc'."],
        }) from None
    if order_by == "id":
        return f"id {resolved.value.upper()}"
    return f"{column} {resolved.value.upper()}, id ASC"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class UserRepository(BaseRepository):
    """Data access layer for user account records.

    **No ``delete()`` method.**  Removing accounts is not part of this
    service; use ``active = False`` to disable one.
    """

    TABLE = "users"

    # ------------------------------------------------------------------
    # Single lookups
    # ------------------------------------------------------------------

    def get_by_id(self, user_id: int) -> Optional[UserRecord]:
        """Fetch a user by primary key."""
        def _query() -> Optional[UserRecord]:
            row = self.sqlite.execute(
                f"SELECT {_SELECT_COLUMNS} FROM {self.TABLE} WHERE id = ?", (user_id,)
            ).fetchone()
            return UserRecord(**dict(row)) if row else None

        return self._read(f"get_by_id ({self.TABLE})", _query)

    def get_by_email(self, email: str) -> Optional[UserRecord]:
        """Fetch a user by email address (case-insensitive)."""
        normalized = normalize_email(email)

        def _query() -> Optional[UserRecord]:
            row = self.sqlite.execute(
                f"SELECT {_SELECT_COLUMNS} FROM {self.TABLE} WHERE email = ?", (normalized,)
            ).fetchone()
            return UserRecord(**dict(row)) if row else None

        return self._read(f"get_by_email ({self.TABLE})", _query)

    def has_any(self) -> bool:
        """``True`` once at least one user record exists."""
        def _query() -> bool:
            row = self.sqlite.execute(
                f"SELECT EXISTS (SELECT 1 FROM {self.TABLE}) AS present"
            ).fetchone()
            return bool(row["present"])

        return self._read(f"has_any ({self.TABLE})", _query)

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    def get_by_ids(
        self,
        ids: Iterable[int],
        order_by: str = "first_name",
        direction: str = "asc",
    ) -> list[UserRecord]:
        """Fetch the records whose ids are in *ids*, ordered.

        Ids with no matching record are silently left out.
        """
        wanted = self._unique(ids)
        order = order_clause(order_by, direction)
        if not wanted:
            return []

        def _query() -> list[UserRecord]:
            rows = self.sqlite.execute(
                f"SELECT {_SELECT_COLUMNS} FROM {self.TABLE} "
                "WHERE id IN (SELECT value FROM json_each(?)) "
                f"ORDER BY {order}",
                (id_set(wanted),),
            ).fetchall()
            return [UserRecord(**dict(row)) for row in rows]

        return self._read(f"get_by_ids ({self.TABLE})", _query)

    def iter_all(
        self,
        order_by: str = "first_name",
        direction: str = "asc",
    ) -> Iterator[UserRecord]:
        """Lazily scan every record in order, fetching in batches.

        The ordering is validated eagerly; the first batch is read on first
        iteration.  Each batch is its own locked read, so no cursor stays
        open on the shared connection between batches.
        """
        order = order_clause(order_by, direction)

        def _batch(offset: int) -> list[sqlite3.Row]:
            return self.sqlite.execute(
                f"SELECT {_SELECT_COLUMNS} FROM {self.TABLE} ORDER BY {order} "
                "LIMIT ? OFFSET ?",
                (_SCAN_BATCH_SIZE, offset),
            ).fetchall()

        def _scan() -> Iterator[UserRecord]:
            offset = 0
            while True:
                rows = self._read(f"iter_all ({self.TABLE})", lambda: _batch(offset))
                for row in rows:
                    yield UserRecord(**dict(row))
                if len(rows) < _SCAN_BATCH_SIZE:
                    return
                offset += len(rows)

        return _scan()

    def get_page(
        self,
        order_by: str = "first_name",
        direction: str = "asc",
        page_size: int = 25,
        page: int = 1,
        exclude_ids: Collection[int] = (),
    ) -> Page[UserRecord]:
        """Return one page of records, exclusions removed before paging.

        ``total`` and the page window are both computed on the filtered
        set, so excluding the first record shifts every later one up.
        """
        order = order_clause(order_by, direction)
        offset = (page - 1) * page_size
        excluded = id_set(self._unique(exclude_ids))

        def _query() -> Page[UserRecord]:
            total_row = self.sqlite.execute(
                f"SELECT COUNT(*) AS total FROM {self.TABLE} "
                "WHERE id NOT IN (SELECT value FROM json_each(?))",
                (excluded,),
            ).fetchone()
            rows = self.sqlite.execute(
                f"SELECT {_SELECT_COLUMNS} FROM {self.TABLE} "
                "WHERE id NOT IN (SELECT value FROM json_each(?)) "
                f"ORDER BY {order} LIMIT ? OFFSET ?",
                (excluded, page_size, offset),
            ).fetchall()
            return Page[UserRecord](
                items=[UserRecord(**dict(row)) for row in rows],
                total=int(total_row["total"]),
                page=page,
                page_size=page_size,
            )

        return self._read(f"get_page ({self.TABLE})", _query)

    def get_page_by_ranked_ids(
        self,
        ranked_ids: Iterable[int],
        page_size: int = 25,
        page: int = 1,
        exclude_ids: Collection[int] = (),
    ) -> Page[UserRecord]:
        """Page through *ranked_ids* in the given order.

        Only ids that exist in the store and are not excluded count
        towards ``total``; stale ids from the search index drop out here.
        """
        excluded = set(self._unique(exclude_ids))
        candidates = [i for i in self._unique(ranked_ids) if i not in excluded]
        offset = (page - 1) * page_size

        def _query() -> Page[UserRecord]:
            existing: set[int] = set()
            if candidates:
                existing = {
                    row["id"]
                    for row in self.sqlite.execute(
                        f"SELECT id FROM {self.TABLE} "
                        "WHERE id IN (SELECT value FROM json_each(?))",
                        (id_set(candidates),),
                    )
                }
            ordered = [i for i in candidates if i in existing]
            window = ordered[offset:offset + page_size]
            by_id: dict[int, UserRecord] = {}
            if window:
                rows = self.sqlite.execute(
                    f"SELECT {_SELECT_COLUMNS} FROM {self.TABLE} "
                    "WHERE id IN (SELECT value FROM json_each(?))",
                    (id_set(window),),
                ).fetchall()
                by_id = {row["id"]: UserRecord(**dict(row)) for row in rows}
            return Page[UserRecord](
                items=[by_id[i] for i in window if i in by_id],
                total=len(ordered),
                page=page,
                page_size=page_size,
            )

        return self._read(f"get_page_by_ranked_ids ({self.TABLE})", _query)

    # ------------------------------------------------------------------
    # Writes (never retried)
    # ------------------------------------------------------------------

    def insert(self, values: dict[str, object]) -> UserRecord:
        """Insert a new record and return it as stored.

        *values* must already be validated; only :data:`WRITABLE_COLUMNS`
        are accepted.  Uniqueness violations surface as
        ``sqlite3.IntegrityError`` for the caller's transaction to roll back.
        """
        columns = self._writable(values)
        timestamp = _now()
        columns["created_at"] = timestamp
        columns["updated_at"] = timestamp
        names = ", ".join(columns)
        marks = ", ".join("?" for _ in columns)
        with self.transaction() as conn:
            cursor = conn.execute(
                f"INSERT INTO {self.TABLE} ({names}) VALUES ({marks})",
                tuple(columns.values()),
            )
            record = self._fetch_written(int(cursor.lastrowid))
        self._logger.info("User inserted: %s", record.id)
        return record

    def update(self, user_id: int, values: dict[str, object]) -> UserRecord:
        """Apply *values* to an existing record and return it as stored.

        Raises:
            NotFound: No record has *user_id*.
        """
        columns = self._writable(values)
        columns["updated_at"] = _now()
        assignments = ", ".join(f"{name} = ?" for name in columns)
        with self.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE {self.TABLE} SET {assignments} WHERE id = ?",
                (*columns.values(), user_id),
            )
            if cursor.rowcount == 0:
                raise NotFound("User", user_id)
            record = self._fetch_written(user_id)
        self._logger.info("User updated: %s (%s)", user_id, ", ".join(sorted(values)))
        return record

    def mirror(self, record: UserRecord) -> None:
        """Push the outward columns of *record* to the Supabase mirror.

        Best-effort: when a mirror is configured, pushes made while it is
        unreachable, or that fail, are queued in ``sync_queue`` for the sync
        worker.  Without mirror credentials nothing is pushed or queued.
        Password digests never leave the local store.
        """
        if not self._db.mirror_configured:
            self._logger.debug("No mirror configured; user %s stays local.", record.id)
            return
        payload: dict[str, JsonValue] = record.model_dump(
            mode="json", exclude={"password_hash", "password_salt"},
        )
        if not self._db.is_online:
            self._queue_pending_sync(_MIRROR_TABLE, "upsert", record.id, payload)
            return
        try:
            self.supabase.table(_MIRROR_TABLE).upsert(payload).execute()
            self._logger.debug("User %s mirrored to Supabase.", record.id)
        except Exception as exc:
            self._logger.error("Failed to mirror user %s to Supabase: %s", record.id, exc)
            self._queue_pending_sync(_MIRROR_TABLE, "upsert", record.id, payload)

    def queue_reindex(self, user_id: int) -> None:
        """Ask the sync worker to re-index *user_id* from the store."""
        self._queue_pending_sync(REINDEX_TABLE, "reindex", user_id, {"id": user_id})

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _writable(self, values: dict[str, object]) -> dict[str, object]:
        unknown = set(values) - WRITABLE_COLUMNS
        if unknown:
            raise ValueError(f"Not writable on {self.TABLE}: {', '.join(sorted(unknown))}")
        columns: dict[str, object] = dict(values)
        if "meta" in columns and columns["meta"] is not None:
            columns["meta"] = json.dumps(columns["meta"])
        if "active" in columns:
            columns["active"] = int(bool(columns["active"]))
        return columns

    def _fetch_written(self, user_id: int) -> UserRecord:
        row = self.sqlite.execute(
            f"SELECT {_SELECT_COLUMNS} FROM {self.TABLE} WHERE id = ?", (user_id,)
        ).fetchone()
        if row is None:
            raise NotFound("User", user_id)
        return UserRecord(**dict(row))


__all__ = [
    "REINDEX_TABLE",
    "SORTABLE_COLUMNS",
    "UserRepository",
    "WRITABLE_COLUMNS",
    "order_clause",
]
