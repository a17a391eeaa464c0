"""
Identity Repository.

One uniqueness namespace for usernames and emails shared by every record
class (``users`` and the external ``members`` class).  Each claimed value
is a row in ``account_identities`` keyed by ``(field, value)``; the primary
key is what actually prevents two records from holding the same value, the
read-side lookup only exists to produce a friendly error first.

Each write opens, or joins, :meth:`DatabaseManager.transaction`.  Callers
run claims inside their own transaction together with the record write,
so a rejected claim rolls the whole write back.
"""

from __future__ import annotations

import sqlite3
from typing import Optional

from pydantic import BaseModel

from account_directory.exceptions import UniqueConstraintError
from account_directory.models.enums import IdentityField, RecordClass
from account_directory.repositories.base_repository import BaseRepository


class IdentityClaim(BaseModel):
    """A username or email held by one record of one record class."""

    field: IdentityField
    value: str
    record_class: RecordClass
    record_id: int


class IdentityRepository(BaseRepository):
    """Data access for the cross-class ``account_identities`` namespace."""

    TABLE = "account_identities"

    def find_holder(self, field: IdentityField, value: str) -> Optional[IdentityClaim]:
        """Return the claim on *value* for *field*, compared case-insensitively."""
        def _query() -> Optional[IdentityClaim]:
            row = self.sqlite.execute(
                f"SELECT field, value, record_class, record_id FROM {self.TABLE} "
                "WHERE field = ? AND value = ?",
                (str(field), value),
            ).fetchone()
            return IdentityClaim(**dict(row)) if row else None

        return self._read(f"find_holder ({self.TABLE})", _query)

    def ensure_available(
        self,
        field: IdentityField,
        value: str,
        record_class: RecordClass,
        record_id: Optional[int] = None,
    ) -> None:
        """Raise if *value* is held by anything other than the given record.

        Read-side check only; :meth:`claim` is the real safeguard.
        """
        holder = self.find_holder(field, value)
        if holder is None:
            return
        if holder.record_class == record_class and holder.record_id == record_id:
            return
        raise UniqueConstraintError(str(field), str(holder.record_class), holder.record_id)

    def claim(
        self,
        record_class: RecordClass,
        record_id: int,
        field: IdentityField,
        value: str,
    ) -> None:
        """Claim *value* for a record.

        Re-claiming a value the same record already holds is a no-op.

        Raises:
            UniqueConstraintError: The value belongs to another record, in
                either record class.
        """
        with self.transaction() as conn:
            try:
                conn.execute(
                    f"INSERT INTO {self.TABLE} (field, value, record_class, record_id) "
                    "VALUES (?, ?, ?, ?)",
                    (str(field), value, str(record_class), record_id),
                )
            except sqlite3.IntegrityError as exc:
                holder = self.find_holder(field, value)
                if (
                    holder is not None
                    and holder.record_class == record_class
                    and holder.record_id == record_id
                ):
                    return
                holder_class = str(holder.record_class) if holder else str(record_class)
                self._logger.info(
                    "Rejected %s claim for %s/%s: already held by %s.",
                    field, record_class, record_id, holder_class,
                )
                raise UniqueConstraintError(
                    str(field), holder_class, holder.record_id if holder else None,
                ) from exc

    def release(
        self,
        record_class: RecordClass,
        record_id: int,
        field: IdentityField,
    ) -> None:
        """Drop whatever *field* value the record currently holds."""
        with self.transaction() as conn:
            conn.execute(
                f"DELETE FROM {self.TABLE} "
                "WHERE field = ? AND record_class = ? AND record_id = ?",
                (str(field), str(record_class), record_id),
            )

    def move(
        self,
        record_class: RecordClass,
        record_id: int,
        field: IdentityField,
        new_value: str,
    ) -> None:
        """Swap the record's claim on *field* over to *new_value*."""
        with self.transaction():
            self.ensure_available(field, new_value, record_class, record_id)
            self.release(record_class, record_id, field)
            self.claim(record_class, record_id, field, new_value)

    def claims_for(self, record_class: RecordClass, record_id: int) -> list[IdentityClaim]:
        """All identity values held by one record."""
        def _query() -> list[IdentityClaim]:
            rows = self.sqlite.execute(
                f"SELECT field, value, record_class, record_id FROM {self.TABLE} "
                "WHERE record_class = ? AND record_id = ? ORDER BY field",
                (str(record_class), record_id),
            ).fetchall()
            return [IdentityClaim(**dict(row)) for row in rows]

        return self._read(f"claims_for ({self.TABLE})", _query)
