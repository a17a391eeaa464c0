"""
Password Reset Repository.

Stores one outstanding reset token per email address, as a SHA-256
digest.  Issuing a new token replaces the previous one.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel

from account_directory.repositories.base_repository import BaseRepository
from account_directory.utils.string_helpers import normalize_email


class PasswordResetToken(BaseModel):
    """A stored reset token digest and when it was issued."""

    email: str
    token_hash: str
    created_at: datetime


class PasswordResetRepository(BaseRepository):
    """Data access for the ``password_resets`` table."""

    TABLE = "password_resets"

    def store(self, email: str, token_hash: str) -> PasswordResetToken:
        """Save *token_hash* for *email*, replacing any earlier token."""
        token = PasswordResetToken(
            email=normalize_email(email),
            token_hash=token_hash,
            created_at=datetime.now(timezone.utc),
        )
        with self.transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO {self.TABLE} (email, token_hash, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT(email) DO UPDATE SET token_hash = excluded.token_hash,
                                                 created_at = excluded.created_at
                """,
                (token.email, token.token_hash, token.created_at.isoformat()),
            )
        return token

    def get(self, email: str) -> Optional[PasswordResetToken]:
        normalized = normalize_email(email)

        def _query() -> Optional[PasswordResetToken]:
            row = self.sqlite.execute(
                f"SELECT email, token_hash, created_at FROM {self.TABLE} WHERE email = ?",
                (normalized,),
            ).fetchone()
            return PasswordResetToken(**dict(row)) if row else None

        return self._read(f"get ({self.TABLE})", _query)

    def delete(self, email: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                f"DELETE FROM {self.TABLE} WHERE email = ?", (normalize_email(email),)
            )
