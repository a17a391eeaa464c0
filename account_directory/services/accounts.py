"""
Account Service.

The public boundary of the account directory.  Every record leaving this
module is an :class:`~account_directory.models.user.Account`, so computed
attributes are always present and password digests never are.

Architectural notes:
    - The SQLite record store is authoritative.  Uniqueness checks, the
      first-account role decision and the record write share one
      ``BEGIN IMMEDIATE`` transaction.
    - The search index is written after the store commits.  An index
      failure does not undo the write; the caller gets a
      ``PartialWriteWarning`` and a reindex is queued for the sync worker.
    - The Supabase mirror is best-effort and never fails a request.
    - Reads are retried by the repositories; writes are not.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Collection, Iterable, Iterator, Mapping
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol
from urllib.parse import urlencode

from pydantic import SecretStr

from account_directory.config import AppConfig
from account_directory.exceptions import (
    NotFound,
    SearchUnavailable,
    StoreUnavailable,
    UniqueConstraintError,
    ValidationError,
)
from account_directory.logger import StructuredLogger
from account_directory.models.enums import AuditAction, IdentityField, RecordClass, Role
from account_directory.models.service_models import (
    Page,
    PartialWriteWarning,
    PasswordResetEvent,
    ServiceResult,
    WriteResult,
)
from account_directory.models.user import Account, UserRecord
from account_directory.repositories.identity_repository import IdentityClaim, IdentityRepository
from account_directory.repositories.password_reset_repository import PasswordResetRepository
from account_directory.repositories.user_repository import UserRepository
from account_directory.search_index import SearchIndex
from account_directory.services.base_service import BaseService
from account_directory.utils.audit import SYSTEM_ACTOR
from account_directory.utils.passwords import hash_password, hash_token, new_reset_token, token_matches
from account_directory.validation import (
    MemberIdentity,
    UserCreate,
    UserUpdate,
    filter_fillable,
    parse_input,
)

__all__ = ["AccountService", "PasswordResetNotifier"]

_SEARCHABLE_FIELDS: frozenset[str] = frozenset({"first_name", "last_name", "username", "email"})
_IDENTITY_FIELDS: tuple[IdentityField, ...] = (IdentityField.USERNAME, IdentityField.EMAIL)


class PasswordResetNotifier(Protocol):
    """Delivers password reset events.  Transport is up to the implementation."""

    def send_password_reset(self, event: PasswordResetEvent) -> ServiceResult: ...


def _unique_violation(exc: sqlite3.IntegrityError) -> UniqueConstraintError:
    """Map a ``users`` UNIQUE failure onto the offending field."""
    field = "email" if "users.email" in str(exc) else "username"
    return UniqueConstraintError(field, str(RecordClass.USERS))


class AccountService(BaseService):
    """Query helpers and writes for user accounts.

    Parameters
    ----------
    users:
        Record store access for ``users``.
    identities:
        The username/email namespace shared with ``members``.
    resets:
        Outstanding password reset token digests.
    index:
        The full-text search index.
    config:
        Paging limits, password hashing and reset settings.
    logger:
        Structured JSON logger.
    notifier:
        Optional collaborator for password reset delivery.
    """

    def __init__(
        self,
        users: UserRepository,
        identities: IdentityRepository,
        resets: PasswordResetRepository,
        index: SearchIndex,
        config: AppConfig,
        logger: StructuredLogger,
        notifier: Optional[PasswordResetNotifier] = None,
    ) -> None:
        super().__init__(logger)
        self._users = users
        self._identities = identities
        self._resets = resets
        self._index = index
        self._config = config
        self._notifier = notifier

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_by_id(self, user_id: int) -> Account:
        """Return the account with *user_id*.

        Raises:
            NotFound: No such account.
        """
        record = self._users.get_by_id(user_id)
        if record is None:
            raise NotFound("User", user_id)
        return Account.from_record(record)

    def get_by_ids(
        self,
        ids: Iterable[int],
        order_by: str = "first_name",
        direction: str = "asc",
    ) -> list[Account]:
        """Return the accounts for *ids*; unknown ids are left out."""
        records = self._users.get_by_ids(ids, order_by=order_by, direction=direction)
        return [Account.from_record(record) for record in records]

    def list_all(
        self,
        order_by: str = "first_name",
        direction: str = "asc",
    ) -> Iterator[Account]:
        """Lazily yield every account in order.

        Unbounded; callers that need a bounded result should use
        :meth:`list_page`.
        """
        return (
            Account.from_record(record)
            for record in self._users.iter_all(order_by=order_by, direction=direction)
        )

    def list_page(
        self,
        order_by: str = "first_name",
        direction: str = "asc",
        page_size: Optional[int] = None,
        exclude: Collection[int] = (),
        page: int = 1,
    ) -> Page[Account]:
        """Return one page of accounts with *exclude* removed first."""
        size = self._check_paging(page_size, page)
        result = self._users.get_page(
            order_by=order_by,
            direction=direction,
            page_size=size,
            page=page,
            exclude_ids=exclude,
        )
        return self._to_account_page(result)

    def search(
        self,
        text: str,
        page_size: Optional[int] = None,
        exclude: Collection[int] = (),
        page: int = 1,
    ) -> Page[Account]:
        """Full-text search, best match first, paginated.

        Pages follow relevance rank (ties by id), not the store's
        ``order_by`` ordering that :meth:`list_page` and :meth:`list_all` use.

        Raises:
            SearchUnavailable: The search index is down.
        """
        size = self._check_paging(page_size, page)
        ranked_ids = self._index.search(text)
        result = self._users.get_page_by_ranked_ids(
            ranked_ids, page_size=size, page=page, exclude_ids=exclude,
        )
        self._logger.debug(
            "Search %r: %d hit(s), %d after exclusions.",
            text, len(ranked_ids), result.total,
        )
        return self._to_account_page(result)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, fields: Mapping[str, object], actor: str = SYSTEM_ACTOR) -> WriteResult:
        """Create an account.

        Keys outside the fillable whitelist are dropped.  The first account
        ever stored becomes Super Administrator, every later one a User;
        a role passed in ``meta`` is overwritten.

        Raises:
            ValidationError: Invalid input.
            UniqueConstraintError: Username or email already held by a
                user or a member.  Nothing is written.
        """
        # --- 1. Whitelist and validate ---
        data = parse_input(UserCreate, filter_fillable(fields, self._logger))
        password_hash, password_salt = hash_password(
            data.password, iterations=self._config.PASSWORD_HASH_ITERATIONS,
        )

        # --- 2. Store write, one transaction ---
        # The emptiness check and the insert are serialised by BEGIN
        # IMMEDIATE, so concurrent first creations cannot both become
        # Super Administrator.
        try:
            with self._users.transaction() as conn:
                for field in _IDENTITY_FIELDS:
                    self._identities.ensure_available(
                        field, getattr(data, str(field)), RecordClass.USERS,
                    )

                role = Role.USER if self._users.has_any() else Role.SUPER_ADMINISTRATOR
                meta = dict(data.meta or {})
                meta["role"] = role.value

                record = self._users.insert({
                    "first_name": data.first_name,
                    "last_name": data.last_name,
                    "username": data.username,
                    "email": data.email,
                    "password_hash": password_hash,
                    "password_salt": password_salt,
                    "active": data.active,
                    "meta": meta,
                })
                for field in _IDENTITY_FIELDS:
                    self._identities.claim(
                        RecordClass.USERS, record.id, field, getattr(record, str(field)),
                    )

                self._audit(
                    AuditAction.CREATE_USER, "User", record.id, actor,
                    details={"role": role.value, "username": record.username},
                    conn=conn,
                )
        except sqlite3.IntegrityError as exc:
            raise _unique_violation(exc) from exc
        except sqlite3.Error as exc:
            self._logger.error("Record store write failed on create: %s", exc)
            raise StoreUnavailable(f"create failed: {exc}") from exc

        # --- 3. Follow-up writes (best-effort) ---
        warnings = self._index_after_write(record)
        self._users.mirror(record)
        return WriteResult(user=Account.from_record(record), warnings=warnings)

    def update(
        self,
        user_id: int,
        fields: Mapping[str, object],
        actor: str = SYSTEM_ACTOR,
    ) -> WriteResult:
        """Apply the supplied fields to an existing account.

        Only fields present in *fields* change.  ``meta`` is replaced as a
        whole; this is how an administrator changes a role.

        Raises:
            NotFound: No such account.
            ValidationError: Invalid input.
            UniqueConstraintError: New username or email already held.
        """
        data = parse_input(UserUpdate, filter_fillable(fields, self._logger))
        changes = data.changes()

        values: dict[str, object] = {
            name: value for name, value in changes.items() if name != "password"
        }
        if "password" in changes:
            values["password_hash"], values["password_salt"] = hash_password(
                str(changes["password"]), iterations=self._config.PASSWORD_HASH_ITERATIONS,
            )

        try:
            with self._users.transaction() as conn:
                current = self._users.get_by_id(user_id)
                if current is None:
                    raise NotFound("User", user_id)
                if not values:
                    return WriteResult(user=Account.from_record(current))

                for field in _IDENTITY_FIELDS:
                    if str(field) in values:
                        self._identities.move(
                            RecordClass.USERS, user_id, field, str(values[str(field)]),
                        )

                record = self._users.update(user_id, values)
                self._audit(
                    AuditAction.UPDATE_USER, "User", user_id, actor,
                    details={"fields": ",".join(sorted(changes))},
                    conn=conn,
                )
        except sqlite3.IntegrityError as exc:
            raise _unique_violation(exc) from exc
        except sqlite3.Error as exc:
            self._logger.error("Record store write failed on update of %s: %s", user_id, exc)
            raise StoreUnavailable(f"update failed: {exc}") from exc

        warnings: list[PartialWriteWarning] = []
        if _SEARCHABLE_FIELDS & set(changes):
            warnings = self._index_after_write(record)
        self._users.mirror(record)
        return WriteResult(user=Account.from_record(record), warnings=warnings)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> PasswordResetEvent:
        """Issue a reset token for *email* and hand it to the notifier.

        Only the token digest is stored.  A notifier failure is logged and
        the event is still returned.

        Raises:
            NotFound: No account has this email.
        """
        record = self._users.get_by_email(email)
        if record is None:
            raise NotFound("User", email)

        token = new_reset_token()
        try:
            with self._users.transaction() as conn:
                stored = self._resets.store(record.email, hash_token(token))
                self._audit(AuditAction.PASSWORD_RESET_REQUESTED, "User", record.id, conn=conn)
        except sqlite3.Error as exc:
            self._logger.error("Could not store reset token for %s: %s", record.id, exc)
            raise StoreUnavailable(f"request_password_reset failed: {exc}") from exc

        account = Account.from_record(record)
        event = PasswordResetEvent(
            user_id=record.id,
            email=record.email,
            display_name=account.display_name,
            token=SecretStr(token),
            reset_url=(
                f"{self._config.PASSWORD_RESET_URL}?"
                f"{urlencode({'token': token, 'email': record.email})}"
            ),
            expires_at=stored.created_at
            + timedelta(minutes=self._config.PASSWORD_RESET_EXPIRE_MINUTES),
        )
        self._notify(event)
        return event

    def reset_password(
        self,
        email: str,
        token: str,
        password: str,
        password_confirmation: str,
    ) -> Account:
        """Set a new password using a token from :meth:`request_password_reset`.

        *password_confirmation* must repeat *password*.

        Raises:
            ValidationError: Bad or expired token (under ``token``), or a
                password breaking the password rules.
            NotFound: The account no longer exists.
        """
        stored = self._resets.get(email)
        if stored is None or not token_matches(token, stored.token_hash):
            raise ValidationError({"token": ["This password reset token is invalid."]})

        expires_at = stored.created_at + timedelta(
            minutes=self._config.PASSWORD_RESET_EXPIRE_MINUTES,
        )
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if datetime.now(timezone.utc) >= expires_at:
            self._resets.delete(email)
            raise ValidationError({"token": ["This password reset token has expired."]})

        data = parse_input(
            UserUpdate, {"password": password, "password_confirmation": password_confirmation},
        )
        record = self._users.get_by_email(email)
        if record is None:
            raise NotFound("User", email)

        password_hash, password_salt = hash_password(
            str(data.password), iterations=self._config.PASSWORD_HASH_ITERATIONS,
        )
        try:
            with self._users.transaction() as conn:
                record = self._users.update(
                    record.id,
                    {"password_hash": password_hash, "password_salt": password_salt},
                )
                self._resets.delete(email)
                self._audit(AuditAction.PASSWORD_RESET, "User", record.id, conn=conn)
        except sqlite3.Error as exc:
            self._logger.error("Password reset write failed for %s: %s", record.id, exc)
            raise StoreUnavailable(f"reset_password failed: {exc}") from exc

        return Account.from_record(record)

    # ------------------------------------------------------------------
    # Members and maintenance
    # ------------------------------------------------------------------

    def register_member(
        self,
        member_id: int,
        username: str,
        email: str,
        actor: str = SYSTEM_ACTOR,
    ) -> list[IdentityClaim]:
        """Claim (or move) a member's username and email.

        Members live outside this store; only their identities join the
        namespace shared with users.

        Raises:
            ValidationError: Malformed username or email.
            UniqueConstraintError: Already held by a user or another member.
        """
        data = parse_input(MemberIdentity, {"username": username, "email": email})
        try:
            with self._users.transaction() as conn:
                for field in _IDENTITY_FIELDS:
                    self._identities.move(
                        RecordClass.MEMBERS, member_id, field, getattr(data, str(field)),
                    )
                self._audit(
                    AuditAction.REGISTER_MEMBER, "Member", member_id, actor,
                    details={"username": data.username},
                    conn=conn,
                )
        except sqlite3.Error as exc:
            self._logger.error("Member registration failed for %s: %s", member_id, exc)
            raise StoreUnavailable(f"register_member failed: {exc}") from exc
        return self._identities.claims_for(RecordClass.MEMBERS, member_id)

    def reindex_all(self) -> int:
        """Rebuild the search index from the record store.

        Raises:
            SearchUnavailable: The index could not be rebuilt.
        """
        count = self._index.rebuild(self._users.iter_all(order_by="id"))
        self._logger.info("Reindexed %d account(s).", count)
        return count

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _check_paging(self, page_size: Optional[int], page: int) -> int:
        size = self._config.DEFAULT_PAGE_SIZE if page_size is None else page_size
        errors: dict[str, list[str]] = {}
        if not 1 <= size <= self._config.MAX_PAGE_SIZE:
            errors["page_size"] = [
                f"The page size must be between 1 and {self._config.MAX_PAGE_SIZE}."
            ]
        if page < 1:
            errors["page"] = ["The page must be at least 1."]
        if errors:
            raise ValidationError(errors)
        return size

    @staticmethod
    def _to_account_page(result: Page[UserRecord]) -> Page[Account]:
        return Page[Account](
            items=[Account.from_record(record) for record in result.items],
            total=result.total,
            page=result.page,
            page_size=result.page_size,
        )

    def _index_after_write(self, record: UserRecord) -> list[PartialWriteWarning]:
        """Index *record*; on failure queue a reindex and report it."""
        try:
            self._index.index(record)
        except SearchUnavailable as exc:
            warning = PartialWriteWarning(
                record_id=record.id,
                target="search_index",
                message=f"Saved but not yet searchable: {exc}",
            )
            self._logger.warning(
                "Partial write for user %s: %s", record.id, warning.message,
            )
            self._users.queue_reindex(record.id)
            return [warning]
        return []

    def _notify(self, event: PasswordResetEvent) -> None:
        if self._notifier is None:
            self._logger.warning(
                "No password reset notifier configured; reset for user %s not delivered.",
                event.user_id,
            )
            return
        try:
            result = self._notifier.send_password_reset(event)
        except Exception as exc:
            self._logger.error(
                "Password reset notifier raised for user %s: %s", event.user_id, exc,
            )
            return
        if not result.success:
            self._logger.warning(
                "Password reset notification for user %s failed: %s",
                event.user_id, result.error,
            )
