from __future__ import annotations

import hashlib
import threading
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import parse_qs, urlparse

import pytest

from account_directory.config import AppConfig
from account_directory.database import DatabaseManager
from account_directory.exceptions import NotFound, ValidationError
from account_directory.models.service_models import PasswordResetEvent, ServiceResult
from account_directory.services import create_services
from account_directory.services.accounts import AccountService
from account_directory.search_index import SearchIndex

NEW_PASSWORD = "brand-new-pass"


def _password_matches(db: DatabaseManager, password: str, iterations: int) -> bool:
    row = db.sqlite.execute("SELECT password_hash, password_salt FROM users").fetchone()
    digest = hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), bytes.fromhex(row["password_salt"]), iterations,
    ).hex()
    return digest == row["password_hash"]


def test_request_hands_event_to_notifier(
    service: AccountService, notifier: Any, create_user: Any, config: AppConfig,
) -> None:
    ada = create_user("Ada", "Lovelace")

    event = service.request_password_reset("ALOVELACE@example.com")

    assert notifier.events == [event]
    assert event.user_id == ada.id
    assert event.email == "alovelace@example.com"
    assert event.display_name == "Ada LOVELACE"
    query = parse_qs(urlparse(event.reset_url).query)
    assert query["token"] == [event.token.get_secret_value()]
    assert query["email"] == ["alovelace@example.com"]
    assert event.expires_at - datetime.now(timezone.utc) <= timedelta(
        minutes=config.PASSWORD_RESET_EXPIRE_MINUTES,
    )


def test_only_the_token_digest_is_stored(
    service: AccountService, db: DatabaseManager, create_user: Any,
) -> None:
    create_user("Ada", "Lovelace")

    event = service.request_password_reset("alovelace@example.com")

    stored = db.sqlite.execute("SELECT token_hash FROM password_resets").fetchone()[0]
    token = event.token.get_secret_value()
    assert stored != token
    assert stored == hashlib.sha256(token.encode("utf-8")).hexdigest()
    assert token not in repr(event.token)


def test_unknown_email(service: AccountService) -> None:
    with pytest.raises(NotFound):
        service.request_password_reset("nobody@example.com")


def test_reset_with_valid_token(
    service: AccountService, db: DatabaseManager, create_user: Any, config: AppConfig,
) -> None:
    create_user("Ada", "Lovelace")
    event = service.request_password_reset("alovelace@example.com")

    account = service.reset_password(
        "alovelace@example.com", event.token.get_secret_value(), NEW_PASSWORD, NEW_PASSWORD,
    )

    assert account.email == "alovelace@example.com"
    assert _password_matches(db, NEW_PASSWORD, config.PASSWORD_HASH_ITERATIONS)
    with pytest.raises(ValidationError) as excinfo:
        service.reset_password(
            "alovelace@example.com", event.token.get_secret_value(), NEW_PASSWORD, NEW_PASSWORD,
        )
    assert "token" in excinfo.value.errors


def test_newer_request_invalidates_older_token(service: AccountService, create_user: Any) -> None:
    create_user("Ada", "Lovelace")
    first = service.request_password_reset("alovelace@example.com")
    service.request_password_reset("alovelace@example.com")

    with pytest.raises(ValidationError):
        service.reset_password(
            "alovelace@example.com", first.token.get_secret_value(), NEW_PASSWORD, NEW_PASSWORD,
        )


def test_wrong_token(service: AccountService, create_user: Any) -> None:
    create_user("Ada", "Lovelace")
    service.request_password_reset("alovelace@example.com")

    with pytest.raises(ValidationError) as excinfo:
        service.reset_password("alovelace@example.com", "guess", NEW_PASSWORD, NEW_PASSWORD)

    assert excinfo.value.errors == {"token": ["This password reset token is invalid."]}


def test_expired_token(
    service: AccountService, db: DatabaseManager, create_user: Any, config: AppConfig,
) -> None:
    create_user("Ada", "Lovelace")
    event = service.request_password_reset("alovelace@example.com")
    issued = datetime.now(timezone.utc) - timedelta(minutes=config.PASSWORD_RESET_EXPIRE_MINUTES + 1)
    db.sqlite.execute("UPDATE password_resets SET created_at = ?", (issued.isoformat(),))

    with pytest.raises(ValidationError) as excinfo:
        service.reset_password(
            "alovelace@example.com", event.token.get_secret_value(), NEW_PASSWORD, NEW_PASSWORD,
        )

    assert excinfo.value.errors == {"token": ["This password reset token has expired."]}
    assert db.sqlite.execute("SELECT COUNT(*) FROM password_resets").fetchone()[0] == 0


def test_expired_token_removal_outlives_another_threads_rollback(
    service: AccountService, db: DatabaseManager, create_user: Any, config: AppConfig,
) -> None:
    create_user("Ada", "Lovelace")
    event = service.request_password_reset("alovelace.com")
    issued = datetime.now(timezone.utc) - timedelta(minutes=config.PASSWORD_RESET_EXPIRE_MINUTES + 1)
    db.sqlite.execute("UPDATE password_resets SET created_at = ?", (issued.isoformat(),))
    entered, release = threading.Event(), threading.Event()
    errors: list[Exception] = []

    def hold_then_abort() -> None:
        try:
            with db.transaction():
                entered.set()
                release.wait(5)
                raise RuntimeError("abort")
        except RuntimeError:
            pass

    def reset() -> None:
        try:
            service.reset_password(
                "alovelace.com", event.token.get_secret_value(), NEW_PASSWORD, NEW_PASSWORD,
            )
        except ValidationError as exc:
            errors.append(exc)

    holder = threading.Thread(target=hold_then_abort)
    holder.start()
    assert entered.wait(5)
    resetter = threading.Thread(target=reset)
    resetter.start()
    resetter.join(0.2)
    release.set()
    holder.join(5)
    resetter.join(5)

    assert len(errors) == 1
    assert db.sqlite.execute("SELECT COUNT(*) FROM password_resets").fetchone()[0] == 0


def test_reset_requires_a_confirmation(service: AccountService, create_user: Any) -> None:
    create_user("Ada", "Lovelace")
    event = service.request_password_reset("alovelace.com")

    with pytest.raises(TypeError):
        service.reset_password(  # type: ignore[call-arg]
            "alovelace.com", event.token.get_secret_value(), NEW_PASSWORD,
        )


def test_new_password_must_follow_the_rules(
    service: AccountService, create_user: Any,
) -> None:
    create_user("Ada", "Lovelace")
    event = service.request_password_reset("alovelace@example.com")
    token = event.token.get_secret_value()

    with pytest.raises(ValidationError) as excinfo:
        service.reset_password("alovelace@example.com", token, "short", "short")
    assert "password" in excinfo.value.errors

    with pytest.raises(ValidationError):
        service.reset_password("alovelace@example.com", token, NEW_PASSWORD, "mismatch")

    service.reset_password("alovelace@example.com", token, NEW_PASSWORD, NEW_PASSWORD)


class _BrokenNotifier:
    def send_password_reset(self, event: PasswordResetEvent) -> ServiceResult:
        raise RuntimeError("mail relay on fire")


class _FailingNotifier:
    def send_password_reset(self, event: PasswordResetEvent) -> ServiceResult:
        return ServiceResult(success=False, error="rejected", status_code=500)


@pytest.mark.parametrize("broken", [_BrokenNotifier(), _FailingNotifier()])
def test_notifier_failure_does_not_fail_the_request(
    db: DatabaseManager, config: AppConfig, index: SearchIndex, make_fields: Any, broken: Any,
) -> None:
    service = create_services(db, config, index=index, notifier=broken)["account_service"]
    service.create(make_fields("Ada", "Lovelace"))

    event = service.request_password_reset("alovelace@example.com")

    assert event.user_id == 1
    assert db.sqlite.execute("SELECT COUNT(*) FROM password_resets").fetchone()[0] == 1


def test_reset_is_audited(
    service: AccountService, db: DatabaseManager, create_user: Any,
) -> None:
    create_user("Ada", "Lovelace")
    event = service.request_password_reset("alovelace@example.com")
    service.reset_password(
        "alovelace@example.com", event.token.get_secret_value(), NEW_PASSWORD, NEW_PASSWORD,
    )

    actions = [r[0] for r in db.sqlite.execute("SELECT action FROM audit_log ORDER BY id")]
    assert actions == ["CREATE_USER", "PASSWORD_RESET_REQUESTED", "PASSWORD_RESET"]
