from __future__ import annotations

import smtplib
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any

import pytest
from pydantic import SecretStr

from account_directory.config import AppConfig
from account_directory.logger import StructuredLogger
from account_directory.models.service_models import PasswordResetEvent
from account_directory.services.notifications import EmailNotificationService, compose_password_reset


class FakeSMTP:
    instances: list["FakeSMTP"] = []

    def __init__(self, host: str, port: int, timeout: float) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.sent: list[EmailMessage] = []
        self.quit_called = False
        FakeSMTP.instances.append(self)

    def __enter__(self) -> "FakeSMTP":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.quit()

    def starttls(self) -> None:
        pass

    def login(self, username: str, password: str) -> None:
        if password != "app-password":
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")

    def send_message(self, msg: EmailMessage) -> None:
        self.sent.append(msg)

    def quit(self) -> None:
        self.quit_called = True


@pytest.fixture(autouse=True)
def fake_smtp(monkeypatch: pytest.MonkeyPatch) -> None:
    FakeSMTP.instances = []
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)


def _config(**overrides: Any) -> AppConfig:
    values: dict[str, Any] = {
        "_env_file": None,
        "MAIL_SERVER": "smtp.example.com",
        "MAIL_PORT": 587,
        "MAIL_USERNAME": "mailer@example.com",
        "MAIL_PASSWORD": "app-password",
        "MAIL_FROM_ADDRESS": "no-reply@example.com",
        "MAIL_TIMEOUT_S": 3.0,
    }
    values.update(overrides)
    return AppConfig(**values)


def _event() -> PasswordResetEvent:
    return PasswordResetEvent(
        user_id=1,
        email="ada@example.com",
        display_name="Ada LOVELACE",
        token=SecretStr("tok"),
        reset_url="https://accounts.example.com/password/reset?token=tok",
        expires_at=datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc),
    )


def test_password_reset_email_is_sent(logger: StructuredLogger) -> None:
    service = EmailNotificationService(_config(), logger)

    result = service.send_password_reset(_event())

    assert result.success is True
    smtp = FakeSMTP.instances[-1]
    assert (smtp.host, smtp.port, smtp.timeout) == ("smtp.example.com", 587, 3.0)
    assert smtp.quit_called
    msg = smtp.sent[0]
    assert msg["To"] == "ada@example.com"
    assert msg["From"] == "no-reply@example.com"
    body = msg.get_content()
    assert "Ada LOVELACE" in body
    assert "https://accounts.example.com/password/reset?token=tok" in body


def test_missing_mail_config_is_reported(logger: StructuredLogger) -> None:
    service = EmailNotificationService(_config(MAIL_USERNAME=""), logger)

    result = service.send_password_reset(_event())

    assert result.success is False
    assert "configuration" in (result.error or "")
    assert FakeSMTP.instances == []


def test_auth_failure_is_reported_not_raised(logger: StructuredLogger) -> None:
    service = EmailNotificationService(_config(MAIL_PASSWORD="wrong"), logger)

    result = service.send_password_reset(_event())

    assert result.success is False
    assert "authentication" in (result.error or "")
    assert FakeSMTP.instances[-1].quit_called


def test_unreachable_server_is_reported(
    logger: StructuredLogger, monkeypatch: pytest.MonkeyPatch,
) -> None:
    def refuse(*args: Any, **kwargs: Any) -> FakeSMTP:
        raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr(smtplib, "SMTP", refuse)
    service = EmailNotificationService(_config(), logger)

    result = service.send_password_reset(_event())

    assert result.success is False
    assert (result.error or "").startswith("Network error")


def test_reset_email_uses_username_when_no_from_address(logger: StructuredLogger) -> None:
    service = EmailNotificationService(_config(MAIL_FROM_ADDRESS=""), logger)

    msg = compose_password_reset(_event(), sender=service.sender)

    assert msg["From"] == "mailer@example.com"
    assert msg["Subject"] == "Reset Password Notification"
    assert "2030-01-01 12:00 UTC" in msg.get_content()
