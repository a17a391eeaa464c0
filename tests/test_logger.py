from __future__ import annotations

import io
import json
import logging
from pathlib import Path

from account_directory.logger import StructuredLogger
from account_directory.utils.audit import log_audit_event


def _logger(name: str, tmp_path: Path) -> tuple[StructuredLogger, io.StringIO]:
    stream = io.StringIO()
    log = StructuredLogger(
        name=name, level=logging.DEBUG, stream=stream, log_file=str(tmp_path / "app.log"),
    )
    return log, stream


def test_lines_are_json_with_extra_fields(tmp_path: Path) -> None:
    log, stream = _logger("tests.logger.json", tmp_path)

    log.info("Account %s created", 7, extra={"user_id": 7})

    entry = json.loads(stream.getvalue().splitlines()[-1])
    assert entry["level"] == "INFO"
    assert entry["logger_name"] == "tests.logger.json"
    assert entry["message"] == "Account 7 created"
    assert entry["extra"] == {"user_id": "7"}
    assert entry["timestamp"].endswith("+00:00")


def test_credential_keys_are_masked(tmp_path: Path) -> None:
    log, stream = _logger("tests.logger.redact", tmp_path)

    log.info("reset issued", extra={"user_id": 3, "reset_token": "abc", "password_hash": "x"})

    entry = json.loads(stream.getvalue().splitlines()[-1])
    assert entry["extra"] == {
        "user_id": "3", "reset_token": "[REDACTED]", "password_hash": "[REDACTED]",
    }
    assert "abc" not in stream.getvalue()


def test_exceptions_are_included(tmp_path: Path) -> None:
    log, stream = _logger("tests.logger.exc", tmp_path)

    try:
        raise RuntimeError("boom")
    except RuntimeError:
        log.error("Write failed", exc_info=True)

    entry = json.loads(stream.getvalue().splitlines()[-1])
    assert "RuntimeError: boom" in entry["exception"]


def test_file_handler_writes_too(tmp_path: Path) -> None:
    log, _ = _logger("tests.logger.file", tmp_path)

    log.warning("disk check")

    lines = (tmp_path / "app.log").read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[-1])["message"] == "disk check"


def test_audit_event_is_logged(tmp_path: Path) -> None:
    log, stream = _logger("tests.logger.audit", tmp_path)

    event = log_audit_event(log, "CREATE_USER", "User", "1", details={"role": "User"})

    assert event.user_id == "system"
    message = json.loads(stream.getvalue().splitlines()[-1])["message"]
    assert message.startswith("AUDIT: ")
    assert json.loads(message.removeprefix("AUDIT: "))["action"] == "CREATE_USER"


def test_audit_details_drop_credentials(tmp_path: Path) -> None:
    log, stream = _logger("tests.logger.audit_secrets", tmp_path)

    event = log_audit_event(
        log, "UPDATE_USER", "User", 4, details={"fields": "password", "password_hash": "x"},
    )

    assert event.entity_id == "4"
    assert event.details == {"fields": "password"}
    assert "password_hash" not in stream.getvalue()
