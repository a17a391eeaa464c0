from __future__ import annotations

import io
import logging
import os
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

# Keep test runs offline and out of the working directory, whatever the
# developer's .env says.
os.environ["SUPABASE_URL"] = ""
os.environ["SUPABASE_ANON_KEY"] = ""
os.environ["MAIL_USERNAME"] = ""
os.environ.setdefault(
    "LOG_FILE", str(Path(tempfile.gettempdir()) / "account_directory-tests.log")
)

from account_directory.config import AppConfig  # noqa: E402
from account_directory.database import DatabaseManager  # noqa: E402
from account_directory.logger import StructuredLogger  # noqa: E402
from account_directory.models.service_models import PasswordResetEvent, ServiceResult  # noqa: E402
from account_directory.repositories.identity_repository import IdentityRepository  # noqa: E402
from account_directory.repositories.user_repository import UserRepository  # noqa: E402
from account_directory.schema import initialize_schema  # noqa: E402
from account_directory.search_index import SearchIndex  # noqa: E402
from account_directory.services import ServiceContainer, create_services  # noqa: E402
from account_directory.services.accounts import AccountService  # noqa: E402

TEST_PASSWORD = "s3cret-pass"


class RecordingNotifier:
    """Collects reset events instead of sending them."""

    def __init__(self) -> None:
        self.events: list[PasswordResetEvent] = []

    def send_password_reset(self, event: PasswordResetEvent) -> ServiceResult:
        self.events.append(event)
        return ServiceResult(success=True)


def user_fields(
    first_name: str,
    last_name: str,
    username: str | None = None,
    email: str | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """Valid create payload; username and email derive from the names."""
    handle = username or f"{first_name[0]}{last_name}".lower()
    fields: dict[str, Any] = {
        "first_name": first_name,
        "last_name": last_name,
        "username": handle,
        "email": email or f"{handle}@example.com",
        "password": TEST_PASSWORD,
        "password_confirmation": TEST_PASSWORD,
    }
    fields.update(extra)
    return fields


@pytest.fixture(scope="session")
def logger(tmp_path_factory: pytest.TempPathFactory) -> StructuredLogger:
    log_dir = tmp_path_factory.mktemp("logs")
    return StructuredLogger(
        name="tests.account_directory",
        level=logging.DEBUG,
        stream=io.StringIO(),
        log_file=str(log_dir / "tests.log"),
    )


@pytest.fixture()
def config() -> AppConfig:
    return AppConfig(
        _env_file=None,
        SUPABASE_URL="",
        MAIL_USERNAME="",
        PASSWORD_HASH_ITERATIONS=1_000,
        DEFAULT_PAGE_SIZE=25,
        MAX_PAGE_SIZE=100,
        READ_RETRY_ATTEMPTS=3,
        READ_RETRY_MAX_WAIT_S=0.1,
    )


@pytest.fixture()
def db(logger: StructuredLogger) -> Iterator[DatabaseManager]:
    manager = DatabaseManager(
        supabase_url="",
        supabase_key="",
        sqlite_path=Path(":memory:"),
        logger=logger,
    )
    initialize_schema(manager.sqlite, logger)
    yield manager
    manager.close()


@pytest.fixture()
def index(logger: StructuredLogger) -> Iterator[SearchIndex]:
    search_index = SearchIndex(":memory:", logger)
    yield search_index
    search_index.close()


@pytest.fixture()
def users(db: DatabaseManager, logger: StructuredLogger) -> UserRepository:
    return UserRepository(db=db, logger=logger, read_attempts=3, read_max_wait_s=0.1)


@pytest.fixture()
def identities(db: DatabaseManager, logger: StructuredLogger) -> IdentityRepository:
    return IdentityRepository(db=db, logger=logger)


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def container(
    db: DatabaseManager,
    config: AppConfig,
    index: SearchIndex,
    notifier: RecordingNotifier,
) -> ServiceContainer:
    return create_services(db, config, index=index, notifier=notifier)


@pytest.fixture()
def service(container: ServiceContainer) -> AccountService:
    return container["account_service"]


@pytest.fixture()
def make_fields() -> Any:
    """The :func:`user_fields` payload builder."""
    return user_fields


@pytest.fixture()
def create_user(service: AccountService) -> Any:
    """Create an account through the service and return it."""
    def _create(first_name: str, last_name: str, **kwargs: Any) -> Any:
        return service.create(user_fields(first_name, last_name, **kwargs)).user

    return _create
