"""
Account Directory Settings.

Every tunable is an ``AppConfig`` field, read from the process environment
or a ``.env`` file in the working directory.  Construct one explicitly and
pass it down; :func:`get_config` exists for the few places (the logger
defaults) that have nothing injected.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_log = logging.getLogger("account_directory.config")


class AppConfig(BaseSettings):
    """Settings for the record store, search index, mirror, mail and logs."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Cloud mirror; empty URL or key means offline.
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: SecretStr = SecretStr("")
    SUPABASE_TIMEOUT_S: float = 10.0

    # Record store.
    SQLITE_PATH: str = "account_directory.db"
    SQLITE_TIMEOUT_S: float = 5.0

    # Search index, a separate FTS5 database.
    SEARCH_INDEX_PATH: str = "account_directory_search.db"
    SEARCH_TIMEOUT_S: float = 2.0

    # Retries apply to reads only.
    READ_RETRY_ATTEMPTS: int = Field(default=3, ge=1)
    READ_RETRY_MAX_WAIT_S: float = 1.0

    DEFAULT_PAGE_SIZE: int = Field(default=25, ge=1)
    MAX_PAGE_SIZE: int = Field(default=500, ge=1)

    PASSWORD_HASH_ITERATIONS: int = Field(default=600_000, ge=1)
    PASSWORD_RESET_EXPIRE_MINUTES: int = Field(default=60, ge=1)
    PASSWORD_RESET_URL: str = "https://localhost/password/reset"

    # Outbound mail for password reset links.
    MAIL_SERVER: str = "smtp.gmail.com"
    MAIL_PORT: int = 587
    MAIL_USERNAME: str = ""
    MAIL_PASSWORD: SecretStr = SecretStr("")
    MAIL_FROM_ADDRESS: str = ""
    MAIL_TIMEOUT_S: float = 10.0

    LOG_FILE: str = "account_directory.log"
    LOG_MAX_BYTES: int = 5 * 1024 * 1024
    LOG_BACKUP_COUNT: int = 3

    @model_validator(mode="after")
    def _warn_missing_env(self) -> "AppConfig":
        """Tell operators which optional integrations are switched off."""
        if not Path(".env").exists():
            _log.info("No .env file; settings come from the environment and defaults.")
        if not self.SUPABASE_URL:
            _log.warning("SUPABASE_URL not set; accounts are kept in the local store only.")
        if not self.MAIL_USERNAME:
            _log.warning("MAIL_USERNAME not set; password reset emails are not sent.")
        return self

    def validate_email_config(self) -> None:
        """Check that SMTP delivery can be attempted.

        Raises:
            ValueError: Server, username or password is missing.
        """
        missing = [
            name
            for name, value in (
                ("MAIL_SERVER", self.MAIL_SERVER),
                ("MAIL_USERNAME", self.MAIL_USERNAME),
                ("MAIL_PASSWORD", self.MAIL_PASSWORD.get_secret_value()),
            )
            if not value
        ]
        if missing:
            raise ValueError(f"missing mail settings: {', '.join(missing)}")


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Process-wide ``AppConfig``, built on first use."""
    return AppConfig()
