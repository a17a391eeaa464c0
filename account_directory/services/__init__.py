"""
Business Logic Services Package.

Services depend on the Repository layer for data access and on the
search index for full-text queries.

The ``create_services()`` factory wires every repository and service together,
returning a typed dict that the calling application can consume without
knowing the internal dependency graph.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, TypedDict

from account_directory.config import AppConfig
from account_directory.database import DatabaseManager
from account_directory.logger import get_logger
from account_directory.repositories.identity_repository import IdentityRepository
from account_directory.repositories.password_reset_repository import PasswordResetRepository
from account_directory.repositories.user_repository import UserRepository
from account_directory.schema import initialize_schema
from account_directory.search_index import SearchIndex
from account_directory.services.accounts import AccountService, PasswordResetNotifier
from account_directory.services.notifications import EmailNotificationService
from account_directory.services.sync_worker import SyncWorkerService

__all__ = [
    "AccountService",
    "EmailNotificationService",
    "PasswordResetNotifier",
    "ServiceContainer",
    "SyncWorkerService",
    "create_services",
]


class ServiceContainer(TypedDict):
    """Typed container for the wired services.

    ``email_service`` is ``None`` when outbound mail is not configured and
    no notifier was injected.
    """

    account_service: AccountService
    sync_worker_service: SyncWorkerService
    search_index: SearchIndex
    email_service: Optional[EmailNotificationService]


def create_services(
    db: DatabaseManager,
    config: AppConfig,
    index: Optional[SearchIndex] = None,
    notifier: Optional[PasswordResetNotifier] = None,
) -> ServiceContainer:
    """
    Wire all repositories and services together.

    This is the single composition root for the service layer.  It makes
    sure the record store schema is current, opens the search index from
    ``config`` unless one is injected, and picks the SMTP notifier when
    mail is configured and no *notifier* is given.  The sync worker is
    returned stopped; the caller decides when to ``start()`` it.

    Args:
        db: Initialised DatabaseManager with SQLite ready.
        config: Application configuration.
        index: Optional pre-built search index (tests use ``:memory:``).
        notifier: Optional password reset notifier.

    Returns:
        ServiceContainer mapping service names to fully-wired instances.
    """
    logger = get_logger("account_directory.services")

    initialize_schema(db.sqlite, logger)

    # ------------------------------------------------------------------
    # 1. Repositories (data-access layer)
    # ------------------------------------------------------------------
    retry = {
        "read_attempts": config.READ_RETRY_ATTEMPTS,
        "read_max_wait_s": config.READ_RETRY_MAX_WAIT_S,
    }
    user_repo = UserRepository(db=db, logger=logger, **retry)
    identity_repo = IdentityRepository(db=db, logger=logger, **retry)
    reset_repo = PasswordResetRepository(db=db, logger=logger, **retry)

    # ------------------------------------------------------------------
    # 2. Search index and notifier
    # ------------------------------------------------------------------
    if index is None:
        index = SearchIndex(
            Path(config.SEARCH_INDEX_PATH),
            logger,
            timeout_s=config.SEARCH_TIMEOUT_S,
            read_attempts=config.READ_RETRY_ATTEMPTS,
        )

    email_service: Optional[EmailNotificationService] = None
    if notifier is None and config.MAIL_USERNAME:
        email_service = EmailNotificationService(config=config, logger=logger)
        notifier = email_service

    # ------------------------------------------------------------------
    # 3. Services
    # ------------------------------------------------------------------
    account_service = AccountService(
        users=user_repo,
        identities=identity_repo,
        resets=reset_repo,
        index=index,
        config=config,
        logger=logger,
        notifier=notifier,
    )
    sync_worker_service = SyncWorkerService(
        db=db,
        users=user_repo,
        index=index,
        config=config,
        logger=logger,
    )

    return ServiceContainer(
        account_service=account_service,
        sync_worker_service=sync_worker_service,
        search_index=index,
        email_service=email_service,
    )
