"""
Repository Layer Package.

Provides data-access abstractions over the SQLite record store and the
Supabase mirror.  All database operations flow through repositories;
services never access db.supabase or db.sqlite directly.

Usage:
    from account_directory.repositories.user_repository import UserRepository
    from account_directory.repositories.identity_repository import IdentityRepository
"""

from account_directory.repositories.base_repository import BaseRepository
from account_directory.repositories.identity_repository import IdentityClaim, IdentityRepository
from account_directory.repositories.password_reset_repository import (
    PasswordResetRepository,
    PasswordResetToken,
)
from account_directory.repositories.user_repository import UserRepository

__all__ = [
    "BaseRepository",
    "IdentityClaim",
    "IdentityRepository",
    "PasswordResetRepository",
    "PasswordResetToken",
    "UserRepository",
]
