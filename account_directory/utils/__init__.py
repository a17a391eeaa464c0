"""Shared utility functions and models for the account directory.

This package provides convenience re-exports so that consumers can import
directly from ``account_directory.utils`` while full absolute imports
(e.g. ``from account_directory.utils.passwords import hash_password``)
remain supported.
"""

from account_directory.utils.audit import AuditEvent, log_audit_event
from account_directory.utils.passwords import hash_password, hash_token, new_reset_token
from account_directory.utils.string_helpers import (
    build_fts_query,
    normalize_email,
    sanitize_search_text,
)

__all__ = [
    "AuditEvent",
    "build_fts_query",
    "hash_password",
    "hash_token",
    "log_audit_event",
    "new_reset_token",
    "normalize_email",
    "sanitize_search_text",
]
