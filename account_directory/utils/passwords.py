"""
Password and Token Digests.

PBKDF2-HMAC-SHA256 password hashing and SHA-256 digests for one-time
reset tokens.  Plaintext values are never stored.
"""

from __future__ import annotations

import hashlib
import hmac
import os
import secrets

__all__ = ["hash_password", "hash_token", "new_reset_token", "token_matches"]

DEFAULT_PBKDF2_ITERATIONS: int = 600_000


def hash_password(
    password: str, iterations: int = DEFAULT_PBKDF2_ITERATIONS,
) -> tuple[str, str]:
    """Derive a PBKDF2-HMAC-SHA256 hash for password storage.

    Returns
    -------
    tuple[str, str]
        A ``(hex_hash, hex_salt)`` pair.  The salt is 32 random bytes.
    """
    salt: bytes = os.urandom(32)
    pw_hash: str = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt,
        iterations=iterations,
    ).hex()
    return pw_hash, salt.hex()


def new_reset_token() -> str:
    """Return a URL-safe random token for a password reset link."""
    return secrets.token_urlsafe(32)


def hash_token(token: str) -> str:
    """Digest a reset token for storage."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def token_matches(token: str, stored_digest: str) -> bool:
    """Constant-time comparison of *token* against a stored digest."""
    return hmac.compare_digest(hash_token(token), stored_digest)
