"""
String Helpers.

Normalisation for values that cross into storage or search queries.
"""

from __future__ import annotations

import re

__all__ = [
    "build_fts_query",
    "normalize_email",
    "sanitize_search_text",
]

# Anything outside letters, digits, whitespace and hyphens is dropped
# before reaching the FTS5 query parser, including quotes, ``*``, ``:``,
# parentheses and column filters.  ``\w`` keeps accented letters.
_SEARCH_UNSAFE_RE: re.Pattern[str] = re.compile(r"[^\w\s\-]|_")

_WHITESPACE_RE: re.Pattern[str] = re.compile(r"\s+")


def normalize_email(value: str) -> str:
    """Trim and lower-case an email address for storage and comparison."""
    return value.strip().lower()


def sanitize_search_text(value: str) -> str:
    """Strip characters unsafe for FTS5 query interpolation.

    Parameters
    ----------
    value:
        The raw user-supplied search string.

    Returns
    -------
    str
        The string with only word characters, whitespace and hyphens
        left, whitespace collapsed.
    """
    cleaned = _SEARCH_UNSAFE_RE.sub(" ", value)
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def build_fts_query(value: str) -> str:
    """Turn free text into an FTS5 ``MATCH`` expression.

    Every token becomes a quoted prefix term and all of them must match,
    so ``"ali smi"`` finds *Alice Smith*.  Returns ``""`` when nothing
    searchable is left.

    >>> build_fts_query("alice  o'neil")
    '"alice"* "o"* "neil"*'
    """
    tokens = sanitize_search_text(value).split(" ")
    return " ".join(f'"{token}"*' for token in tokens if token.strip("-"))
