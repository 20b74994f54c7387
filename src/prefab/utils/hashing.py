"""SHA-256 digest validation for artifact locators."""

from __future__ import annotations

import string

_SHA256_HEX_LENGTH = 64
_HEX_DIGITS = frozenset(string.hexdigits.lower())

__all__ = ["normalize_sha256"]


def normalize_sha256(value: str, *, field_name: str = "sha256") -> str:
    """Lower-case ``value``, strip an optional ``sha256:`` prefix and validate it."""

    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string")
    normalized = value.strip().lower()
    if normalized.startswith("sha256:"):
        normalized = normalized.split(":", 1)[1]
    if len(normalized) != _SHA256_HEX_LENGTH or any(
        char not in _HEX_DIGITS for char in normalized
    ):
        raise ValueError(f"{field_name} must be a 64-character SHA-256 hex digest")
    return normalized
