"""Hashing utilities for fedwatch.

Centralizes the SHA-256 patterns used by the anonymizer.  All callers
should import from here instead of inlining ``hashlib.sha256(...)``.
"""

from __future__ import annotations

import hashlib


def content_hash(data: bytes | str) -> str:
    """Compute the full SHA-256 hex digest of *data*.

    Args:
        data: Raw bytes or text string (encoded as UTF-8).

    Returns:
        Lowercase 64-character hex SHA-256 digest.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def salted_hash(value: object, salt: bytes) -> str | None:
    """One-way hash of *value* mixed with a per-node secret *salt*.

    Computes ``SHA-256(value ++ salt)``.  The same value hashed under two
    different salts yields unrelated digests, so identifiers published by
    one node cannot be joined against another node's output.

    Args:
        value: Identifier to hash.  Non-string values are stringified.
        salt: Per-node secret bytes.

    Returns:
        64-character hex digest, or ``None`` for ``None``/empty input.
    """
    if value is None:
        return None
    text = value if isinstance(value, str) else str(value)
    if not text:
        return None
    return content_hash(text.encode("utf-8") + salt)
