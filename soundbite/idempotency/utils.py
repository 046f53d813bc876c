"""Utility helpers shared across idempotency components."""

from __future__ import annotations

import hashlib
import os

_LOG_PII_OK_VALUES = {"1", "true", "yes", "on"}


def log_pii_ok() -> bool:
    raw = os.environ.get("IDEMP_LOG_INCLUDE_PII", "").strip().lower()
    return raw in _LOG_PII_OK_VALUES


def mask_cache_key(key: str) -> str:
    """Return a log-safe representation of a cache key.

    Unless ``IDEMP_LOG_INCLUDE_PII`` explicitly opts-in, the key is replaced
    with a short SHA-256 prefix so operators can correlate entries without
    leaking client tokens into logs.
    """

    if log_pii_ok():
        return key
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
    return f"hash:{digest[:16]}"
