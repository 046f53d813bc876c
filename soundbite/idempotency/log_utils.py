"""Structured logging helpers for idempotency events.

Guarantees:
- Never log the full idempotency key or composite cache key; only a masked prefix.
- Optional PII logging toggle via env IDEMP_LOG_INCLUDE_PII (default: 0 / disabled).

Fields we keep (non-PII):
- method, path, status, backend, fp_prefix, age_ms, error
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from soundbite.idempotency.utils import log_pii_ok

_LOG = logging.getLogger("soundbite.idempotency")

DEFAULT_MASK_PREFIX_LEN = 8


def _mask_key(val: Optional[str], prefix_len: int) -> Optional[str]:
    """
    Return a masked representation of an idempotency key.

    At least one character of the original is always withheld, and an 8-char
    SHA-256 tail gives stable, non-reversible context for correlation.
    """
    if not val:
        return val

    visible_len = min(max(int(prefix_len), 0), max(len(val) - 1, 0))
    prefix = val[:visible_len]
    tail = hashlib.sha256(val.encode("utf-8")).hexdigest()[:8]
    return f"{prefix}…{tail}" if prefix else f"…{tail}"


# Fields whose values are typically sensitive when PII logging is off.
_SENSITIVE_FIELDS: Tuple[str, ...] = (
    "headers",
    "authorization",
    "cookie",
    "body",
    "query",
    "user",
)

_KEY_FIELDS: Tuple[str, ...] = ("key", "idempotency_key", "cache_key")


def _scrub_fields(
    fields: Mapping[str, Any], include_pii: bool, mask_prefix_len: int
) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in fields.items():
        k_l = k.lower()

        if k_l in _KEY_FIELDS:
            out[f"{k_l}_prefix"] = _mask_key(str(v), mask_prefix_len)
            continue

        if not include_pii and k_l in _SENSITIVE_FIELDS:
            continue

        out[k] = v
    return out


def log_idempotency_event(
    event: str,
    /,
    *,
    level: int = logging.INFO,
    mask_prefix_len: int = DEFAULT_MASK_PREFIX_LEN,
    **fields: Any,
) -> None:
    """Emit a structured idempotency event with safe defaults."""
    if not _LOG.isEnabledFor(level):
        return
    include_pii = log_pii_ok()
    payload = _scrub_fields(fields, include_pii, mask_prefix_len)
    payload["event"] = event
    payload["privacy_mode"] = "pii_enabled" if include_pii else "pii_disabled"

    _LOG.log(level, json.dumps(payload, separators=(",", ":"), default=str))
