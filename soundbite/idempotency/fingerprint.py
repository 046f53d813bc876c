"""Request fingerprinting and cache key derivation.

The fingerprint binds an idempotency token to the request it was first used
with: the same token sent with a different method, path, query or body maps to
a different cache entry.
"""

from __future__ import annotations

import base64
import hashlib
import json
import re
from typing import Any, Dict, List
from urllib.parse import parse_qsl

FINGERPRINT_LEN = 32

_UUID_V4_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9:-]")
_REPEATED_SLASHES = re.compile(r"/{2,}")


def is_valid_idempotency_key(value: str) -> bool:
    """True for version-4 UUID strings (any case)."""
    return bool(_UUID_V4_RE.match(value or ""))


def normalize_path(path: str) -> str:
    collapsed = _REPEATED_SLASHES.sub("/", path or "/")
    if not collapsed.startswith("/"):
        collapsed = "/" + collapsed
    if len(collapsed) > 1:
        collapsed = collapsed.rstrip("/") or "/"
    return collapsed


def _canonical_body(body: bytes) -> Any:
    if not body:
        return None
    try:
        return json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return {"raw_b64": base64.b64encode(body).decode("ascii")}


def _canonical_query(query: str | bytes) -> Dict[str, List[str]]:
    text = query.decode("latin-1") if isinstance(query, (bytes, bytearray)) else (query or "")
    out: Dict[str, List[str]] = {}
    for name, value in parse_qsl(text, keep_blank_values=True):
        out.setdefault(name, []).append(value)
    return out


def request_fingerprint(method: str, path: str, body: bytes, query: str | bytes = "") -> str:
    """Stable hex digest over method, normalized path, body and query."""
    canonical = json.dumps(
        {
            "method": (method or "").upper(),
            "path": normalize_path(path),
            "body": _canonical_body(body),
            "query": _canonical_query(query),
        },
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:FINGERPRINT_LEN]


def sanitize_cache_key(key: str) -> str:
    return _UNSAFE_KEY_CHARS.sub("_", key)


def composite_cache_key(token: str, fingerprint: str) -> str:
    return sanitize_cache_key(f"{token}:{fingerprint}")
