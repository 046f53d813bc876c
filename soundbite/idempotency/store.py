"""Cache provider interface and the cached response record."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

DEFAULT_TTL_MS = 24 * 60 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class CachedResponse:
    """A successful response captured for replay.

    ``body`` holds the handler's payload exactly as produced, without the
    ``_idempotent``/``_cached`` provenance markers.
    """

    body: Dict[str, Any]
    status_code: int
    stored_at_ms: int = field(default_factory=now_ms)

    def original_timestamp(self) -> str:
        stored = datetime.fromtimestamp(self.stored_at_ms / 1000.0, tz=timezone.utc)
        return stored.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "body": self.body,
            "status_code": int(self.status_code),
            "stored_at_ms": int(self.stored_at_ms),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CachedResponse":
        return cls(
            body=dict(data["body"]),
            status_code=int(data["status_code"]),
            stored_at_ms=int(data.get("stored_at_ms", 0)),
        )


@runtime_checkable
class CacheProvider(Protocol):
    name: str

    async def get(self, key: str) -> Optional[CachedResponse]:
        """Return the live record for ``key`` or None; never raises for a missing key."""

    async def set(self, key: str, value: CachedResponse, ttl_ms: int) -> None:
        """Store ``value``; ``ttl_ms <= 0`` selects the provider default."""

    async def delete(self, key: str) -> None:
        ...

    async def clear(self) -> None:
        ...

    async def size(self) -> int:
        """Count of live entries. Expired entries are dropped as a side effect."""

    async def keys(self) -> List[str]:
        """Live keys. Expired entries are dropped as a side effect."""

    async def close(self) -> None:
        ...
