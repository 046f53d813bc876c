"""In-process idempotency cache with TTL, LRU eviction and a periodic sweep."""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional

from soundbite.idempotency.store import DEFAULT_TTL_MS, CachedResponse, CacheProvider, now_ms
from soundbite.idempotency.utils import mask_cache_key
from soundbite.metrics import IDEMP_EVICTIONS

log = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 10_000
DEFAULT_SWEEP_INTERVAL_S = 5 * 60.0


@dataclass
class _Entry:
    record: CachedResponse
    expires_at_ms: int
    access_count: int = 0
    last_accessed_ms: int = 0


class InMemoryCacheProvider(CacheProvider):
    """Single-node map-backed store; NOT suitable for multi-process or multi-worker.

    Entries are kept in access order so the first entry is always the least
    recently accessed one. No method awaits while mutating the map, which keeps
    it consistent under interleaved asyncio tasks (but not under threads).
    """

    name = "memory"

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        default_ttl_ms: int = DEFAULT_TTL_MS,
        sweep_interval_s: float = DEFAULT_SWEEP_INTERVAL_S,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = int(max_entries)
        self.default_ttl_ms = int(default_ttl_ms)
        self.sweep_interval_s = float(sweep_interval_s)
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()
        self._sweep_task: Optional[asyncio.Task[None]] = None

    def _now_ms(self) -> int:
        return now_ms()

    # ---- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Start the background sweep on the running loop. Safe to call twice."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    @property
    def sweeping(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def close(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_s)
            self.sweep()

    # ---- cache operations --------------------------------------------------

    async def get(self, key: str) -> Optional[CachedResponse]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self._now_ms()
        if now > entry.expires_at_ms:
            del self._entries[key]
            IDEMP_EVICTIONS.labels(reason="expired").inc()
            return None
        entry.access_count += 1
        entry.last_accessed_ms = now
        self._entries.move_to_end(key)
        return entry.record

    async def set(self, key: str, value: CachedResponse, ttl_ms: int) -> None:
        effective_ttl = ttl_ms if ttl_ms > 0 else self.default_ttl_ms
        if key not in self._entries and len(self._entries) >= self.max_entries:
            self._evict_oldest()
        now = self._now_ms()
        self._entries[key] = _Entry(
            record=value,
            expires_at_ms=now + int(effective_ttl),
            access_count=0,
            last_accessed_ms=now,
        )
        self._entries.move_to_end(key)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def clear(self) -> None:
        self._entries.clear()
        log.info("idempotency cache cleared")

    async def size(self) -> int:
        self.sweep()
        return len(self._entries)

    async def keys(self) -> List[str]:
        self.sweep()
        return list(self._entries.keys())

    # ---- housekeeping ------------------------------------------------------

    def sweep(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._now_ms()
        expired = [k for k, e in self._entries.items() if now > e.expires_at_ms]
        for k in expired:
            del self._entries[k]
        if expired:
            IDEMP_EVICTIONS.labels(reason="expired").inc(len(expired))
            log.debug("cleaned up %d expired idempotency entries", len(expired))
        return len(expired)

    def _evict_oldest(self) -> None:
        if not self._entries:
            return
        oldest_key, _ = self._entries.popitem(last=False)
        IDEMP_EVICTIONS.labels(reason="capacity").inc()
        log.debug("evicted least recently used idempotency entry %s", mask_cache_key(oldest_key))

    def inspect(self, key: str) -> Optional[Mapping[str, Any]]:
        """Entry bookkeeping for ``key`` without counting as an access."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        return {
            "status_code": entry.record.status_code,
            "stored_at_ms": entry.record.stored_at_ms,
            "expires_at_ms": entry.expires_at_ms,
            "access_count": entry.access_count,
            "last_accessed_ms": entry.last_accessed_ms,
        }
