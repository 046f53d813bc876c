"""Redis-backed idempotency cache with bounded retries."""

from __future__ import annotations

import asyncio
import json
import logging
import math
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from redis.asyncio import Redis
from redis.exceptions import RedisError

from soundbite.errors import CacheBackendUnavailable
from soundbite.idempotency.store import DEFAULT_TTL_MS, CachedResponse, CacheProvider
from soundbite.idempotency.utils import mask_cache_key
from soundbite.metrics import IDEMP_BACKEND_ERRORS

log = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_KEY_PREFIX = "soundbite:idempotency:"

# Failures worth another attempt; anything else is a programming error.
_TRANSIENT_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


def _decode(raw: Any) -> str:
    return raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else str(raw)


class RedisCacheProvider(CacheProvider):
    """Cache provider delegating to Redis under a fixed key prefix.

    The provider must be connected before use; every operation fails fast with
    ``CacheBackendUnavailable`` otherwise. Transient failures are retried up to
    ``max_retries`` attempts, sleeping ``attempt * retry_delay_s`` in between.
    """

    name = "redis"

    def __init__(
        self,
        redis: Redis,
        prefix: str = DEFAULT_KEY_PREFIX,
        max_retries: int = 3,
        retry_delay_s: float = 1.0,
        default_ttl_ms: int = DEFAULT_TTL_MS,
    ) -> None:
        self.r = redis
        self.prefix = prefix
        self.max_retries = max(int(max_retries), 1)
        self.retry_delay_s = float(retry_delay_s)
        self.default_ttl_ms = int(default_ttl_ms)
        self._ready = False

    def _k(self, key: str) -> str:
        return f"{self.prefix}{key}"

    @property
    def ready(self) -> bool:
        return self._ready

    async def connect(self) -> None:
        """Verify the connection with a single PING; raises on failure."""
        try:
            await self.r.ping()
        except Exception:
            self._ready = False
            raise
        self._ready = True
        log.info("redis idempotency cache connected")

    async def close(self) -> None:
        self._ready = False
        try:
            await self.r.aclose()
        except _TRANSIENT_ERRORS as exc:
            log.warning("error closing redis connection: %s", exc)

    def _ensure_ready(self) -> None:
        if not self._ready:
            raise CacheBackendUnavailable("Redis client not available")

    async def _with_retry(self, op: str, fn: Callable[[], Awaitable[T]]) -> T:
        self._ensure_ready()
        attempt = 1
        while True:
            try:
                return await fn()
            except _TRANSIENT_ERRORS as exc:
                if attempt >= self.max_retries:
                    IDEMP_BACKEND_ERRORS.labels(op=op).inc()
                    log.error("redis %s failed after %d attempts: %s", op, attempt, exc)
                    raise
                log.warning(
                    "redis %s failed (attempt %d/%d): %s",
                    op,
                    attempt,
                    self.max_retries,
                    exc,
                )
                await asyncio.sleep(self.retry_delay_s * attempt)
                attempt += 1

    async def _scan_prefixed(self) -> List[str]:
        found: List[str] = []
        async for raw in self.r.scan_iter(match=f"{self.prefix}*"):
            found.append(_decode(raw))
        return found

    async def get(self, key: str) -> Optional[CachedResponse]:
        raw = await self._with_retry("get", lambda: self.r.get(self._k(key)))
        if not raw:
            return None
        try:
            return CachedResponse.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            # Unreadable payloads behave as misses; the next write replaces them.
            log.warning("discarding unreadable cache entry %s: %s", mask_cache_key(key), exc)
            return None

    async def set(self, key: str, value: CachedResponse, ttl_ms: int) -> None:
        effective_ttl = ttl_ms if ttl_ms > 0 else self.default_ttl_ms
        ttl_s = max(int(math.ceil(effective_ttl / 1000.0)), 1)
        payload = json.dumps(value.to_dict(), separators=(",", ":"))
        await self._with_retry("set", lambda: self.r.set(self._k(key), payload, ex=ttl_s))

    async def delete(self, key: str) -> None:
        await self._with_retry("delete", lambda: self.r.delete(self._k(key)))

    async def clear(self) -> None:
        full_keys = await self._with_retry("keys", self._scan_prefixed)
        if not full_keys:
            return
        await self._with_retry("delete", lambda: self.r.delete(*full_keys))
        log.info("cleared %d idempotency cache entries", len(full_keys))

    async def size(self) -> int:
        return len(await self._with_retry("keys", self._scan_prefixed))

    async def keys(self) -> List[str]:
        full_keys = await self._with_retry("keys", self._scan_prefixed)
        return [k[len(self.prefix):] for k in full_keys]
