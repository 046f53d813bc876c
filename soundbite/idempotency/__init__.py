"""Idempotency package exports."""

from __future__ import annotations

from .memory_store import InMemoryCacheProvider
from .policy import (
    IdempotencyPolicy,
    PolicyRegistry,
    idempotent,
    idempotent_with_ttl,
    optionally_idempotent,
)
from .redis_store import RedisCacheProvider
from .store import DEFAULT_TTL_MS, CachedResponse, CacheProvider

__all__ = [
    "DEFAULT_TTL_MS",
    "CacheProvider",
    "CachedResponse",
    "InMemoryCacheProvider",
    "RedisCacheProvider",
    "IdempotencyPolicy",
    "PolicyRegistry",
    "idempotent",
    "idempotent_with_ttl",
    "optionally_idempotent",
]
