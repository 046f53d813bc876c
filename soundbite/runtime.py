from __future__ import annotations

import logging

from redis.asyncio import Redis

from soundbite.idempotency.memory_store import InMemoryCacheProvider
from soundbite.idempotency.redis_store import RedisCacheProvider
from soundbite.idempotency.store import CacheProvider
from soundbite.settings import IdempotencySettings

log = logging.getLogger(__name__)


def memory_provider(settings: IdempotencySettings) -> InMemoryCacheProvider:
    return InMemoryCacheProvider(
        max_entries=settings.memory_max_entries,
        default_ttl_ms=settings.default_ttl_ms,
        sweep_interval_s=settings.memory_sweep_interval_s,
    )


def redis_client(settings: IdempotencySettings) -> Redis:
    return Redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout_s,
        socket_connect_timeout=settings.redis_socket_connect_timeout_s,
    )


async def build_cache_provider(settings: IdempotencySettings) -> CacheProvider:
    """
    Construct the cache provider selected by ``settings.cache_type``.

    A Redis backend that cannot be built or reached at startup is replaced by
    the in-memory provider so the API still comes up.
    """
    if settings.cache_type != "redis":
        return memory_provider(settings)

    client = None
    try:
        client = redis_client(settings)
        provider = RedisCacheProvider(
            client,
            prefix=settings.redis_key_prefix,
            max_retries=settings.redis_max_retries,
            retry_delay_s=settings.redis_retry_delay_s,
            default_ttl_ms=settings.default_ttl_ms,
        )
        await provider.connect()
        return provider
    except Exception as exc:
        log.warning(
            "redis cache unavailable, falling back to in-memory cache: %s",
            exc,
        )
        if client is not None:
            try:
                await client.aclose()
            except Exception as close_exc:  # pragma: no cover - diagnostic only
                log.debug("closing unusable redis client failed: %s", close_exc)
        return memory_provider(settings)
