# soundbite/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from soundbite.errors import register_error_handlers
from soundbite.idempotency.memory_store import InMemoryCacheProvider
from soundbite.idempotency.policy import PolicyRegistry
from soundbite.idempotency.store import CacheProvider
from soundbite.middleware.idempotency import CACHE_STATE_ATTR, IdempotencyMiddleware
from soundbite.middleware.idempotency_gate import IdempotencyGateMiddleware
from soundbite.routes import ops
from soundbite.routes.admin_idempotency import router as admin_idempotency_router
from soundbite.routes.soundbite import build_router
from soundbite.runtime import build_cache_provider
from soundbite.services.soundbite import InMemoryJobRepository, JobRepository
from soundbite.settings import Settings, get_settings
from soundbite.telemetry.logging import configure_root_logging

log = logging.getLogger(__name__)


def _lifespan(settings: Settings, injected: Optional[CacheProvider]):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        provider = injected
        if provider is None:
            provider = await build_cache_provider(settings.idempotency)
        setattr(app.state, CACHE_STATE_ATTR, provider)
        if isinstance(provider, InMemoryCacheProvider):
            provider.start()
        log.info("idempotency cache ready (backend=%s)", provider.name)
        try:
            yield
        finally:
            try:
                await provider.close()
            except Exception as exc:
                log.warning("closing idempotency cache failed: %s", exc)

    return lifespan


def create_app(
    settings: Optional[Settings] = None,
    *,
    cache_provider: Optional[CacheProvider] = None,
    registry: Optional[PolicyRegistry] = None,
    jobs: Optional[JobRepository] = None,
) -> FastAPI:
    """
    Build the SoundBite API.

    ``cache_provider`` skips backend selection and is used as-is; otherwise the
    provider is built from settings when the app starts up. Middleware order
    (outermost first): idempotency gate, then the interception layer.
    """
    settings = settings or get_settings()
    if settings.log_json:
        configure_root_logging(settings.log_level, service=settings.app_name, env=settings.env)

    registry = registry if registry is not None else PolicyRegistry()
    app = FastAPI(
        title=settings.app_name,
        description="Text-to-speech soundbite jobs with idempotent submission.",
        version="1.0.0",
        lifespan=_lifespan(settings, cache_provider),
    )
    app.state.settings = settings
    app.state.jobs = jobs if jobs is not None else InMemoryJobRepository()
    if cache_provider is not None:
        # Usable before startup runs (e.g. TestClient without a context manager).
        setattr(app.state, CACHE_STATE_ATTR, cache_provider)

    register_error_handlers(app)

    app.include_router(build_router(registry))
    app.include_router(admin_idempotency_router)
    app.include_router(ops.router)
    registry.freeze()

    # add_middleware prepends, so the gate added last runs first.
    app.add_middleware(IdempotencyMiddleware, settings=settings.idempotency)
    app.add_middleware(IdempotencyGateMiddleware, registry=registry)
    return app
