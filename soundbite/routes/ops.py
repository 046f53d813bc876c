from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from soundbite.middleware.idempotency import CACHE_STATE_ATTR

router = APIRouter(tags=["ops"])


@router.get("/health")
async def health(request: Request) -> Dict[str, Any]:
    store = getattr(request.app.state, CACHE_STATE_ATTR, None)
    return {
        "status": "ok",
        "env": request.app.state.settings.env,
        "cache_backend": store.name if store is not None else None,
    }


@router.get("/metrics")
async def prometheus_metrics(_: Request) -> PlainTextResponse:
    """Prometheus exposition of the process registry (idempotency counters included)."""
    body = generate_latest(REGISTRY).decode("utf-8")
    return PlainTextResponse(content=body, media_type=CONTENT_TYPE_LATEST)
