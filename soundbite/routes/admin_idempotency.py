"""Admin endpoints for inspecting and clearing the idempotency cache."""
from __future__ import annotations

from typing import Any, Mapping

from fastapi import APIRouter, HTTPException, Request

from soundbite.idempotency.store import CacheProvider
from soundbite.middleware.idempotency import CACHE_STATE_ATTR

router = APIRouter(prefix="/admin/idempotency", tags=["Admin / Idempotency"])


def _store(request: Request) -> CacheProvider:
    store = getattr(request.app.state, CACHE_STATE_ATTR, None)
    if store is None:
        raise HTTPException(status_code=503, detail="idempotency cache not initialised")
    return store


@router.get("/stats")
async def stats(request: Request) -> Mapping[str, Any]:
    store = _store(request)
    try:
        keys = await store.keys()
    except Exception as exc:
        raise HTTPException(status_code=503, detail="idempotency cache unavailable") from exc
    return {"backend": store.name, "size": len(keys), "keys": keys}


@router.delete("")
async def clear(request: Request) -> Mapping[str, Any]:
    store = _store(request)
    try:
        await store.clear()
    except Exception as exc:
        raise HTTPException(status_code=503, detail="idempotency cache unavailable") from exc
    return {"ok": True}


@router.delete("/{key}")
async def purge(key: str, request: Request) -> Mapping[str, Any]:
    store = _store(request)
    try:
        await store.delete(key)
    except Exception as exc:
        raise HTTPException(status_code=503, detail="idempotency cache unavailable") from exc
    return {"ok": True}
