from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse

from soundbite.errors import register_error_handlers
from soundbite.idempotency.policy import (
    PolicyRegistry,
    idempotent,
    idempotent_with_ttl,
    optionally_idempotent,
    policy_route,
)
from soundbite.idempotency.store import CacheProvider
from soundbite.middleware.idempotency import IdempotencyMiddleware
from soundbite.middleware.idempotency_gate import IdempotencyGateMiddleware
from soundbite.settings import IdempotencySettings


def build_idem_app(
    store: Optional[CacheProvider],
    settings: Optional[IdempotencySettings] = None,
) -> FastAPI:
    """
    App with the gate and interception middlewares over a small set of test routes.
    ``app.state.calls`` records every handler execution as ``(route, payload)``.
    """
    app = FastAPI()
    app.state.calls = []
    calls: List[Any] = app.state.calls
    registry = PolicyRegistry()
    router = APIRouter()

    @policy_route(router, registry, "/items", idempotent(), status_code=201)
    async def create_item(payload: Dict[str, Any], request: Request) -> Dict[str, Any]:
        calls.append(("create", payload))
        return {
            "id": str(uuid4()),
            "payload": payload,
            "key": getattr(request.state, "idempotency_key", None),
        }

    @policy_route(router, registry, "/items/{item_id}", idempotent_with_ttl(60_000), methods=("PUT",))
    async def replace_item(item_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        calls.append(("replace", payload))
        return {"id": item_id, "version": str(uuid4()), "payload": payload}

    @policy_route(router, registry, "/optional", optionally_idempotent())
    async def optional(payload: Dict[str, Any]) -> Dict[str, Any]:
        calls.append(("optional", payload))
        return {"run": str(uuid4())}

    @policy_route(router, registry, "/conflict", idempotent())
    async def conflict(payload: Dict[str, Any]) -> Dict[str, Any]:
        calls.append(("conflict", payload))
        raise HTTPException(status_code=409, detail="conflict")

    @policy_route(router, registry, "/boom", idempotent())
    async def boom(payload: Dict[str, Any]) -> Dict[str, Any]:
        calls.append(("boom", payload))
        raise RuntimeError("handler exploded")

    @policy_route(router, registry, "/list", idempotent())
    async def as_list(payload: Dict[str, Any]) -> List[str]:
        calls.append(("list", payload))
        return [str(uuid4())]

    @policy_route(router, registry, "/text", idempotent())
    async def as_text(payload: Dict[str, Any]) -> PlainTextResponse:
        calls.append(("text", payload))
        return PlainTextResponse(str(uuid4()))

    @router.post("/plain")
    async def plain(payload: Dict[str, Any]) -> Dict[str, Any]:
        calls.append(("plain", payload))
        return {"run": str(uuid4())}

    @router.post("/legacy/jobs")
    async def legacy(payload: Dict[str, Any]) -> Dict[str, Any]:
        calls.append(("legacy", payload))
        return {"run": str(uuid4())}

    @router.get("/items/{item_id}")
    async def read_item(item_id: str) -> Dict[str, Any]:
        calls.append(("read", item_id))
        return {"id": item_id}

    # Nested the way a versioned API mounts routers: /v1 + /jobs + route path.
    v1 = APIRouter(prefix="/jobs")

    @policy_route(
        v1, registry, "/{job_id}/retry", idempotent_with_ttl(5_000), mount_prefix="/v1"
    )
    async def retry_job(job_id: str, payload: Dict[str, Any], request: Request) -> Dict[str, Any]:
        calls.append(("retry", payload))
        policy = getattr(request.state, "idempotency_policy", None)
        return {
            "job": job_id,
            "run": str(uuid4()),
            "policy": None if policy is None else {"required": policy.required, "ttl_ms": policy.ttl_ms},
        }

    app.include_router(router)
    app.include_router(v1, prefix="/v1")
    registry.freeze()
    app.state.registry = registry
    register_error_handlers(app)

    effective = settings or IdempotencySettings(required_paths=["/legacy"])
    app.add_middleware(IdempotencyMiddleware, store=store, settings=effective)
    app.add_middleware(IdempotencyGateMiddleware, registry=registry)
    return app


class BrokenCache:
    """Cache provider whose every operation fails."""

    name = "broken"

    def __init__(self) -> None:
        self.get_calls = 0
        self.set_calls = 0

    async def get(self, key: str):
        self.get_calls += 1
        raise ConnectionError("cache down")

    async def set(self, key: str, value, ttl_ms: int) -> None:
        self.set_calls += 1
        raise ConnectionError("cache down")

    async def delete(self, key: str) -> None:
        raise ConnectionError("cache down")

    async def clear(self) -> None:
        raise ConnectionError("cache down")

    async def size(self) -> int:
        raise ConnectionError("cache down")

    async def keys(self) -> List[str]:
        raise ConnectionError("cache down")

    async def close(self) -> None:
        return None
