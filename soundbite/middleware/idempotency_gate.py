"""Route-level idempotency gate.

Runs ahead of ``IdempotencyMiddleware``: matches the request path against the
policy registry, rejects requests that omit a required key, and leaves the
policy in ``request.state.idempotency_policy`` for the interception layer.
"""
from __future__ import annotations

from typing import Optional

from starlette.datastructures import Headers
from starlette.types import ASGIApp, Receive, Scope, Send

from soundbite.errors import IDEMPOTENCY_HEADER, IdempotencyError, idempotency_error_response
from soundbite.idempotency.log_utils import log_idempotency_event
from soundbite.idempotency.policy import IdempotencyPolicy, PolicyRegistry
from soundbite.metrics import IDEMP_REJECTIONS

POLICY_STATE_KEY = "idempotency_policy"


def route_path(scope: Scope) -> str:
    """Request path relative to the application's mount point."""
    path = scope.get("path", "") or "/"
    root_path = scope.get("root_path", "") or ""
    if root_path and path.startswith(root_path):
        path = path[len(root_path):] or "/"
    return path


class IdempotencyGateMiddleware:
    def __init__(self, app: ASGIApp, registry: PolicyRegistry) -> None:
        self.app = app
        self.registry = registry

    def resolve_policy(self, scope: Scope) -> Optional[IdempotencyPolicy]:
        matched = self.registry.match(scope["method"], route_path(scope))
        return matched[1] if matched is not None else None

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        policy = self.resolve_policy(scope)
        if policy is None:
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        key = (headers.get(IDEMPOTENCY_HEADER) or "").strip()
        if policy.required and not key:
            IDEMP_REJECTIONS.labels(reason="missing_key").inc()
            log_idempotency_event(
                "rejected",
                reason="missing_key",
                method=scope["method"],
                path=scope.get("path", ""),
            )
            response = idempotency_error_response(IdempotencyError.key_required(), headers)
            await response(scope, receive, send)
            return

        scope.setdefault("state", {})[POLICY_STATE_KEY] = policy
        await self.app(scope, receive, send)
