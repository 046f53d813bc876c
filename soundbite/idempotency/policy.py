"""Per-route idempotency policies.

Routes opt in to idempotency by registering a policy in a ``PolicyRegistry``
keyed by ``(METHOD, path template)``. The registry is filled while the app is
assembled and frozen before it serves traffic. Templates are compiled with
Starlette's path compiler, so the registry matches concrete request paths on
its own instead of relying on how the router nests included routers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Pattern, Tuple, TypeVar

from fastapi import APIRouter
from starlette.routing import compile_path

from soundbite.idempotency.store import DEFAULT_TTL_MS

F = TypeVar("F", bound=Callable[..., Any])

RouteId = Tuple[str, str]


@dataclass(frozen=True)
class IdempotencyPolicy:
    required: bool = True
    ttl_ms: int = DEFAULT_TTL_MS

    def __post_init__(self) -> None:
        if self.ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")


def idempotent(required: bool = True, ttl_ms: int = DEFAULT_TTL_MS) -> IdempotencyPolicy:
    return IdempotencyPolicy(required=required, ttl_ms=ttl_ms)


def optionally_idempotent() -> IdempotencyPolicy:
    """Key accepted and honoured when sent, but not demanded."""
    return IdempotencyPolicy(required=False)


def idempotent_with_ttl(ttl_ms: int) -> IdempotencyPolicy:
    return IdempotencyPolicy(required=True, ttl_ms=ttl_ms)


@dataclass(frozen=True)
class _CompiledRoute:
    method: str
    template: str
    regex: Pattern[str]
    policy: IdempotencyPolicy


class PolicyRegistry:
    def __init__(self) -> None:
        self._policies: Dict[RouteId, IdempotencyPolicy] = {}
        self._compiled: List[_CompiledRoute] = []
        self._frozen = False

    @staticmethod
    def _route_id(method: str, path: str) -> RouteId:
        return method.upper(), path

    def register(self, method: str, path: str, policy: IdempotencyPolicy) -> None:
        if self._frozen:
            raise RuntimeError("policy registry is frozen")
        route_id = self._route_id(method, path)
        if route_id in self._policies:
            raise ValueError(f"idempotency policy already registered for {method.upper()} {path}")
        regex, _, _ = compile_path(path)
        self._policies[route_id] = policy
        self._compiled.append(_CompiledRoute(route_id[0], path, regex, policy))

    def resolve(self, method: str, path: str) -> Optional[IdempotencyPolicy]:
        """Policy registered for an exact ``(method, template)`` pair."""
        return self._policies.get(self._route_id(method, path))

    def match(self, method: str, path: str) -> Optional[Tuple[str, IdempotencyPolicy]]:
        """First registered ``(template, policy)`` whose template matches a concrete path."""
        method = method.upper()
        for route in self._compiled:
            if route.method == method and route.regex.match(path):
                return route.template, route.policy
        return None

    def routes(self) -> Dict[RouteId, IdempotencyPolicy]:
        return dict(self._policies)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __len__(self) -> int:
        return len(self._policies)


def policy_route(
    router: APIRouter,
    registry: PolicyRegistry,
    path: str,
    policy: IdempotencyPolicy,
    *,
    methods: Iterable[str] = ("POST",),
    mount_prefix: str = "",
    **route_kwargs: Any,
) -> Callable[[F], F]:
    """Declare a route on ``router`` and record its policy in one step.

    The policy is keyed by the full path template: ``mount_prefix`` (the
    ``prefix`` the router will be included under) + router prefix + ``path``.
    """
    method_list = [m.upper() for m in methods]

    def decorator(fn: F) -> F:
        router.add_api_route(path, fn, methods=method_list, **route_kwargs)
        for method in method_list:
            registry.register(method, mount_prefix + router.prefix + path, policy)
        return fn

    return decorator
