import pytest
from fastapi import APIRouter

from soundbite.idempotency.policy import (
    IdempotencyPolicy,
    PolicyRegistry,
    idempotent,
    idempotent_with_ttl,
    optionally_idempotent,
    policy_route,
)
from soundbite.idempotency.store import DEFAULT_TTL_MS


def test_policy_helpers() -> None:
    assert idempotent() == IdempotencyPolicy(required=True, ttl_ms=DEFAULT_TTL_MS)
    assert optionally_idempotent().required is False
    assert idempotent_with_ttl(5000) == IdempotencyPolicy(required=True, ttl_ms=5000)


def test_policy_rejects_non_positive_ttl() -> None:
    with pytest.raises(ValueError):
        idempotent_with_ttl(0)


def test_register_and_resolve_is_method_case_insensitive() -> None:
    registry = PolicyRegistry()
    registry.register("post", "/jobs", idempotent())
    assert registry.resolve("POST", "/jobs") == idempotent()
    assert registry.resolve("PUT", "/jobs") is None
    assert registry.resolve("POST", "/other") is None
    assert len(registry) == 1


def test_duplicate_registration_rejected() -> None:
    registry = PolicyRegistry()
    registry.register("POST", "/jobs", idempotent())
    with pytest.raises(ValueError):
        registry.register("POST", "/jobs", optionally_idempotent())


def test_frozen_registry_rejects_changes() -> None:
    registry = PolicyRegistry()
    registry.freeze()
    assert registry.frozen
    with pytest.raises(RuntimeError):
        registry.register("POST", "/jobs", idempotent())


def test_policy_route_registers_full_template() -> None:
    registry = PolicyRegistry()
    router = APIRouter(prefix="/things")

    @policy_route(router, registry, "/{thing_id}", optionally_idempotent(), methods=("put", "patch"))
    async def update(thing_id: str) -> dict:
        return {"id": thing_id}

    assert registry.routes() == {
        ("PUT", "/things/{thing_id}"): optionally_idempotent(),
        ("PATCH", "/things/{thing_id}"): optionally_idempotent(),
    }
    assert [r.path for r in router.routes] == ["/things/{thing_id}"]


def test_match_resolves_concrete_paths_against_templates() -> None:
    registry = PolicyRegistry()
    registry.register("PUT", "/items/{item_id}", idempotent_with_ttl(60_000))
    registry.register("POST", "/v1/jobs/{job_id}/retry", idempotent())

    assert registry.match("put", "/items/abc") == ("/items/{item_id}", idempotent_with_ttl(60_000))
    assert registry.match("POST", "/v1/jobs/j-1/retry") == ("/v1/jobs/{job_id}/retry", idempotent())
    assert registry.match("POST", "/items/abc") is None
    assert registry.match("PUT", "/items/abc/extra") is None
    assert registry.match("POST", "/jobs/j-1/retry") is None


def test_policy_route_applies_mount_prefix() -> None:
    registry = PolicyRegistry()
    router = APIRouter(prefix="/jobs")

    @policy_route(router, registry, "/{job_id}/cancel", optionally_idempotent(), mount_prefix="/v2")
    async def cancel(job_id: str) -> dict:
        return {}

    assert registry.resolve("POST", "/v2/jobs/{job_id}/cancel") == optionally_idempotent()
    assert registry.match("POST", "/v2/jobs/x/cancel") is not None
