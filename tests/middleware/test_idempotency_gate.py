import json
import logging
import uuid

import pytest
from starlette.testclient import TestClient

from soundbite.idempotency.memory_store import InMemoryCacheProvider
from soundbite.idempotency.policy import idempotent, idempotent_with_ttl
from soundbite.middleware.idempotency_gate import route_path
from tests.testlib.apps import build_idem_app


@pytest.fixture()
def gate_app():
    return build_idem_app(InMemoryCacheProvider())


def test_registry_matches_concrete_paths_of_included_routers(gate_app) -> None:
    registry = gate_app.state.registry
    assert registry.match("PUT", "/items/42") == ("/items/{item_id}", idempotent_with_ttl(60_000))
    assert registry.match("post", "/items") == ("/items", idempotent())
    assert registry.match("POST", "/v1/jobs/j-9/retry") == (
        "/v1/jobs/{job_id}/retry",
        idempotent_with_ttl(5_000),
    )
    assert registry.match("GET", "/items/42") is None
    assert registry.match("POST", "/items/42/extra") is None
    assert registry.match("POST", "/nowhere") is None


def test_route_path_strips_root_path() -> None:
    assert route_path({"path": "/api/items", "root_path": "/api"}) == "/items"
    assert route_path({"path": "/items", "root_path": ""}) == "/items"
    assert route_path({"path": "/api", "root_path": "/api"}) == "/"


def test_gate_rejects_missing_key_and_logs_masked_event(
    gate_app, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.INFO, logger="soundbite.idempotency"):
        with TestClient(gate_app) as c:
            r = c.put("/items/42", json={"a": 1}, headers={"X-Request-ID": "rid-1"})

    assert r.status_code == 400
    assert r.json()["code"] == "idempotency_key_required"
    assert r.json()["request_id"] == "rid-1"
    assert r.headers["X-Request-ID"] == "rid-1"
    assert gate_app.state.calls == []

    events = [json.loads(rec.getMessage()) for rec in caplog.records if rec.name == "soundbite.idempotency"]
    assert events and events[-1]["event"] == "rejected"
    assert events[-1]["reason"] == "missing_key"


def test_gate_enforces_policy_on_prefixed_router(gate_app) -> None:
    with TestClient(gate_app) as c:
        r = c.post("/v1/jobs/j-1/retry", json={"a": 1})
    assert r.status_code == 400
    assert r.json()["code"] == "idempotency_key_required"
    assert gate_app.state.calls == []


def test_gate_exposes_policy_on_request_state(gate_app) -> None:
    with TestClient(gate_app) as c:
        r = c.post("/v1/jobs/j-1/retry", json={"a": 1}, headers={"Idempotency-Key": str(uuid.uuid4())})
    assert r.status_code == 200
    assert r.json()["policy"] == {"required": True, "ttl_ms": 5_000}
    assert r.json()["_idempotent"] is True


def test_gate_ignores_unregistered_routes(gate_app) -> None:
    with TestClient(gate_app) as c:
        r = c.post("/plain", json={"a": 1})
    assert r.status_code == 200


def test_unknown_path_falls_through_to_404(gate_app) -> None:
    with TestClient(gate_app) as c:
        r = c.post("/nowhere", json={"a": 1})
    assert r.status_code == 404
    assert r.json()["code"] == "not_found"
