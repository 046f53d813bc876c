# tests/conftest.py
from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Iterator

import pytest
from starlette.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from soundbite.idempotency.memory_store import InMemoryCacheProvider  # noqa: E402
from soundbite.main import create_app  # noqa: E402
from soundbite.settings import Settings  # noqa: E402

_ENV_KEYS = (
    "CACHE_TYPE",
    "REDIS_URL",
    "APP_ENV",
    "LOG_JSON",
    "IDEMPOTENCY_TTL_MS",
    "IDEMPOTENCY_METHODS",
    "IDEMPOTENCY_REQUIRED_PATHS",
    "IDEMPOTENCY_MAX_BODY_BYTES",
    "IDEMP_LOG_INCLUDE_PII",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture()
def settings() -> Settings:
    # log_json=False keeps the root handlers (and caplog) in place.
    return Settings(env="test", log_json=False)


@pytest.fixture()
def cache() -> InMemoryCacheProvider:
    return InMemoryCacheProvider(max_entries=100)


@pytest.fixture()
def app(settings: Settings, cache: InMemoryCacheProvider):
    # Function scope: new app (and policy registry) for each test.
    return create_app(settings, cache_provider=cache)


@pytest.fixture()
def client(app) -> Iterator[TestClient]:
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Minimal asyncio support without requiring pytest-asyncio."""

    test_func = pyfuncitem.obj
    if asyncio.iscoroutinefunction(test_func):
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            call_kwargs = {
                name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames
            }
            loop.run_until_complete(test_func(**call_kwargs))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None
