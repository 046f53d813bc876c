"""Idempotency interception layer: key validation, replay and response capture.

Request flow for unsafe methods:

1. bodies larger than ``max_body`` are rejected before any cache access,
   from ``Content-Length`` when declared, otherwise as soon as the streamed
   chunks pass the limit; a client that disconnects mid-body is dropped;
2. a missing key is rejected when the route requires one, otherwise the
   request bypasses caching;
3. keys must be UUID v4;
4. ``key:fingerprint`` is looked up; a hit replays the stored response with
   provenance markers and the handler is not called;
5. on a miss the handler runs, and a 2xx JSON object response from a
   cache-eligible route is stored before it is sent.

Cache failures never fail the request: lookups degrade to misses and writes are
logged and skipped. There is no lock between lookup and store, so concurrent
requests with the same key and body can both reach the handler.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from starlette.datastructures import Headers
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from soundbite.errors import IDEMPOTENCY_HEADER, IdempotencyError, idempotency_error_response
from soundbite.idempotency.fingerprint import (
    composite_cache_key,
    is_valid_idempotency_key,
    normalize_path,
    request_fingerprint,
)
from soundbite.idempotency.log_utils import log_idempotency_event
from soundbite.idempotency.policy import IdempotencyPolicy
from soundbite.idempotency.store import CachedResponse, CacheProvider, now_ms
from soundbite.metrics import (
    IDEMP_ERRORS,
    IDEMP_HITS,
    IDEMP_MISSES,
    IDEMP_REJECTIONS,
    IDEMP_STORES,
)
from soundbite.middleware.idempotency_gate import POLICY_STATE_KEY
from soundbite.settings import IdempotencySettings


KEY_STATE_KEY = "idempotency_key"
FINGERPRINT_STATE_KEY = "idempotency_fingerprint"
REPLAYED_HEADER = "Idempotency-Replayed"
CACHE_STATE_ATTR = "idempotency_cache"

RawHeaders = List[Tuple[bytes, bytes]]


class _BodyTooLarge(Exception):
    def __init__(self, received: int) -> None:
        super().__init__(received)
        self.received = received


class _ClientDisconnected(Exception):
    pass


def _declared_length(headers: Headers) -> Optional[int]:
    raw = (headers.get("content-length") or "").strip()
    if not raw.isdigit():
        return None
    return int(raw)


def _is_json_content_type(content_type: str) -> bool:
    ctype = content_type.split(";", 1)[0].strip().lower()
    return ctype == "application/json" or ctype.endswith("+json")


def _json_object(body: bytes, content_type: str) -> Optional[Dict[str, Any]]:
    if not body or not _is_json_content_type(content_type):
        return None
    try:
        parsed = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _render_json(content: Dict[str, Any]) -> bytes:
    # Same rendering as starlette.responses.JSONResponse
    return json.dumps(
        content,
        ensure_ascii=False,
        allow_nan=False,
        indent=None,
        separators=(",", ":"),
    ).encode("utf-8")


def _with_header(headers: RawHeaders, name: str, value: str) -> RawHeaders:
    lname = name.lower().encode("latin-1")
    kept = [(k, v) for k, v in headers if k.lower() != lname]
    kept.append((lname, value.encode("latin-1")))
    return kept


class IdempotencyMiddleware:
    def __init__(
        self,
        app: ASGIApp,
        store: Optional[CacheProvider] = None,
        settings: Optional[IdempotencySettings] = None,
    ) -> None:
        effective = settings or IdempotencySettings()
        self.app = app
        self.store = store
        self.methods = tuple(sorted(m.upper() for m in effective.methods))
        self.max_body = effective.max_body_bytes
        self.required_paths = tuple(normalize_path(p) for p in effective.required_paths)
        self.default_ttl_ms = effective.default_ttl_ms
        self.mask_prefix_len = effective.mask_prefix_len

    # ---- helpers -----------------------------------------------------------

    def _store_for(self, scope: Scope) -> Optional[CacheProvider]:
        if self.store is not None:
            return self.store
        app: Any = scope.get("app")
        state = getattr(app, "state", None)
        return getattr(state, CACHE_STATE_ATTR, None)

    def _fallback_required(self, method: str, path: str) -> bool:
        """Key demanded on POSTs under a configured path when no policy was registered."""
        if method != "POST":
            return False
        norm = normalize_path(path)
        for base in self.required_paths:
            if norm == base or norm.startswith(base.rstrip("/") + "/"):
                return True
        return False

    def _event(self, event: str, level: int = logging.INFO, **fields: Any) -> None:
        log_idempotency_event(event, level=level, mask_prefix_len=self.mask_prefix_len, **fields)

    async def _reject(
        self, scope: Scope, receive: Receive, send: Send, exc: IdempotencyError, reason: str
    ) -> None:
        IDEMP_REJECTIONS.labels(reason=reason).inc()
        self._event(
            "rejected",
            reason=reason,
            method=scope["method"],
            path=scope.get("path", ""),
        )
        response = idempotency_error_response(exc, Headers(scope=scope))
        await response(scope, receive, send)

    async def _reject_too_large(
        self, scope: Scope, receive: Receive, send: Send, actual_size: int
    ) -> None:
        await self._reject(
            scope,
            receive,
            send,
            IdempotencyError.body_too_large(self.max_body, actual_size),
            "body_too_large",
        )

    async def _read_body(self, receive: Receive) -> bytes:
        """Buffer the request body, giving up once it grows past ``max_body``.

        Raises ``_BodyTooLarge`` with the bytes received so far, or
        ``_ClientDisconnected`` when the client goes away mid-body.
        """
        chunks: List[bytes] = []
        received = 0
        more_body = True
        while more_body:
            msg = await receive()
            if msg["type"] == "http.disconnect":
                raise _ClientDisconnected()
            if msg["type"] != "http.request":
                continue
            chunk = msg.get("body", b"") or b""
            received += len(chunk)
            if received > self.max_body:
                raise _BodyTooLarge(received)
            if chunk:
                chunks.append(chunk)
            more_body = bool(msg.get("more_body"))
        return b"".join(chunks)

    @staticmethod
    def _replay_receive(body: bytes, receive: Receive) -> Receive:
        sent = False

        async def _receive() -> Message:
            nonlocal sent
            if not sent:
                sent = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await receive()

        return _receive

    async def _run_downstream(
        self, scope: Scope, body: bytes, receive: Receive
    ) -> Tuple[int, RawHeaders, bytes]:
        status = 500
        headers: RawHeaders = []
        chunks: List[bytes] = []

        async def _capture(message: Message) -> None:
            nonlocal status, headers
            if message["type"] == "http.response.start":
                status = int(message["status"])
                headers = list(message.get("headers", []))
            elif message["type"] == "http.response.body":
                chunks.append(message.get("body", b"") or b"")

        await self.app(scope, self._replay_receive(body, receive), _capture)
        return status, headers, b"".join(chunks)

    @staticmethod
    async def _send_buffered(send: Send, status: int, headers: RawHeaders, body: bytes) -> None:
        headers = _with_header(headers, "content-length", str(len(body)))
        await send({"type": "http.response.start", "status": status, "headers": headers})
        await send({"type": "http.response.body", "body": body, "more_body": False})

    # ---- ASGI entrypoint ---------------------------------------------------

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        method = scope["method"].upper()
        if method not in self.methods:
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        declared = _declared_length(headers)
        if declared is not None and declared > self.max_body:
            await self._reject_too_large(scope, receive, send, declared)
            return
        try:
            body = await self._read_body(receive)
        except _BodyTooLarge as exc:
            await self._reject_too_large(scope, receive, send, exc.received)
            return
        except _ClientDisconnected:
            self._event("client_disconnected", method=method, path=scope.get("path", ""))
            return

        path = scope.get("path", "")
        state: Dict[str, Any] = scope.setdefault("state", {})
        policy: Optional[IdempotencyPolicy] = state.get(POLICY_STATE_KEY)
        fallback = policy is None and self._fallback_required(method, path)
        cache_eligible = policy is not None or fallback

        key = (headers.get(IDEMPOTENCY_HEADER) or "").strip()
        if not key:
            required = policy.required if policy is not None else fallback
            if required:
                await self._reject(
                    scope, receive, send, IdempotencyError.key_required(), "missing_key"
                )
                return
            await self.app(scope, self._replay_receive(body, receive), send)
            return

        if not is_valid_idempotency_key(key):
            await self._reject(
                scope, receive, send, IdempotencyError.key_invalid(key), "invalid_key"
            )
            return

        store = self._store_for(scope)
        try:
            if store is None:
                raise RuntimeError("no idempotency cache configured")
            fingerprint = request_fingerprint(method, path, body, scope.get("query_string", b""))
            cache_key = composite_cache_key(key, fingerprint)
        except Exception as exc:
            IDEMP_ERRORS.labels(phase="prepare").inc()
            self._event("bypass_error", level=logging.ERROR, method=method, path=path, error=str(exc))
            await self.app(scope, self._replay_receive(body, receive), send)
            return

        try:
            cached = await store.get(cache_key)
        except Exception as exc:
            IDEMP_ERRORS.labels(phase="get").inc()
            self._event(
                "lookup_failed",
                level=logging.ERROR,
                cache_key=cache_key,
                backend=store.name,
                error=str(exc),
            )
            cached = None

        if cached is not None:
            IDEMP_HITS.labels(method=method, backend=store.name).inc()
            self._event(
                "replay",
                cache_key=cache_key,
                status=cached.status_code,
                age_ms=max(0, now_ms() - cached.stored_at_ms),
            )
            await self._send_replay(scope, receive, send, cached)
            return

        IDEMP_MISSES.labels(method=method, backend=store.name).inc()
        state[KEY_STATE_KEY] = key
        state[FINGERPRINT_STATE_KEY] = fingerprint

        status, resp_headers, resp_body = await self._run_downstream(scope, body, receive)

        if cache_eligible and 200 <= status < 300:
            content_type = Headers(raw=resp_headers).get("content-type", "")
            payload = _json_object(resp_body, content_type)
            if payload is not None:
                ttl_ms = policy.ttl_ms if policy is not None else self.default_ttl_ms
                await self._store(store, cache_key, payload, status, ttl_ms, method)
                resp_body = _render_json({**payload, "_idempotent": True})
                resp_headers = _with_header(resp_headers, REPLAYED_HEADER, "false")

        await self._send_buffered(send, status, resp_headers, resp_body)

    # ---- replay / store ----------------------------------------------------

    async def _send_replay(
        self, scope: Scope, receive: Receive, send: Send, cached: CachedResponse
    ) -> None:
        content = {
            **cached.body,
            "_idempotent": True,
            "_cached": True,
            "_originalTimestamp": cached.original_timestamp(),
        }
        response = JSONResponse(
            content=content,
            status_code=cached.status_code,
            headers={REPLAYED_HEADER: "true"},
        )
        await response(scope, receive, send)

    async def _store(
        self,
        store: CacheProvider,
        cache_key: str,
        payload: Dict[str, Any],
        status: int,
        ttl_ms: int,
        method: str,
    ) -> None:
        record = CachedResponse(body=payload, status_code=status)
        try:
            await store.set(cache_key, record, ttl_ms)
        except Exception as exc:
            IDEMP_ERRORS.labels(phase="set").inc()
            self._event(
                "store_failed",
                level=logging.ERROR,
                cache_key=cache_key,
                backend=store.name,
                status=status,
                error=str(exc),
            )
            return
        IDEMP_STORES.labels(method=method, backend=store.name).inc()
        self._event("stored", cache_key=cache_key, backend=store.name, status=status, ttl_ms=ttl_ms)
